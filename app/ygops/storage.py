"""
Object storage for asset files.

Keys are slash separated (``assets/{id}/original.png``). ``LocalStorage`` maps
them under a directory for development and tests; ``S3Storage`` talks to any
S3-compatible endpoint (Cloudflare R2 in production).
"""
from __future__ import annotations

import mimetypes
import os
import shutil
import tempfile
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path
from typing import BinaryIO

import boto3
from botocore.exceptions import ClientError

SIGNED_URL_TTL_SECONDS = 900


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    content_type: str | None = None
    etag: str | None = None


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None, cache_control: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def stat(self, key: str) -> ObjectInfo | None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def read_bytes(self, key: str) -> bytes:
        with self.open(key) as fh:
            return fh.read()

    def exists(self, key: str) -> bool:
        return self.stat(key) is not None

    def copy(self, src_key: str, dest_key: str) -> None:
        info = self.stat(src_key)
        self.put_bytes(dest_key, self.read_bytes(src_key), content_type=info.content_type if info else None)

    def signed_url(self, key: str, *, download_name: str | None = None, expires_in: int = SIGNED_URL_TTL_SECONDS) -> str | None:
        """Time-limited direct download URL, or None when the backend must stream."""
        return None


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        p = (self.root / key.lstrip("/").replace("\\", "/")).resolve()
        if self.root.resolve() not in p.parents:
            raise StorageError(f"Storage key escapes root: {key}")
        return p

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None, cache_control: str | None = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        # write then rename so readers never see a partial file
        fd, tmp = tempfile.mkstemp(dir=p.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp, p)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise StorageError(f"Could not write {key}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        if not p.is_file():
            raise StorageError(f"Object not found: {key}")
        return p.open("rb")

    def stat(self, key: str) -> ObjectInfo | None:
        p = self._path(key)
        if not p.is_file():
            return None
        return ObjectInfo(key=key, size=p.stat().st_size, content_type=mimetypes.guess_type(p.name)[0])

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def copy(self, src_key: str, dest_key: str) -> None:
        src = self._path(src_key)
        if not src.is_file():
            raise StorageError(f"Object not found: {src_key}")
        dest = self._path(dest_key)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dest)


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str

    @cached_property
    def client(self):
        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None, cache_control: str | None = None) -> None:
        extra: dict[str, str] = {}
        if content_type:
            extra["ContentType"] = content_type
        if cache_control:
            extra["CacheControl"] = cache_control
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except ClientError as e:
            raise StorageError(f"Could not write {key}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise StorageError(f"Object not found: {key}") from e
        return obj["Body"]  # type: ignore[return-value]

    def stat(self, key: str) -> ObjectInfo | None:
        try:
            head = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return None
            raise StorageError(f"Could not stat {key}: {e}") from e
        return ObjectInfo(
            key=key,
            size=int(head.get("ContentLength") or 0),
            content_type=head.get("ContentType"),
            etag=(head.get("ETag") or "").strip('"') or None,
        )

    def delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)

    def copy(self, src_key: str, dest_key: str) -> None:
        try:
            self.client.copy_object(Bucket=self.bucket, Key=dest_key, CopySource={"Bucket": self.bucket, "Key": src_key})
        except ClientError as e:
            raise StorageError(f"Could not copy {src_key} to {dest_key}: {e}") from e

    def signed_url(self, key: str, *, download_name: str | None = None, expires_in: int = SIGNED_URL_TTL_SECONDS) -> str | None:
        params = {"Bucket": self.bucket, "Key": key}
        if download_name:
            params["ResponseContentDisposition"] = f'attachment; filename="{download_name}"'
        return self.client.generate_presigned_url("get_object", Params=params, ExpiresIn=expires_in)


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "auto").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    return LocalStorage(root=Path(config.get("STORAGE_ROOT") or Path.cwd() / "storage"))
