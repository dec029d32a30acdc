from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import requests

logger = logging.getLogger(__name__)

CACHE_CONTROL_PRESETS = {
    "immutable": "public, max-age=31536000, immutable",
    "long_term": "public, max-age=2592000, immutable",
    "standard": "public, max-age=604800",
    "short": "public, max-age=86400",
    "no_cache": "no-store, no-cache, must-revalidate",
}

THUMBNAIL_NAMES = ("thumbnail_small.jpg", "thumbnail_medium.jpg", "thumbnail_large.jpg")


def recommended_cache_control(path: str) -> str:
    p = path or ""
    if "/original." in p:
        return CACHE_CONTROL_PRESETS["immutable"]
    if "thumbnail" in p or "preview" in p:
        return CACHE_CONTROL_PRESETS["long_term"]
    if p.startswith("temp/"):
        return CACHE_CONTROL_PRESETS["no_cache"]
    if p.startswith("documents/"):
        return CACHE_CONTROL_PRESETS["short"]
    return CACHE_CONTROL_PRESETS["standard"]


@dataclass
class PurgeResult:
    success: bool
    purged: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"success": self.success, "purged": self.purged, "skipped": self.skipped, "errors": list(self.errors)}


@dataclass(frozen=True)
class CloudflareClient:
    api_token: str
    zone_id: str
    public_base_url: str = ""
    base_url: str = "https://api.cloudflare.com/client/v4"
    timeout_seconds: int = 15

    @property
    def configured(self) -> bool:
        return bool(self.api_token and self.zone_id)

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/{key.lstrip('/')}"

    def purge(
        self,
        *,
        files: list[str] | None = None,
        tags: list[str] | None = None,
        hosts: list[str] | None = None,
        prefixes: list[str] | None = None,
    ) -> PurgeResult:
        """
        Purge by the given selectors; with none given the whole zone is purged.
        """
        if not self.configured:
            logger.warning("CDN purge skipped: CLOUDFLARE_API_TOKEN / CLOUDFLARE_ZONE_ID not configured")
            return PurgeResult(success=False, skipped=True, errors=["Cloudflare credentials not configured"])

        body: dict[str, Any] = {}
        for name, values in (("files", files), ("tags", tags), ("hosts", hosts), ("prefixes", prefixes)):
            if values:
                body[name] = list(values)
        if not body:
            body["purge_everything"] = True

        url = f"{self.base_url.rstrip('/')}/zones/{self.zone_id}/purge_cache"
        try:
            resp = requests.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_token}", "Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
            payload = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("CDN purge failed: %s", e)
            return PurgeResult(success=False, errors=[str(e)])

        if not payload.get("success"):
            errors = [str(err.get("message")) for err in (payload.get("errors") or []) if isinstance(err, dict)]
            logger.error("CDN purge rejected: %s", errors)
            return PurgeResult(success=False, errors=errors or ["Unknown error"])

        purged = sum(len(v) for k, v in body.items() if k != "purge_everything")
        logger.info("CDN purge ok (%s entries)", purged or "everything")
        return PurgeResult(success=True, purged=purged or 1)

    def purge_asset(self, asset_id: int, storage_keys: list[str] | None = None) -> PurgeResult:
        if not self.public_base_url:
            logger.warning("CDN purge skipped for asset %s: CDN_BASE_URL not configured", asset_id)
            return PurgeResult(success=False, skipped=True, errors=["CDN_BASE_URL not configured"])
        keys = list(storage_keys or [])
        keys.extend(f"assets/{asset_id}/{name}" for name in THUMBNAIL_NAMES)
        return self.purge(files=[self.url_for(k) for k in dict.fromkeys(keys)])

    def warm(self, urls: list[str]) -> dict:
        warmed = 0
        failed = 0
        for url in urls:
            try:
                resp = requests.head(url, timeout=self.timeout_seconds, allow_redirects=True)
            except requests.RequestException as e:
                logger.warning("CDN warm failed for %s: %s", url, e)
                failed += 1
                continue
            if resp.ok:
                warmed += 1
            else:
                failed += 1
        return {"success": failed == 0, "warmed": warmed, "failed": failed}

    def warm_asset(self, asset_id: int) -> dict:
        if not self.public_base_url:
            return {"success": False, "warmed": 0, "failed": 0}
        return self.warm([self.url_for(f"assets/{asset_id}/{name}") for name in THUMBNAIL_NAMES])

    def cache_status(self, url: str) -> dict:
        try:
            resp = requests.head(url, timeout=self.timeout_seconds)
        except requests.RequestException as e:
            logger.warning("CDN cache status failed for %s: %s", url, e)
            return {"cached": False}
        cf_status = resp.headers.get("cf-cache-status")
        age = resp.headers.get("age")
        return {
            "cached": cf_status == "HIT",
            "cf_cache_status": cf_status,
            "age": int(age) if age and age.isdigit() else None,
            "expires": resp.headers.get("expires"),
            "cache_control": resp.headers.get("cache-control"),
        }


def cdn_client_from_config(config: dict) -> CloudflareClient:
    return CloudflareClient(
        api_token=(config.get("CLOUDFLARE_API_TOKEN") or "").strip(),
        zone_id=(config.get("CLOUDFLARE_ZONE_ID") or "").strip(),
        public_base_url=(config.get("CDN_BASE_URL") or "").strip(),
    )
