"""
Upload validation: declared MIME type against an allow-list, magic-number
sniffing, extension consistency, size limits and a few content checks.

Errors make a file unacceptable; warnings are returned to the caller but do
not block the upload.
"""
from __future__ import annotations

from dataclasses import dataclass, field

MB = 1024 * 1024

# (mime types, signature, offset); first match wins.
_SIGNATURES: tuple[tuple[tuple[str, ...], bytes, int], ...] = (
    (("image/jpeg", "image/jpg"), b"\xff\xd8\xff", 0),
    (("image/png",), b"\x89PNG\r\n\x1a\n", 0),
    (("image/gif",), b"GIF87a", 0),
    (("image/gif",), b"GIF89a", 0),
    (("image/tiff",), b"II*\x00", 0),
    (("image/tiff",), b"MM\x00*", 0),
    (("video/quicktime",), b"ftypqt", 4),
    (("video/mp4",), b"ftyp", 4),
    (("application/pdf",), b"%PDF", 0),
    (
        (
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "application/zip",
        ),
        b"PK\x03\x04",
        0,
    ),
    (("application/msword",), b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", 0),
    (("audio/mpeg", "audio/mp3"), b"\xff\xfb", 0),
    (("audio/mpeg", "audio/mp3"), b"\xff\xf3", 0),
    (("audio/mpeg", "audio/mp3"), b"\xff\xf2", 0),
    (("audio/mpeg", "audio/mp3"), b"ID3", 0),
)

_MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "audio/mp3": "audio/mpeg",
}

EXTENSION_MIME_TYPES: dict[str, tuple[str, ...]] = {
    "jpg": ("image/jpeg", "image/jpg"),
    "jpeg": ("image/jpeg", "image/jpg"),
    "png": ("image/png",),
    "gif": ("image/gif",),
    "webp": ("image/webp",),
    "tiff": ("image/tiff",),
    "tif": ("image/tiff",),
    "svg": ("image/svg+xml",),
    "mp4": ("video/mp4",),
    "mov": ("video/quicktime",),
    "pdf": ("application/pdf",),
    "doc": ("application/msword",),
    "docx": ("application/vnd.openxmlformats-officedocument.wordprocessingml.document",),
    "mp3": ("audio/mpeg", "audio/mp3"),
    "wav": ("audio/wav", "audio/x-wav", "audio/wave"),
}

DEFAULT_ALLOWED_TYPES: tuple[str, ...] = (
    "image/*",
    "video/mp4",
    "video/quicktime",
    "audio/mpeg",
    "audio/wav",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)

MAX_FILE_SIZES = {
    "image": 50 * MB,
    "video": 500 * MB,
    "audio": 100 * MB,
    "document": 50 * MB,
    "default": 50 * MB,
}

_SVG_SCAN_BYTES = 10_000
_SVG_MARKERS = (b"<script", b"javascript:", b"onload=")
_EXECUTABLE_MARKERS = (b"<?php", b"<%", b"#!/")


@dataclass
class FileValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    detected_mime_type: str | None = None

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "detected_mime_type": self.detected_mime_type,
        }


def normalize_mime_type(mime_type: str) -> str:
    mt = (mime_type or "").split(";")[0].strip().lower()
    return _MIME_ALIASES.get(mt, mt)


def detect_mime_type(data: bytes) -> str | None:
    """Best guess from the leading bytes, or None when no signature matches."""
    if len(data) >= 12 and data[:4] == b"RIFF":
        kind = data[8:12]
        if kind == b"WEBP":
            return "image/webp"
        if kind == b"WAVE":
            return "audio/wav"
    for mimes, signature, offset in _SIGNATURES:
        if data[offset : offset + len(signature)] == signature:
            return mimes[0]
    return None


def is_allowed_type(mime_type: str, allowed_types: tuple[str, ...] | list[str]) -> bool:
    mt = normalize_mime_type(mime_type)
    for allowed in allowed_types:
        allowed = allowed.strip().lower()
        if allowed.endswith("/*"):
            if mt.startswith(allowed[:-1]):
                return True
        elif normalize_mime_type(allowed) == mt:
            return True
    return False


def max_file_size(mime_type: str) -> int:
    mt = normalize_mime_type(mime_type)
    category = mt.split("/")[0]
    if category in ("image", "video", "audio"):
        return MAX_FILE_SIZES[category]
    if "pdf" in mt or "document" in mt or "msword" in mt:
        return MAX_FILE_SIZES["document"]
    return MAX_FILE_SIZES["default"]


def file_extension(filename: str) -> str:
    name = (filename or "").rsplit("/", 1)[-1]
    return name.rsplit(".", 1)[-1].lower() if "." in name else ""


def _security_errors(data: bytes, mime_type: str) -> list[str]:
    errors: list[str] = []
    if mime_type == "image/svg+xml":
        head = data[:_SVG_SCAN_BYTES].lower()
        if any(marker in head for marker in _SVG_MARKERS):
            errors.append("SVG files with scripts or event handlers are not allowed")
    if "application/" in mime_type or "text/" in mime_type:
        if any(marker in data for marker in _EXECUTABLE_MARKERS):
            errors.append("Files with executable content are not allowed")
    return errors


def validate_file(
    data: bytes,
    filename: str,
    declared_mime_type: str,
    *,
    allowed_types: tuple[str, ...] | list[str] = DEFAULT_ALLOWED_TYPES,
    max_size: int | None = None,
) -> FileValidationResult:
    declared = normalize_mime_type(declared_mime_type)
    result = FileValidationResult(is_valid=True)

    if not is_allowed_type(declared, allowed_types):
        result.errors.append(f"File type {declared or 'unknown'} is not allowed")
        result.is_valid = False
        return result

    if not data:
        result.errors.append("File is empty")
    limit = max_size or max_file_size(declared)
    if len(data) > limit:
        result.errors.append(f"File exceeds maximum size of {limit // MB}MB")

    detected = detect_mime_type(data)
    result.detected_mime_type = detected
    if detected is None:
        if data:
            result.warnings.append("Could not detect file type from signature")
    elif normalize_mime_type(detected) != declared:
        result.errors.append(f"File content ({detected}) does not match declared type ({declared})")
    elif detected != (declared_mime_type or "").split(";")[0].strip().lower():
        result.warnings.append(f"Declared type {declared_mime_type} normalized to {detected}")

    ext = file_extension(filename)
    expected = EXTENSION_MIME_TYPES.get(ext)
    if expected and declared not in {normalize_mime_type(m) for m in expected}:
        result.warnings.append(f"File extension .{ext} does not match type {declared}")

    result.errors.extend(_security_errors(data, declared))
    result.is_valid = not result.errors
    return result


def asset_type_for(mime_type: str) -> str:
    mt = normalize_mime_type(mime_type)
    category = mt.split("/")[0]
    if category == "image":
        return "IMAGE"
    if category == "video":
        return "VIDEO"
    if category == "audio":
        return "AUDIO"
    if mt == "application/pdf" or "document" in mt or "msword" in mt:
        return "DOCUMENT"
    return "OTHER"
