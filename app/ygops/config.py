import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str
    slow_query_ms: int
    csrf_enabled: bool

    storage_backend: str
    storage_root: str
    storage_quota_bytes: int
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    redis_url: str
    encryption_key: str
    totp_issuer: str

    twilio_account_sid: str
    twilio_auth_token: str
    twilio_phone_number: str
    twilio_status_callback_url: str

    cloudflare_api_token: str
    cloudflare_zone_id: str
    cdn_base_url: str

    celery_broker_url: str
    celery_result_backend: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getflag(name: str, default: bool) -> bool:
    raw = _getenv(name, "")
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///ygops.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        slow_query_ms=int(_getenv("SLOW_QUERY_MS", "0") or 0),
        csrf_enabled=_getflag("CSRF_ENABLED", True),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        storage_quota_bytes=int(_getenv("STORAGE_QUOTA_BYTES", "0") or 0),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "auto"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        redis_url=_getenv("REDIS_URL", ""),
        encryption_key=_getenv("ENCRYPTION_KEY", ""),
        totp_issuer=_getenv("TOTP_ISSUER", "YesGoddess"),
        twilio_account_sid=_getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=_getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=_getenv("TWILIO_PHONE_NUMBER", ""),
        twilio_status_callback_url=_getenv("TWILIO_STATUS_CALLBACK_URL", ""),
        cloudflare_api_token=_getenv("CLOUDFLARE_API_TOKEN", ""),
        cloudflare_zone_id=_getenv("CLOUDFLARE_ZONE_ID", ""),
        cdn_base_url=_getenv("CDN_BASE_URL", ""),
        celery_broker_url=_getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
        celery_result_backend=_getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0"),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "SLOW_QUERY_MS": s.slow_query_ms,
        "CSRF_ENABLED": s.csrf_enabled,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        # per-user upload quota; 0 disables it
        "STORAGE_QUOTA_BYTES": s.storage_quota_bytes,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "REDIS_URL": s.redis_url,
        # TOTP secrets are encrypted with a key derived from this value
        "ENCRYPTION_KEY": s.encryption_key or s.secret_key,
        "TOTP_ISSUER": s.totp_issuer,
        "TWILIO_ACCOUNT_SID": s.twilio_account_sid,
        "TWILIO_AUTH_TOKEN": s.twilio_auth_token,
        "TWILIO_PHONE_NUMBER": s.twilio_phone_number,
        "TWILIO_STATUS_CALLBACK_URL": s.twilio_status_callback_url,
        "CLOUDFLARE_API_TOKEN": s.cloudflare_api_token,
        "CLOUDFLARE_ZONE_ID": s.cloudflare_zone_id,
        "CDN_BASE_URL": s.cdn_base_url,
        "CELERY_BROKER_URL": s.celery_broker_url,
        "CELERY_RESULT_BACKEND": s.celery_result_backend,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # video uploads are the largest accepted asset type
        "MAX_CONTENT_LENGTH": 500 * 1024 * 1024,
    }
