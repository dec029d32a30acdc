"""
Authenticator-app (TOTP) setup and verification, plus backup codes.

The TOTP seed is kept Fernet-encrypted on `User.two_factor_secret`. During setup
the seed is written with `two_factor_enabled=False`; it only becomes active once
the user proves possession with a valid code.
"""
from __future__ import annotations

import base64
import hashlib
import io
import logging
import re
import secrets
import string
from datetime import datetime, timezone

import pyotp
import qrcode
from flask import current_app, has_app_context
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from app.ygops.audit import record_event
from app.ygops.errors import AuthenticationError, ConflictError, ValidationError
from app.ygops.models import User
from app.ygops.modules.two_factor.models import TwoFactorBackupCode
from app.ygops.security import decrypt_secret, encrypt_secret
from app.ygops.utils import utcnow

logger = logging.getLogger(__name__)

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_WINDOW = 1

BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits

_TOKEN_RE = re.compile(r"^\d{6}$")


def _issuer() -> str:
    if has_app_context():
        return current_app.config.get("TOTP_ISSUER") or "YesGoddess"
    return "YesGoddess"


def epoch_seconds(now: datetime | None) -> int:
    now = now or utcnow()
    return int(now.replace(tzinfo=timezone.utc).timestamp())


def normalize_token(token: str | None) -> str:
    return re.sub(r"\s+", "", token or "")


def is_valid_token_format(token: str | None) -> bool:
    return bool(_TOKEN_RE.match(normalize_token(token)))


def generate_secret() -> str:
    return pyotp.random_base32()


def build_totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL, digest=hashlib.sha1, issuer=_issuer())


def remaining_seconds(now: datetime | None = None) -> int:
    return TOTP_INTERVAL - (epoch_seconds(now) % TOTP_INTERVAL)


def current_timestep(now: datetime | None = None) -> int:
    return epoch_seconds(now) // TOTP_INTERVAL


def match_timestep(secret: str, token: str | None, *, now: datetime | None = None, window: int = TOTP_WINDOW) -> int | None:
    """Return the time step the token is valid for (within +/- window), or None."""
    token = normalize_token(token)
    if not _TOKEN_RE.match(token):
        return None
    totp = build_totp(secret)
    epoch = epoch_seconds(now)
    for offset in range(-window, window + 1):
        if secrets.compare_digest(totp.at(epoch, offset), token):
            return epoch // TOTP_INTERVAL + offset
    return None


def verify_token(secret: str, token: str | None, *, now: datetime | None = None) -> bool:
    return match_timestep(secret, token, now=now) is not None


def format_manual_key(secret: str) -> str:
    return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4))


def qr_code_data_url(uri: str) -> str:
    img = qrcode.make(uri)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def user_secret(user: User) -> str | None:
    if not user.two_factor_secret:
        return None
    return decrypt_secret(user.two_factor_secret)


def begin_setup(s: Session, user: User) -> dict:
    if user.two_factor_enabled and user.preferred_2fa_method == "AUTHENTICATOR":
        raise ConflictError("Authenticator two-factor is already enabled", code="TOTP_ALREADY_ENABLED")
    secret = generate_secret()
    uri = build_totp(secret).provisioning_uri(name=user.email, issuer_name=_issuer())
    user.two_factor_secret = encrypt_secret(secret)
    record_event(s, actor=user, action="auth.2fa_setup_started", entity_type="User", entity_id=str(user.id))
    return {
        "secret": secret,
        "otpauth_url": uri,
        "qr_code": qr_code_data_url(uri),
        "manual_entry_key": format_manual_key(secret),
        "issuer": _issuer(),
    }


def confirm_setup(s: Session, user: User, token: str, *, now: datetime | None = None) -> list[str]:
    """Enable TOTP after checking a code against the pending secret. Returns fresh backup codes."""
    now = now or utcnow()
    secret = user_secret(user)
    if not secret:
        raise ValidationError("Start authenticator setup first", code="TOTP_SETUP_REQUIRED")
    if not is_valid_token_format(token):
        raise ValidationError("Code must be 6 digits", code="TOTP_INVALID_FORMAT")
    if not verify_token(secret, token, now=now):
        raise AuthenticationError("Invalid verification code", code="TOTP_INVALID")
    user.two_factor_enabled = True
    user.preferred_2fa_method = "AUTHENTICATOR"
    user.two_factor_verified_at = now
    codes = generate_backup_codes(s, user)
    record_event(s, actor=user, action="auth.2fa_enabled", entity_type="User", entity_id=str(user.id), metadata={"method": "AUTHENTICATOR"})
    logger.info("2FA enabled for user %s", user.id)
    return codes


def _normalize_backup_code(code: str | None) -> str:
    return re.sub(r"[\s-]+", "", code or "").upper()


def _format_backup_code(raw: str) -> str:
    return f"{raw[:4]}-{raw[4:]}"


def generate_backup_codes(s: Session, user: User) -> list[str]:
    """Replace every unused backup code with a new set; returns the display form once."""
    s.execute(
        delete(TwoFactorBackupCode).where(TwoFactorBackupCode.user_id == user.id, TwoFactorBackupCode.used.is_(False))
    )
    display: list[str] = []
    for _ in range(BACKUP_CODE_COUNT):
        raw = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        s.add(TwoFactorBackupCode(user_id=user.id, code_hash=generate_password_hash(raw)))
        display.append(_format_backup_code(raw))
    s.flush()
    return display


def regenerate_backup_codes(s: Session, user: User, *, password: str) -> list[str]:
    if not user.two_factor_enabled:
        raise ValidationError("Two-factor authentication is not enabled", code="2FA_NOT_ENABLED")
    if not check_password_hash(user.password_hash, password or ""):
        raise AuthenticationError("Invalid password", code="INVALID_CREDENTIALS")
    codes = generate_backup_codes(s, user)
    record_event(s, actor=user, action="auth.2fa_backup_codes_regenerated", entity_type="User", entity_id=str(user.id))
    return codes


def verify_backup_code(s: Session, user: User, code: str | None, *, now: datetime | None = None) -> bool:
    normalized = _normalize_backup_code(code)
    if len(normalized) != BACKUP_CODE_LENGTH:
        return False
    rows = s.execute(
        select(TwoFactorBackupCode).where(TwoFactorBackupCode.user_id == user.id, TwoFactorBackupCode.used.is_(False))
    ).scalars().all()
    for row in rows:
        if check_password_hash(row.code_hash, normalized):
            row.used = True
            row.used_at = now or utcnow()
            record_event(
                s,
                actor=user,
                action="auth.2fa_backup_code_used",
                entity_type="User",
                entity_id=str(user.id),
                metadata={"remaining": len(rows) - 1},
            )
            return True
    return False


def remaining_backup_codes(s: Session, user: User) -> int:
    return s.execute(
        select(func.count())
        .select_from(TwoFactorBackupCode)
        .where(TwoFactorBackupCode.user_id == user.id, TwoFactorBackupCode.used.is_(False))
    ).scalar_one()


def _clear_two_factor(s: Session, user: User) -> None:
    user.two_factor_enabled = False
    user.two_factor_secret = None
    user.preferred_2fa_method = None
    user.two_factor_verified_at = None
    s.execute(delete(TwoFactorBackupCode).where(TwoFactorBackupCode.user_id == user.id))


def disable(s: Session, user: User, *, password: str, code: str, now: datetime | None = None) -> None:
    if not user.two_factor_enabled:
        raise ValidationError("Two-factor authentication is not enabled", code="2FA_NOT_ENABLED")
    if not check_password_hash(user.password_hash, password or ""):
        raise AuthenticationError("Invalid password", code="INVALID_CREDENTIALS")
    secret = user_secret(user)
    ok = bool(secret and verify_token(secret, code, now=now)) or verify_backup_code(s, user, code, now=now)
    if not ok:
        raise AuthenticationError("Invalid verification code", code="TOTP_INVALID")
    _clear_two_factor(s, user)
    record_event(s, actor=user, action="auth.2fa_disabled", entity_type="User", entity_id=str(user.id))
    logger.info("2FA disabled for user %s", user.id)


def admin_reset(s: Session, user: User, *, actor: User, reason: str) -> None:
    if not (reason or "").strip():
        raise ValidationError("A reason is required to reset two-factor authentication")
    _clear_two_factor(s, user)
    user.phone_verified = False
    record_event(
        s,
        actor=actor,
        action="auth.2fa_admin_reset",
        entity_type="User",
        entity_id=str(user.id),
        reason=reason.strip(),
    )


def status(s: Session, user: User, *, now: datetime | None = None) -> dict:
    return {
        "enabled": user.two_factor_enabled,
        "method": user.preferred_2fa_method,
        "authenticator_configured": bool(user.two_factor_secret) and user.two_factor_enabled,
        "phone_verified": user.phone_verified,
        "backup_codes_remaining": remaining_backup_codes(s, user),
        "verified_at": user.two_factor_verified_at.isoformat() if user.two_factor_verified_at else None,
        "seconds_remaining": remaining_seconds(now),
    }
