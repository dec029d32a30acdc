"""
SMS verification codes delivered through Twilio's REST API.

Codes are stored hashed with their delivery metadata. Sending is limited per
user (3 per 15 minutes) with a progressive wait between consecutive sends.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import secrets
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import requests
from flask import current_app
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from app.ygops.audit import record_event
from app.ygops.errors import RateLimitError, ServiceUnavailableError, ValidationError
from app.ygops.models import User
from app.ygops.modules.two_factor.models import SmsVerificationCode
from app.ygops.utils import utcnow

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
CODE_EXPIRY_MINUTES = 5
MAX_ATTEMPTS = 3
MAX_SMS_PER_WINDOW = 3
RATE_LIMIT_WINDOW_MINUTES = 15
BACKOFF_SECONDS = (0, 30, 60, 120)

SMS_TEMPLATES: dict[str, str] = {
    "two_factor_auth": "YesGoddess: Your verification code is {code}. Valid for {minutes} minutes. Never share this code.",
    "phone_verification": "YesGoddess: Verify your phone with code {code}. Expires in {minutes} minutes.",
    "login_verification": (
        "YesGoddess: Login code {code}. Valid for {minutes} minutes. If you didn't request this, contact support."
    ),
}

TWILIO_ERROR_MESSAGES: dict[str, str] = {
    "21211": "Invalid phone number",
    "21408": "You do not have permission to send SMS to this number",
    "21610": "Phone number is not reachable",
    "21614": "Invalid phone number",
    "30007": "Message filtered - likely spam",
    "30008": "Unknown destination error",
}

_E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")


class TwilioError(RuntimeError):
    def __init__(self, message: str, *, code: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


@dataclass(frozen=True)
class TwilioClient:
    account_sid: str
    auth_token: str
    from_number: str
    status_callback_url: str = ""
    base_url: str = "https://api.twilio.com/2010-04-01"
    timeout_seconds: int = 10

    def send_message(self, to: str, body: str) -> dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/Accounts/{self.account_sid}/Messages.json"
        data = {"To": to, "From": self.from_number, "Body": body}
        if self.status_callback_url:
            data["StatusCallback"] = self.status_callback_url
        try:
            resp = requests.post(url, data=data, auth=(self.account_sid, self.auth_token), timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise TwilioError(f"Twilio request failed: {e}") from e
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if resp.status_code >= 400:
            raise TwilioError(
                payload.get("message") or f"HTTP {resp.status_code} from Twilio",
                code=str(payload.get("code")) if payload.get("code") is not None else None,
                status=resp.status_code,
            )
        return payload


def twilio_client_from_config(config: dict) -> TwilioClient | None:
    sid = (config.get("TWILIO_ACCOUNT_SID") or "").strip()
    token = (config.get("TWILIO_AUTH_TOKEN") or "").strip()
    number = (config.get("TWILIO_PHONE_NUMBER") or "").strip()
    if not (sid and token and number):
        return None
    return TwilioClient(
        account_sid=sid,
        auth_token=token,
        from_number=number,
        status_callback_url=(config.get("TWILIO_STATUS_CALLBACK_URL") or "").strip(),
    )


def is_configured() -> bool:
    return twilio_client_from_config(current_app.config) is not None


def parse_twilio_error(err: TwilioError) -> str:
    return TWILIO_ERROR_MESSAGES.get(err.code or "", str(err) or "Unknown error occurred")


def generate_code() -> str:
    return str(secrets.randbelow(10**CODE_LENGTH)).zfill(CODE_LENGTH)


def render_message(template: str, code: str, minutes: int = CODE_EXPIRY_MINUTES) -> str:
    if template not in SMS_TEMPLATES:
        raise ValidationError(f"Unknown SMS template: {template}")
    return SMS_TEMPLATES[template].format(code=code, minutes=minutes)


def normalize_phone(phone: str | None) -> str:
    return re.sub(r"[\s().-]", "", phone or "")


def validate_phone(phone: str | None) -> str:
    phone = normalize_phone(phone)
    if not _E164_RE.match(phone):
        raise ValidationError("Phone number must be in E.164 format (e.g. +15551234567)", code="INVALID_PHONE_NUMBER")
    return phone


def mask_phone(phone: str | None) -> str | None:
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if len(digits) < 4:
        return "****"
    return f"****{digits[-4:]}"


@dataclass(frozen=True)
class SmsSendResult:
    success: bool
    record: SmsVerificationCode
    message_sid: str | None = None
    cost: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class SmsVerifyResult:
    success: bool
    error: str | None = None
    attempts_remaining: int | None = None
    record: SmsVerificationCode | None = None


def _recent_sends(s: Session, user_id: int, now: datetime) -> list[SmsVerificationCode]:
    window_start = now - timedelta(minutes=RATE_LIMIT_WINDOW_MINUTES)
    return list(
        s.execute(
            select(SmsVerificationCode)
            .where(SmsVerificationCode.user_id == user_id, SmsVerificationCode.created_at >= window_start)
            .order_by(SmsVerificationCode.created_at.asc())
        ).scalars().all()
    )


def backoff_seconds(recent_count: int) -> int:
    if recent_count <= 0:
        return 0
    return BACKOFF_SECONDS[min(recent_count - 1, len(BACKOFF_SECONDS) - 1)]


def check_send_allowed(s: Session, user_id: int, *, now: datetime | None = None, backoff: bool = True) -> dict:
    """
    Raise RateLimitError when the user may not receive another code yet.
    With `backoff=False` only the per-window quota applies.
    """
    now = now or utcnow()
    recent = _recent_sends(s, user_id, now)
    if len(recent) >= MAX_SMS_PER_WINDOW:
        reset_at = recent[0].created_at + timedelta(minutes=RATE_LIMIT_WINDOW_MINUTES)
        raise RateLimitError(
            f"SMS rate limit exceeded. Maximum {MAX_SMS_PER_WINDOW} SMS per {RATE_LIMIT_WINDOW_MINUTES} minutes.",
            code="SMS_RATE_LIMITED",
            retry_after=int((reset_at - now).total_seconds()),
            details={"reset_at": reset_at.isoformat()},
        )
    wait = backoff_seconds(len(recent)) if backoff else 0
    if recent and wait:
        elapsed = (now - recent[-1].created_at).total_seconds()
        if elapsed < wait:
            remaining = int(wait - elapsed) or 1
            raise RateLimitError(
                f"Please wait {remaining} seconds before requesting another code.",
                code="SMS_BACKOFF",
                retry_after=remaining,
            )
    return {"remaining": MAX_SMS_PER_WINDOW - len(recent)}


def send_code(
    s: Session,
    user: User,
    *,
    phone: str | None = None,
    template: str = "two_factor_auth",
    code: str | None = None,
    now: datetime | None = None,
    client: TwilioClient | None = None,
    backoff: bool = True,
) -> SmsSendResult:
    """
    Send a verification code (generated unless `code` is given). A failed
    delivery is still recorded and counts towards the send limit.
    """
    now = now or utcnow()
    client = client or twilio_client_from_config(current_app.config)
    if client is None:
        raise ServiceUnavailableError("SMS service is not configured", code="SMS_NOT_CONFIGURED")
    phone = validate_phone(phone or user.phone_number)
    check_send_allowed(s, user.id, now=now, backoff=backoff)

    code = code or generate_code()
    row = SmsVerificationCode(
        user_id=user.id,
        phone_number=phone,
        purpose=template,
        code_hash=generate_password_hash(code),
        expires_at=now + timedelta(minutes=CODE_EXPIRY_MINUTES),
        created_at=now,
    )
    s.add(row)
    try:
        message = client.send_message(phone, render_message(template, code))
    except TwilioError as e:
        row.delivery_status = "failed"
        row.delivery_error = str(e) or "Unknown error"
        s.flush()
        logger.warning("SMS send failed for user %s (twilio code=%s): %s", user.id, e.code, e)
        return SmsSendResult(success=False, record=row, error=parse_twilio_error(e))

    row.twilio_message_sid = message.get("sid")
    row.delivery_status = message.get("status") or "queued"
    row.cost = abs(float(message.get("price") or 0))
    s.flush()
    record_event(
        s,
        actor=user,
        action="auth.sms_code_sent",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"template": template, "phone": mask_phone(phone), "sid": row.twilio_message_sid},
    )
    return SmsSendResult(success=True, record=row, message_sid=row.twilio_message_sid, cost=row.cost)


def verify_code(
    s: Session,
    user: User,
    code: str | None,
    *,
    template: str | None = None,
    now: datetime | None = None,
) -> SmsVerifyResult:
    now = now or utcnow()
    stmt = select(SmsVerificationCode).where(
        SmsVerificationCode.user_id == user.id,
        SmsVerificationCode.verified.is_(False),
        SmsVerificationCode.expires_at > now,
    )
    if template:
        stmt = stmt.where(SmsVerificationCode.purpose == template)
    row = s.execute(stmt.order_by(SmsVerificationCode.created_at.desc(), SmsVerificationCode.id.desc()).limit(1)).scalar_one_or_none()
    if row is None:
        return SmsVerifyResult(False, "No valid verification code found. Please request a new code.")
    if row.attempts >= MAX_ATTEMPTS:
        return SmsVerifyResult(False, "Maximum verification attempts exceeded. Please request a new code.", 0, row)

    row.attempts += 1
    code = re.sub(r"\s+", "", code or "")
    if not check_password_hash(row.code_hash, code):
        remaining = MAX_ATTEMPTS - row.attempts
        return SmsVerifyResult(False, f"Invalid verification code. {remaining} attempts remaining.", remaining, row)

    row.verified = True
    row.verified_at = now
    return SmsVerifyResult(True, record=row)


def send_phone_verification(s: Session, user: User, phone: str, *, now: datetime | None = None) -> SmsSendResult:
    return send_code(s, user, phone=phone, template="phone_verification", now=now)


def confirm_phone(s: Session, user: User, code: str, *, now: datetime | None = None) -> SmsVerifyResult:
    result = verify_code(s, user, code, template="phone_verification", now=now)
    if result.success and result.record is not None:
        user.phone_number = result.record.phone_number
        user.phone_verified = True
        record_event(
            s,
            actor=user,
            action="auth.phone_verified",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"phone": mask_phone(user.phone_number)},
        )
    return result


def enable_sms_two_factor(s: Session, user: User, *, now: datetime | None = None) -> list[str]:
    """Switch the account to SMS codes. Returns new backup codes when none remain."""
    from app.ygops.modules.two_factor.totp import generate_backup_codes, remaining_backup_codes

    if not (user.phone_number and user.phone_verified):
        raise ValidationError("Verify a phone number first", code="PHONE_NOT_VERIFIED")
    user.two_factor_enabled = True
    user.preferred_2fa_method = "SMS"
    user.two_factor_verified_at = now or utcnow()
    codes = generate_backup_codes(s, user) if remaining_backup_codes(s, user) == 0 else []
    record_event(s, actor=user, action="auth.2fa_enabled", entity_type="User", entity_id=str(user.id), metadata={"method": "SMS"})
    return codes


def update_delivery_status(
    s: Session,
    message_sid: str,
    status: str,
    *,
    error_code: str | None = None,
    error_message: str | None = None,
) -> int:
    result = s.execute(
        update(SmsVerificationCode)
        .where(SmsVerificationCode.twilio_message_sid == message_sid)
        .values(delivery_status=status, delivery_error=error_message or error_code or None)
    )
    return result.rowcount or 0


def user_costs(s: Session, user_id: int, *, start: datetime | None = None, end: datetime | None = None) -> dict:
    rows = _cost_rows(s, user_id=user_id, start=start, end=end)
    total_sent = len(rows)
    delivered = sum(1 for r in rows if r.delivery_status in ("delivered", "sent"))
    return {
        "total_cost": round(sum(r.cost or 0 for r in rows), 5),
        "total_sent": total_sent,
        "success_rate": round(delivered / total_sent * 100, 2) if total_sent else 0.0,
    }


def aggregate_costs(s: Session, *, start: datetime | None = None, end: datetime | None = None) -> dict:
    rows = _cost_rows(s, start=start, end=end)
    total_cost = sum(r.cost or 0 for r in rows)
    return {
        "total_cost": round(total_cost, 5),
        "total_sent": len(rows),
        "unique_users": len({r.user_id for r in rows}),
        "average_cost_per_sms": round(total_cost / len(rows), 5) if rows else 0.0,
        "delivery_stats": dict(Counter(r.delivery_status or "unknown" for r in rows)),
    }


def _cost_rows(
    s: Session, *, user_id: int | None = None, start: datetime | None = None, end: datetime | None = None
) -> list[SmsVerificationCode]:
    stmt = select(SmsVerificationCode)
    if user_id is not None:
        stmt = stmt.where(SmsVerificationCode.user_id == user_id)
    if start:
        stmt = stmt.where(SmsVerificationCode.created_at >= start)
    if end:
        stmt = stmt.where(SmsVerificationCode.created_at <= end)
    return list(s.execute(stmt).scalars().all())


def cleanup_expired_codes(s: Session, *, now: datetime | None = None) -> int:
    now = now or utcnow()
    result = s.execute(delete(SmsVerificationCode).where(SmsVerificationCode.expires_at < now))
    count = result.rowcount or 0
    if count:
        logger.info("Deleted %s expired SMS codes", count)
    return count


def sends_in_window(s: Session, user_id: int, *, now: datetime | None = None) -> int:
    now = now or utcnow()
    window_start = now - timedelta(minutes=RATE_LIMIT_WINDOW_MINUTES)
    return s.execute(
        select(func.count())
        .select_from(SmsVerificationCode)
        .where(SmsVerificationCode.user_id == user_id, SmsVerificationCode.created_at >= window_start)
    ).scalar_one()


def validate_twilio_signature(auth_token: str, url: str, params: dict[str, str], signature: str | None) -> bool:
    """Twilio request signing: base64(HMAC-SHA1(url + sorted key/value pairs))."""
    payload = url + "".join(f"{k}{params[k]}" for k in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return hmac.compare_digest(base64.b64encode(digest).decode("ascii"), signature or "")
