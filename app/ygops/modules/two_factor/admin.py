from __future__ import annotations

from flask import Blueprint, current_app, g, request

from app.ygops.audit import client_ip, record_event
from app.ygops.auth import establish_session
from app.ygops.cache import get_cache
from app.ygops.db import db_session
from app.ygops.errors import AppError, ForbiddenError, NotFoundError, ValidationError, error_response
from app.ygops.models import User
from app.ygops.modules.two_factor import lockout, sms, totp
from app.ygops.modules.two_factor.challenge import ChallengeService
from app.ygops.ratelimit import get_rate_limiter
from app.ygops.rbac import require_login, require_permission
from app.ygops.utils import parse_datetime, request_payload

bp = Blueprint("two_factor", __name__)
webhooks_bp = Blueprint("twilio_webhooks", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _user_or_404(user_id: int) -> User:
    user = db_session().get(User, user_id)
    if not user:
        raise NotFoundError("User not found", code="USER_NOT_FOUND")
    return user


def _send_failed(result: sms.SmsSendResult):
    return error_response("SMS_SEND_FAILED", result.error or "Failed to send verification code", 502)


def _forget(user: User) -> None:
    get_cache().invalidate_user(user.id)


# ---------- Account settings ----------
@bp.get("/status")
@require_login
def status():
    return totp.status(db_session(), _current_user())


@bp.post("/totp/setup")
@require_login
def totp_setup():
    s = db_session()
    setup = totp.begin_setup(s, _current_user())
    s.commit()
    return setup


@bp.post("/totp/enable")
@require_login
def totp_enable():
    s = db_session()
    payload = request_payload(request)
    codes = totp.confirm_setup(s, _current_user(), str(payload.get("code") or ""))
    s.commit()
    _forget(_current_user())
    return {"enabled": True, "method": "AUTHENTICATOR", "backup_codes": codes}


@bp.post("/disable")
@require_login
def disable():
    s = db_session()
    payload = request_payload(request)
    totp.disable(s, _current_user(), password=str(payload.get("password") or ""), code=str(payload.get("code") or ""))
    s.commit()
    _forget(_current_user())
    return {"enabled": False}


@bp.post("/backup-codes/regenerate")
@require_login
def backup_codes_regenerate():
    s = db_session()
    payload = request_payload(request)
    codes = totp.regenerate_backup_codes(s, _current_user(), password=str(payload.get("password") or ""))
    s.commit()
    return {"backup_codes": codes}


@bp.post("/phone/send")
@require_login
def phone_send():
    s = db_session()
    payload = request_payload(request)
    result = sms.send_phone_verification(s, _current_user(), str(payload.get("phone_number") or ""))
    s.commit()
    if not result.success:
        return _send_failed(result)
    return {"sent": True, "masked_phone": sms.mask_phone(result.record.phone_number), "expires_at": result.record.expires_at.isoformat()}


@bp.post("/phone/verify")
@require_login
def phone_verify():
    s = db_session()
    payload = request_payload(request)
    result = sms.confirm_phone(s, _current_user(), str(payload.get("code") or ""))
    s.commit()
    if not result.success:
        return error_response("INVALID_CODE", result.error or "Invalid code", 400, {"attempts_remaining": result.attempts_remaining})
    _forget(_current_user())
    return {"phone_verified": True}


@bp.post("/sms/enable")
@require_login
def sms_enable():
    s = db_session()
    codes = sms.enable_sms_two_factor(s, _current_user())
    s.commit()
    _forget(_current_user())
    return {"enabled": True, "method": "SMS", "backup_codes": codes}


# ---------- Login challenge (no session yet) ----------
@bp.post("/challenge/verify")
def challenge_verify():
    s = db_session()
    payload = request_payload(request)
    result = ChallengeService().verify(
        s,
        str(payload.get("challenge_token") or ""),
        str(payload.get("code") or ""),
        ip=client_ip(),
    )
    if not result.success:
        s.commit()
        details = dict(result.details)
        if result.attempts_remaining is not None:
            details["attempts_remaining"] = result.attempts_remaining
        if result.locked_until:
            details["locked_until"] = result.locked_until.isoformat()
        return error_response(result.code or "INVALID_CODE", result.error or "Verification failed", result.status, details)

    establish_session(result.user)  # type: ignore[arg-type]
    s.commit()
    _forget(result.user)  # type: ignore[arg-type]
    return {
        "ok": True,
        "user": result.user.to_dict(),  # type: ignore[union-attr]
        "new_ip": result.new_ip,
        "used_backup_code": result.used_backup_code,
    }


@bp.post("/challenge/resend")
def challenge_resend():
    s = db_session()
    payload = request_payload(request)
    try:
        out = ChallengeService().resend(s, str(payload.get("challenge_token") or ""))
    except AppError:
        # failed sends are recorded and count towards the SMS limit
        s.commit()
        raise
    s.commit()
    return out


@bp.post("/challenge/switch")
def challenge_switch():
    s = db_session()
    payload = request_payload(request)
    try:
        token = ChallengeService().switch_method(
            s,
            str(payload.get("challenge_token") or ""),
            str(payload.get("method") or ""),
            ip=client_ip(),
        )
    except AppError:
        s.commit()
        raise
    s.commit()
    return token.to_dict()


# ---------- Administration ----------
@bp.get("/admin/lockouts")
@require_permission("users:view_activity")
def admin_lockout_stats():
    return lockout.get_lockout_stats(db_session())


@bp.post("/admin/users/<int:user_id>/unlock")
@require_permission("users:activate")
def admin_unlock(user_id: int):
    s = db_session()
    user = lockout.unlock_account(s, user_id, actor=_current_user())
    s.commit()
    _forget(user)
    return {"user": user.to_dict(), "lockout": lockout.get_status(user).to_dict()}


@bp.post("/admin/users/<int:user_id>/reset")
@require_permission("users:manage_2fa")
def admin_reset(user_id: int):
    s = db_session()
    payload = request_payload(request)
    user = _user_or_404(user_id)
    totp.admin_reset(s, user, actor=_current_user(), reason=str(payload.get("reason") or ""))
    s.commit()
    _forget(user)
    return {"user": user.to_dict()}


@bp.get("/admin/sms-costs")
@require_permission("users:manage_2fa")
def admin_sms_costs():
    s = db_session()
    try:
        start = parse_datetime(request.args.get("start"))
        end = parse_datetime(request.args.get("end"))
    except ValueError as e:
        raise ValidationError("start/end must be ISO-8601 datetimes") from e
    user_id = request.args.get("user_id", type=int)
    if user_id:
        return sms.user_costs(s, user_id, start=start, end=end)
    return sms.aggregate_costs(s, start=start, end=end)


# ---------- Twilio delivery callbacks ----------
@webhooks_bp.post("/twilio/status")
def twilio_status():
    get_rate_limiter().check_or_raise(client_ip() or "unknown", "webhook")
    params = {k: v for k, v in request.form.items()}
    auth_token = current_app.config.get("TWILIO_AUTH_TOKEN") or ""
    if auth_token:
        url = current_app.config.get("TWILIO_STATUS_CALLBACK_URL") or request.url
        if not sms.validate_twilio_signature(auth_token, url, params, request.headers.get("X-Twilio-Signature")):
            raise ForbiddenError("Invalid Twilio signature", code="INVALID_SIGNATURE")

    sid = (params.get("MessageSid") or "").strip()
    message_status = (params.get("MessageStatus") or "").strip()
    if not sid or not message_status:
        raise ValidationError("MessageSid and MessageStatus are required")

    s = db_session()
    updated = sms.update_delivery_status(
        s,
        sid,
        message_status,
        error_code=params.get("ErrorCode"),
        error_message=params.get("ErrorMessage"),
    )
    if message_status in ("failed", "undelivered"):
        record_event(
            s,
            actor=None,
            action="sms.delivery_failed",
            entity_type="SmsVerificationCode",
            entity_id=sid,
            metadata={"error_code": params.get("ErrorCode")},
        )
    s.commit()
    return {"ok": True, "updated": updated}
