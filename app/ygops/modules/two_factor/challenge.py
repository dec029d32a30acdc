"""
Second step of password login for accounts with two-factor enabled.

A challenge lives in the cache under `2fa:challenge:{id}`; the client only ever
sees an opaque token, mapped to the id under `2fa:token:{token}`. Both keys
expire with the challenge.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from app.ygops.audit import record_event
from app.ygops.cache import CacheBackend, get_cache_backend
from app.ygops.errors import AppError, ForbiddenError, NotFoundError, ValidationError
from app.ygops.models import AuditEvent, User
from app.ygops.modules.two_factor import lockout, sms, totp
from app.ygops.ratelimit import RateLimiter
from app.ygops.utils import parse_datetime, utcnow

logger = logging.getLogger(__name__)

CHALLENGE_EXPIRY_MINUTES = 10
MAX_VERIFICATION_ATTEMPTS = 5
MAX_METHOD_SWITCHES = 3
TOTP_REPLAY_SECONDS = 120
NEW_IP_LOOKBACK_DAYS = 30
NEW_IP_RECENT_LOGINS = 5

METHODS = ("AUTHENTICATOR", "SMS")


def challenge_key(challenge_id: str) -> str:
    return f"2fa:challenge:{challenge_id}"


def token_key(token: str) -> str:
    return f"2fa:token:{token}"


def replay_key(user_id: int) -> str:
    return f"2fa:totp-used:{user_id}"


def switch_key(user_id: int) -> str:
    return f"2fa:challenge:{user_id}:switch_count"


@dataclass
class Challenge:
    challenge_id: str
    user_id: int
    method: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    otp_hash: str | None = None
    phone_number: str | None = None
    ip: str | None = None

    def to_cache(self) -> dict:
        return {
            "user_id": self.user_id,
            "method": self.method,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "attempts": self.attempts,
            "otp_hash": self.otp_hash,
            "phone_number": self.phone_number,
            "ip": self.ip,
        }

    @classmethod
    def from_cache(cls, challenge_id: str, data: dict) -> "Challenge":
        return cls(
            challenge_id=challenge_id,
            user_id=int(data["user_id"]),
            method=data["method"],
            created_at=parse_datetime(data["created_at"]),  # type: ignore[arg-type]
            expires_at=parse_datetime(data["expires_at"]),  # type: ignore[arg-type]
            attempts=int(data.get("attempts") or 0),
            otp_hash=data.get("otp_hash"),
            phone_number=data.get("phone_number"),
            ip=data.get("ip"),
        )


@dataclass(frozen=True)
class ChallengeToken:
    token: str
    challenge_id: str
    expires_at: datetime
    method: str
    masked_phone: str | None = None

    def to_dict(self) -> dict:
        return {
            "challenge_token": self.token,
            "method": self.method,
            "expires_at": self.expires_at.isoformat(),
            "masked_phone": self.masked_phone,
        }


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    user: User | None = None
    error: str | None = None
    code: str | None = None
    status: int = 400
    attempts_remaining: int | None = None
    locked_until: datetime | None = None
    new_ip: bool = False
    used_backup_code: bool = False
    details: dict = field(default_factory=dict)


def _fail(error: str, code: str, status: int = 400, **kwargs) -> VerificationResult:
    return VerificationResult(False, error=error, code=code, status=status, **kwargs)


class ChallengeService:
    def __init__(self, backend: CacheBackend | None = None) -> None:
        self.backend = backend or get_cache_backend()
        self.limiter = RateLimiter(self.backend)

    # storage
    def _ttl(self, expires_at: datetime, now: datetime) -> int:
        return max(1, int((expires_at - now).total_seconds()))

    def _store(self, challenge: Challenge, token: str | None, now: datetime) -> None:
        ttl = self._ttl(challenge.expires_at, now)
        self.backend.set_json(challenge_key(challenge.challenge_id), challenge.to_cache(), ttl_seconds=ttl)
        if token:
            self.backend.set(token_key(token), challenge.challenge_id, ttl_seconds=ttl)

    def get(self, token: str) -> Challenge | None:
        if not token:
            return None
        challenge_id = self.backend.get(token_key(token))
        if not challenge_id:
            return None
        data = self.backend.get_json(challenge_key(challenge_id))
        if not data:
            return None
        return Challenge.from_cache(challenge_id, data)

    def invalidate(self, token: str) -> None:
        challenge_id = self.backend.get(token_key(token))
        if challenge_id:
            self.backend.delete(challenge_key(challenge_id))
        self.backend.delete(token_key(token))

    # replay protection
    def _is_replay(self, user_id: int, step: int, now: datetime) -> bool:
        used = self.backend.get_json(replay_key(user_id)) or []
        cutoff = totp.epoch_seconds(now) - TOTP_REPLAY_SECONDS
        return any(entry.get("step") == step and entry.get("ts", 0) >= cutoff for entry in used)

    def _remember_step(self, user_id: int, step: int, now: datetime) -> None:
        ts = totp.epoch_seconds(now)
        cutoff = ts - TOTP_REPLAY_SECONDS
        used = [e for e in (self.backend.get_json(replay_key(user_id)) or []) if e.get("ts", 0) >= cutoff]
        used.append({"step": step, "ts": ts})
        self.backend.set_json(replay_key(user_id), used, ttl_seconds=TOTP_REPLAY_SECONDS)

    def _send_sms(self, s: Session, user: User, phone: str, now: datetime, *, backoff: bool = True) -> str:
        otp = sms.generate_code()
        result = sms.send_code(
            s, user, phone=phone, template="login_verification", code=otp, now=now, backoff=backoff
        )
        if not result.success:
            raise AppError(
                result.error or "Failed to send verification code. Please try again.",
                code="SMS_SEND_FAILED",
                status=502,
            )
        return generate_password_hash(otp)

    def initiate(self, s: Session, user: User, *, ip: str | None = None, now: datetime | None = None) -> ChallengeToken:
        now = now or utcnow()
        if user.is_locked(now):
            raise ForbiddenError(
                f"Account is locked until {user.locked_until.isoformat()}",  # type: ignore[union-attr]
                code="ACCOUNT_LOCKED",
                details={"locked_until": user.locked_until.isoformat()},  # type: ignore[union-attr]
            )
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled for this account", code="2FA_NOT_ENABLED")
        self.limiter.check_or_raise(str(user.id), "2fa_challenge")

        method = user.preferred_2fa_method or "AUTHENTICATOR"
        challenge = Challenge(
            challenge_id=secrets.token_hex(16),
            user_id=user.id,
            method=method,
            created_at=now,
            expires_at=now + timedelta(minutes=CHALLENGE_EXPIRY_MINUTES),
            ip=ip,
        )
        if method == "SMS":
            if not (user.phone_number and user.phone_verified):
                raise ValidationError("Phone number not verified for SMS authentication", code="PHONE_NOT_VERIFIED")
            # first code of a sign-in is not held back by earlier sends
            challenge.otp_hash = self._send_sms(s, user, user.phone_number, now, backoff=False)
            challenge.phone_number = user.phone_number

        token = secrets.token_urlsafe(32)
        self._store(challenge, token, now)
        record_event(s, actor=user, action="auth.2fa_challenge", entity_type="User", entity_id=str(user.id), metadata={"method": method}, ip=ip)
        return ChallengeToken(
            token=token,
            challenge_id=challenge.challenge_id,
            expires_at=challenge.expires_at,
            method=method,
            masked_phone=sms.mask_phone(user.phone_number) if method == "SMS" else None,
        )

    def _record_failure(self, s: Session, user: User, ip: str | None, now: datetime) -> lockout.LockoutStatus:
        status = lockout.record_failed_attempt(s, user, now=now, ip=ip)
        record_event(
            s,
            actor=user,
            action="auth.2fa_failed",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"failed_attempts": status.failed_attempts, "locked": status.is_locked},
            ip=ip,
        )
        return status

    def _is_new_ip(self, s: Session, user: User, ip: str | None, now: datetime) -> bool:
        if not ip:
            return False
        rows = s.execute(
            select(AuditEvent.client_ip)
            .where(
                AuditEvent.action == "auth.2fa_success",
                AuditEvent.entity_type == "User",
                AuditEvent.entity_id == str(user.id),
                AuditEvent.created_at >= now - timedelta(days=NEW_IP_LOOKBACK_DAYS),
            )
            .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .limit(NEW_IP_RECENT_LOGINS)
        ).scalars().all()
        return ip not in {r for r in rows if r}

    def verify(
        self,
        s: Session,
        token: str,
        code: str,
        *,
        ip: str | None = None,
        now: datetime | None = None,
    ) -> VerificationResult:
        """
        Check a TOTP, SMS or backup code against the challenge behind `token`.
        Failed attempts are counted towards the account lockout; the caller commits.
        """
        now = now or utcnow()
        challenge = self.get(token)
        if challenge is None:
            return _fail("Invalid or expired challenge token", "CHALLENGE_EXPIRED", 401)
        if challenge.expires_at <= now:
            self.invalidate(token)
            return _fail("Challenge has expired. Please sign in again.", "CHALLENGE_EXPIRED", 401)
        if challenge.attempts >= MAX_VERIFICATION_ATTEMPTS:
            self.invalidate(token)
            return _fail("Maximum verification attempts exceeded", "CHALLENGE_ATTEMPTS_EXCEEDED", 429, attempts_remaining=0)

        user = s.get(User, challenge.user_id)
        if not user or not user.is_active:
            self.invalidate(token)
            return _fail("Invalid or expired challenge token", "CHALLENGE_EXPIRED", 401)
        if user.is_locked(now):
            return _fail("Account is temporarily locked", "ACCOUNT_LOCKED", 403, locked_until=user.locked_until)

        limit = self.limiter.check(str(user.id), "2fa_verify")
        if not limit.allowed:
            minutes = max(1, -(-limit.retry_after // 60))
            return _fail(
                f"Too many verification attempts. Please try again in {minutes} minutes.",
                "RATE_LIMIT_EXCEEDED",
                429,
                details={"retry_after": limit.retry_after},
            )

        code = (code or "").strip()
        ok = False
        used_backup = False
        matched_step: int | None = None

        if totp.is_valid_token_format(code):
            if challenge.method == "AUTHENTICATOR":
                secret = totp.user_secret(user)
                if not secret:
                    return _fail("Authenticator is not configured", "TOTP_NOT_CONFIGURED")
                matched_step = totp.match_timestep(secret, code, now=now)
                if matched_step is not None and self._is_replay(user.id, matched_step, now):
                    status = self._record_failure(s, user, ip, now)
                    return _fail(
                        "This code has already been used",
                        "TOTP_REPLAY",
                        401,
                        locked_until=status.locked_until,
                    )
                ok = matched_step is not None
            elif challenge.otp_hash:
                ok = check_password_hash(challenge.otp_hash, totp.normalize_token(code))
        else:
            used_backup = totp.verify_backup_code(s, user, code, now=now)
            ok = used_backup

        if not ok:
            challenge.attempts += 1
            self._store(challenge, None, now)
            status = self._record_failure(s, user, ip, now)
            if status.is_locked:
                self.invalidate(token)
                return _fail("Account is temporarily locked", "ACCOUNT_LOCKED", 403, locked_until=status.locked_until)
            return _fail(
                "Invalid verification code",
                "INVALID_CODE",
                401,
                attempts_remaining=max(0, MAX_VERIFICATION_ATTEMPTS - challenge.attempts),
            )

        if matched_step is not None:
            self._remember_step(user.id, matched_step, now)
        new_ip = self._is_new_ip(s, user, ip, now)
        lockout.reset_failed_attempts(user)
        self.invalidate(token)
        self.backend.delete(switch_key(user.id))
        user.last_login_at = now
        user.two_factor_verified_at = now
        record_event(
            s,
            actor=user,
            action="auth.2fa_success",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"method": "BACKUP_CODE" if used_backup else challenge.method, "new_ip": new_ip},
            ip=ip,
        )
        if new_ip:
            logger.info("User %s completed 2FA from a new IP address %s", user.id, ip)
        return VerificationResult(True, user=user, status=200, new_ip=new_ip, used_backup_code=used_backup)

    def resend(self, s: Session, token: str, *, now: datetime | None = None) -> dict:
        now = now or utcnow()
        challenge = self.get(token)
        if challenge is None or challenge.expires_at <= now:
            raise AppError("Challenge has expired. Please sign in again.", code="CHALLENGE_EXPIRED", status=401)
        if challenge.method != "SMS":
            raise ValidationError("This challenge does not use SMS verification", code="INVALID_METHOD")
        user = s.get(User, challenge.user_id)
        if not user or not challenge.phone_number:
            raise NotFoundError("Phone number not found", code="PHONE_NOT_FOUND")
        result = self.limiter.check_or_raise(str(user.id), "2fa_resend")

        challenge.otp_hash = self._send_sms(s, user, challenge.phone_number, now)
        challenge.attempts = 0
        challenge.expires_at = now + timedelta(minutes=CHALLENGE_EXPIRY_MINUTES)
        self._store(challenge, token, now)
        return {"sent": True, "remaining_resends": result.remaining, "expires_at": challenge.expires_at.isoformat()}

    def switch_method(self, s: Session, token: str, new_method: str, *, ip: str | None = None, now: datetime | None = None) -> ChallengeToken:
        now = now or utcnow()
        new_method = (new_method or "").upper()
        if new_method not in METHODS:
            raise ValidationError(f"Unknown method: {new_method}", code="INVALID_METHOD")
        challenge = self.get(token)
        if challenge is None:
            raise AppError("Invalid or expired challenge token", code="CHALLENGE_EXPIRED", status=401)
        if challenge.expires_at <= now:
            self.invalidate(token)
            raise AppError("Challenge has expired. Please sign in again.", code="CHALLENGE_EXPIRED", status=401)

        count = self.backend.incr(switch_key(challenge.user_id), ttl_seconds=self._ttl(challenge.expires_at, now))
        if count > MAX_METHOD_SWITCHES:
            raise AppError(
                "Maximum method switches exceeded. Please restart the login process.",
                code="SWITCH_LIMIT_EXCEEDED",
                status=429,
            )
        user = s.get(User, challenge.user_id)
        if not user:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        has_totp = user.two_factor_enabled and bool(user.two_factor_secret)
        has_sms = user.phone_verified and bool(user.phone_number)
        if not (has_totp and has_sms):
            raise ValidationError(
                "Both SMS and authenticator methods must be enabled to switch between them",
                code="METHOD_NOT_AVAILABLE",
            )
        if challenge.method == new_method:
            raise ValidationError("Already using this verification method", code="INVALID_METHOD")

        replacement = Challenge(
            challenge_id=secrets.token_hex(16),
            user_id=user.id,
            method=new_method,
            created_at=now,
            expires_at=challenge.expires_at,
            ip=ip or challenge.ip,
        )
        if new_method == "SMS":
            replacement.otp_hash = self._send_sms(s, user, user.phone_number, now)  # type: ignore[arg-type]
            replacement.phone_number = user.phone_number
        new_token = secrets.token_urlsafe(32)
        self._store(replacement, new_token, now)
        self.invalidate(token)
        return ChallengeToken(
            token=new_token,
            challenge_id=replacement.challenge_id,
            expires_at=replacement.expires_at,
            method=new_method,
            masked_phone=sms.mask_phone(user.phone_number) if new_method == "SMS" else None,
        )
