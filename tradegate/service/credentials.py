"""Password hashing, one-time codes, opaque tokens and signed access tokens."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import string
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tradegate.config import Settings
from tradegate.logging import get_logger

logger = get_logger(__name__)

SPECIAL_CHARACTERS = "!@#$%^&*"
ADMIN_ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_ADMIN_SETUP = "admin_setup"


@dataclass
class PasswordCheck:
    valid: bool
    reasons: List[str] = field(default_factory=list)


def validate_password_strength(plaintext: str, *, strict: bool = False) -> PasswordCheck:
    """Check a candidate password.

    The basic rule (self-service signup and reset) wants at least eight
    characters with a digit and one of ``!@#$%^&*``. The strict rule (admin
    credentials) additionally caps the length and requires both letter cases.
    """
    reasons: List[str] = []
    if len(plaintext) < MIN_PASSWORD_LENGTH:
        reasons.append(f"must be at least {MIN_PASSWORD_LENGTH} characters")
    if not re.search(r"\d", plaintext):
        reasons.append("must contain a number")
    if not any(ch in SPECIAL_CHARACTERS for ch in plaintext):
        reasons.append(f"must contain a special character ({SPECIAL_CHARACTERS})")
    if strict:
        if len(plaintext) > MAX_PASSWORD_LENGTH:
            reasons.append(f"must be at most {MAX_PASSWORD_LENGTH} characters")
        if not re.search(r"[a-z]", plaintext):
            reasons.append("must contain a lowercase letter")
        if not re.search(r"[A-Z]", plaintext):
            reasons.append("must contain an uppercase letter")
    return PasswordCheck(valid=not reasons, reasons=reasons)


class PasswordHashing:
    """Argon2id hashing with a work factor taken from settings."""

    def __init__(self, settings: Settings) -> None:
        self._hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            type=Type.ID,
        )

    def hash_password(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify_password(self, plaintext: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False


def generate_otp(length: int = 6) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def otp_expiry(ttl_minutes: int, now: Optional[datetime] = None) -> datetime:
    return (now or datetime.now(timezone.utc)) + timedelta(minutes=ttl_minutes)


def generate_opaque_token(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_admin_id() -> str:
    return "A" + "".join(secrets.choice(ADMIN_ID_ALPHABET) for _ in range(5))


def generate_temp_password(length: int = 12) -> str:
    """Random password satisfying the strict rule."""
    pools = [
        string.ascii_lowercase,
        string.ascii_uppercase,
        string.digits,
        SPECIAL_CHARACTERS,
    ]
    chars = [secrets.choice(pool) for pool in pools]
    alphabet = "".join(pools)
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _unb64url(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


_HS256_HEADER = _b64url(b'{"alg":"HS256","typ":"JWT"}')


class TokenSigner:
    """HS256 token issuance and verification.

    Verification returns ``None`` for anything unusable: bad signature, wrong
    algorithm, issuer or audience, expiry, or an unexpected token type.
    """

    def __init__(self, settings: Settings, *, clock_skew_seconds: int = 120) -> None:
        self.settings = settings
        self.clock_skew_seconds = clock_skew_seconds

    def _signature(self, header_b64: str, payload_b64: str) -> bytes:
        mac = hmac.new(
            self.settings.jwt_secret.encode(),
            f"{header_b64}.{payload_b64}".encode(),
            hashlib.sha256,
        )
        return _b64url(mac.digest()).encode("ascii")

    def _encode(self, claims: dict[str, Any]) -> str:
        body = _b64url(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode())
        return f"{_HS256_HEADER}.{body}.{self._signature(_HS256_HEADER, body).decode()}"

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 3:
            return None
        header_b64, body_b64, sig_b64 = parts
        # Signature first; nothing unauthenticated is parsed beyond the split
        if not hmac.compare_digest(
            self._signature(header_b64, body_b64), sig_b64.encode("utf-8", "replace")
        ):
            return None
        try:
            header = json.loads(_unb64url(header_b64))
            claims = json.loads(_unb64url(body_b64))
        except ValueError:
            logger.warning("token_segment_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("token_algorithm_rejected", alg=str(header)[:40])
            return None
        if not isinstance(claims, dict) or not self._claims_current(claims):
            return None
        return claims

    def _claims_current(self, claims: dict[str, Any]) -> bool:
        if claims.get("iss") != self.settings.jwt_issuer:
            return False
        audience = claims.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if self.settings.jwt_audience not in audiences:
            return False
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            return False
        return exp > time.time() - self.clock_skew_seconds

    def _claims(self, subject: str, token_type: str, ttl: timedelta) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    def issue_access_token(
        self,
        identity_id: str,
        *,
        email: str,
        role: Optional[str],
        extra: Optional[dict[str, Any]] = None,
    ) -> str:
        payload = self._claims(
            identity_id,
            TOKEN_TYPE_ACCESS,
            timedelta(minutes=self.settings.access_token_ttl_minutes),
        )
        payload.update({"email": email, "role": role})
        if extra:
            payload.update({k: v for k, v in extra.items() if k not in payload})
        return self._encode(payload)

    def issue_refresh_token(self, identity_id: str) -> tuple[str, datetime]:
        ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        payload = self._claims(identity_id, TOKEN_TYPE_REFRESH, ttl)
        return self._encode(payload), datetime.fromtimestamp(
            payload["exp"], tz=timezone.utc
        )

    def issue_setup_token(self, identity_id: str, *, email: str, admin_id: str) -> str:
        payload = self._claims(
            identity_id,
            TOKEN_TYPE_ADMIN_SETUP,
            timedelta(minutes=self.settings.admin_setup_token_ttl_minutes),
        )
        payload.update({"email": email, "admin_id": admin_id})
        return self._encode(payload)

    def _verify_typed(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        payload = self._decode(token)
        if not payload or payload.get("token_type") != token_type:
            return None
        if not payload.get("sub"):
            return None
        return payload

    def verify_access_token(self, token: str) -> Optional[dict[str, Any]]:
        return self._verify_typed(token, TOKEN_TYPE_ACCESS)

    def verify_refresh_token(self, token: str) -> Optional[dict[str, Any]]:
        return self._verify_typed(token, TOKEN_TYPE_REFRESH)

    def verify_setup_token(self, token: str) -> Optional[dict[str, Any]]:
        return self._verify_typed(token, TOKEN_TYPE_ADMIN_SETUP)
