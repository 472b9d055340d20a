from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.exceptions import RedisError

from tradegate.config import Settings
from tradegate.logging import get_logger
from tradegate.service.credentials import generate_opaque_token, hash_token
from tradegate.storage.models import OtpCheck, RefreshRecord, ResetTokenRecord
from tradegate.storage.redis_cache import RedisCache
from tradegate.storage.repositories import IdentityRepo, SessionRepo

logger = get_logger(__name__)


class SessionStore:
    """Refresh records plus single-use OTPs and reset tokens.

    The durable store decides every check. Redis, when present, mirrors the
    transient artifacts so expired keys vanish on their own; a cache miss or
    outage always falls through to the durable record.
    """

    def __init__(self, store, cache: Optional[RedisCache], settings: Settings) -> None:
        self.store = store
        self.identities: IdentityRepo = store
        self.sessions: SessionRepo = store
        self.cache = cache
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- refresh tokens ------------------------------------------------------

    def create_refresh_record(
        self, identity_id: str, token: str, expires_at: datetime
    ) -> RefreshRecord:
        return self.sessions.create_refresh_record(identity_id, hash_token(token), expires_at)

    async def find_valid_refresh_record(self, token: str) -> Optional[RefreshRecord]:
        token_hash = hash_token(token)
        if self.cache:
            try:
                if await self.cache.is_refresh_revoked(token_hash):
                    return None
            except (RedisError, OSError) as exc:
                logger.warning("refresh_revocation_cache_unavailable", error=str(exc))
        record = self.sessions.find_refresh_record(token_hash)
        if not record or not record.is_usable(self._now()):
            return None
        return record

    async def revoke(self, token: str) -> bool:
        token_hash = hash_token(token)
        revoked = self.sessions.revoke_refresh_record(token_hash)
        if revoked and self.cache:
            ttl = int(timedelta(minutes=self.settings.refresh_token_ttl_minutes).total_seconds())
            try:
                await self.cache.mark_refresh_revoked(token_hash, ttl)
            except (RedisError, OSError) as exc:
                logger.warning("refresh_revocation_cache_write_failed", error=str(exc))
        return revoked

    def revoke_all(self, identity_id: str) -> int:
        return self.sessions.revoke_all_refresh_records(identity_id)

    def purge_expired(self) -> int:
        return self.sessions.purge_expired_refresh_records(self._now())

    # -- one-time codes ------------------------------------------------------

    async def store_otp(self, identity_id: str, otp: str, ttl_minutes: int) -> datetime:
        expires_at = self._now() + timedelta(minutes=ttl_minutes)
        self.identities.set_otp(identity_id, otp, expires_at)
        if self.cache:
            try:
                await self.cache.store_otp(identity_id, otp, expires_at)
            except (RedisError, OSError) as exc:
                logger.warning("otp_cache_write_failed", identity_id=identity_id, error=str(exc))
        return expires_at

    async def verify_otp(self, identity_id: str, otp: str) -> OtpCheck:
        """Check a one-time code against the cache first, then the durable store.

        A cache hit consumes the code there and clears the durable copy. A miss,
        a mismatch or an outage falls through to the durable compare-and-clear,
        so a stale cache entry never rejects a code the store still holds.
        """
        if self.cache:
            try:
                cached = await self.cache.consume_otp(identity_id, otp)
            except (RedisError, OSError) as exc:
                logger.warning("otp_cache_unavailable", identity_id=identity_id, error=str(exc))
                cached = None
            if cached is True:
                self.identities.clear_otp(identity_id)
                return OtpCheck.VALID
        return self.identities.consume_otp(identity_id, otp, self._now())

    async def clear_otp(self, identity_id: str) -> None:
        self.identities.clear_otp(identity_id)
        if self.cache:
            try:
                await self.cache.clear_otp(identity_id)
            except (RedisError, OSError) as exc:
                logger.warning("otp_cache_clear_failed", identity_id=identity_id, error=str(exc))

    # -- password reset ------------------------------------------------------

    async def store_reset_token(self, identity_id: str, ttl_minutes: int) -> str:
        token = generate_opaque_token(32)
        now = self._now()
        record = ResetTokenRecord(
            token_hash=hash_token(token),
            identity_id=identity_id,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )
        self.sessions.create_reset_token(record)
        if self.cache:
            try:
                await self.cache.cache_reset_token(
                    record.token_hash, identity_id, record.expires_at
                )
            except (RedisError, OSError) as exc:
                logger.warning("reset_token_cache_write_failed", error=str(exc))
        return token

    def verify_reset_token(self, token: str) -> Optional[str]:
        """Identity id for a live token without consuming it."""
        record = self.sessions.get_reset_token(hash_token(token))
        if not record or record.used or record.expires_at <= self._now():
            return None
        return record.identity_id

    async def consume_reset_token(self, token: str) -> Optional[str]:
        token_hash = hash_token(token)
        identity_id = self.sessions.consume_reset_token(token_hash, self._now())
        if self.cache:
            try:
                await self.cache.delete_reset_token(token_hash)
            except (RedisError, OSError) as exc:
                logger.warning("reset_token_cache_clear_failed", error=str(exc))
        return identity_id

    def invalidate_reset_tokens(self, identity_id: str) -> int:
        return self.sessions.invalidate_reset_tokens(identity_id)
