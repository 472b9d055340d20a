"""Backend helpers and the Redis mirror path of the session store."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from redis.exceptions import ConnectionError as RedisConnectionError

from tradegate.service.sessions import SessionStore
from tradegate.storage.models import OtpCheck
from tradegate.storage.postgres import _unique_field
from tradegate.storage.redis_cache import RedisCache, _otp_result


class FakeCache:
    """Dict-backed stand-in for RedisCache with the same awaitable surface."""

    def __init__(self, fail=False):
        self.fail = fail
        self.otps = {}
        self.revoked = set()
        self.resets = {}

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis down")

    async def store_otp(self, identity_id, otp, expires_at):
        self._check()
        self.otps[identity_id] = otp

    async def consume_otp(self, identity_id, otp):
        self._check()
        stored = self.otps.get(identity_id)
        if stored is None:
            return None
        if stored == otp:
            del self.otps[identity_id]
            return True
        return False

    async def clear_otp(self, identity_id):
        self._check()
        self.otps.pop(identity_id, None)

    async def cache_reset_token(self, token_hash, identity_id, expires_at):
        self._check()
        self.resets[token_hash] = identity_id

    async def delete_reset_token(self, token_hash):
        self._check()
        self.resets.pop(token_hash, None)

    async def mark_refresh_revoked(self, token_hash, ttl_seconds):
        self._check()
        self.revoked.add(token_hash)

    async def is_refresh_revoked(self, token_hash):
        self._check()
        return token_hash in self.revoked


class TestRedisHelpers:
    def test_otp_script_results(self):
        assert _otp_result(-1) is None
        assert _otp_result("1") is True
        assert _otp_result(0) is False

    def test_ttl_is_at_least_one_second(self):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        assert RedisCache._ttl_seconds(past) == 1

    def test_naive_expiry_treated_as_utc(self):
        naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(minutes=10)
        assert 590 <= RedisCache._ttl_seconds(naive) <= 600


class TestPostgresHelpers:
    def test_unique_field_from_constraint_name(self):
        def violation(name):
            return SimpleNamespace(diag=SimpleNamespace(constraint_name=name))

        assert _unique_field(violation("identities_email_key")) == "email"
        assert _unique_field(violation("identities_phone_key")) == "phone"
        assert _unique_field(violation("identities_admin_id_key")) == "admin_id"
        assert _unique_field(violation(None)) == "id"
        assert _unique_field(object()) == "id"


class TestCachedSessions:
    def _sessions(self, services, cache):
        return SessionStore(services.store, cache, services.settings)

    async def test_otp_mirrored_and_consumed_once(self, services, make_identity):
        identity = make_identity()
        cache = FakeCache()
        sessions = self._sessions(services, cache)
        await sessions.store_otp(identity.id, "123456", 10)
        assert cache.otps[identity.id] == "123456"
        assert await sessions.verify_otp(identity.id, "123456") is OtpCheck.VALID
        assert identity.id not in cache.otps
        assert await sessions.verify_otp(identity.id, "123456") is OtpCheck.INVALID

    async def test_cache_hit_clears_durable_copy(self, services, make_identity):
        identity = make_identity()
        cache = FakeCache()
        sessions = self._sessions(services, cache)
        await sessions.store_otp(identity.id, "123456", 10)
        assert await sessions.verify_otp(identity.id, "123456") is OtpCheck.VALID
        assert services.store.get_identity(identity.id).otp is None

    async def test_stale_cache_entry_defers_to_store(self, services, make_identity):
        identity = make_identity()
        cache = FakeCache()
        sessions = self._sessions(services, cache)
        await sessions.store_otp(identity.id, "123456", 10)
        cache.otps[identity.id] = "000000"
        assert await sessions.verify_otp(identity.id, "123456") is OtpCheck.VALID
        assert await sessions.verify_otp(identity.id, "123456") is OtpCheck.INVALID

    async def test_durable_store_decides_when_cache_missed(self, services, make_identity):
        identity = make_identity()
        cache = FakeCache()
        sessions = self._sessions(services, cache)
        await sessions.store_otp(identity.id, "123456", 10)
        cache.otps.clear()
        assert await sessions.verify_otp(identity.id, "123456") is OtpCheck.VALID

    async def test_cache_outage_falls_back(self, services, make_identity):
        identity = make_identity()
        sessions = self._sessions(services, FakeCache(fail=True))
        await sessions.store_otp(identity.id, "654321", 10)
        assert await sessions.verify_otp(identity.id, "654321") is OtpCheck.VALID

        token, expires_at = services.signer.issue_refresh_token(identity.id)
        sessions.create_refresh_record(identity.id, token, expires_at)
        assert await sessions.find_valid_refresh_record(token) is not None
        assert await sessions.revoke(token) is True
        assert await sessions.find_valid_refresh_record(token) is None

    async def test_revocation_mirrored(self, services, make_identity):
        identity = make_identity()
        cache = FakeCache()
        sessions = self._sessions(services, cache)
        token, expires_at = services.signer.issue_refresh_token(identity.id)
        record = sessions.create_refresh_record(identity.id, token, expires_at)
        assert await sessions.revoke(token) is True
        assert record.token_hash in cache.revoked

    async def test_cached_revocation_wins(self, services, make_identity):
        identity = make_identity()
        cache = FakeCache()
        sessions = self._sessions(services, cache)
        token, expires_at = services.signer.issue_refresh_token(identity.id)
        record = sessions.create_refresh_record(identity.id, token, expires_at)
        cache.revoked.add(record.token_hash)
        assert await sessions.find_valid_refresh_record(token) is None

    async def test_reset_token_mirrored_and_cleared(self, services, make_identity):
        identity = make_identity()
        cache = FakeCache()
        sessions = self._sessions(services, cache)
        token = await sessions.store_reset_token(identity.id, 15)
        assert list(cache.resets.values()) == [identity.id]
        assert await sessions.consume_reset_token(token) == identity.id
        assert cache.resets == {}
        assert await sessions.consume_reset_token(token) is None
