from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tradegate.config import get_settings, reset_settings_cache
from tradegate.logging import get_logger
from tradegate.service.admin import AdminService
from tradegate.service.auth import AuthService
from tradegate.service.blobs import LocalBlobStore
from tradegate.service.credentials import PasswordHashing, TokenSigner
from tradegate.service.identity import IdentityService
from tradegate.service.notifier import EmailService, Notifier, SmsService
from tradegate.service.roles import RolePolicy
from tradegate.service.sessions import SessionStore
from tradegate.service.verification import VerificationWorkflow
from tradegate.storage.memory import MemoryStore
from tradegate.storage.postgres import PostgresStore
from tradegate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in tests so the pool never binds to a short-lived loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the OTP and reset-token cache; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to run on the durable store alone."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; one-time codes and "
                    "reset tokens are served from the durable store only."
                ),
                mode=fallback_mode,
            )

        self.hashing = PasswordHashing(self.settings)
        self.signer = TokenSigner(self.settings)
        self.sessions = SessionStore(self.store, self.cache, self.settings)
        self.policy = RolePolicy(self.store, self.settings)
        self.identities = IdentityService(self.store, self.policy, self.settings)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            dev_mode=self.settings.notification_dev_mode,
        )
        self.sms = SmsService(
            gateway_url=self.settings.sms_gateway_url,
            token=self.settings.sms_gateway_token,
            sender_id=self.settings.sms_sender_id,
            dev_mode=self.settings.notification_dev_mode,
        )
        self.notifier = Notifier(self.email, self.sms, base_url=self.settings.app_base_url)
        self.blobs = LocalBlobStore(self.settings.shared_fs_root, self.settings.jwt_secret)

        self.verification = VerificationWorkflow(
            self.store, self.policy, self.notifier, self.blobs, self.settings
        )
        self.auth = AuthService(
            identities=self.identities,
            policy=self.policy,
            sessions=self.sessions,
            signer=self.signer,
            hashing=self.hashing,
            notifier=self.notifier,
            settings=self.settings,
        )
        self.admin = AdminService(
            identities=self.identities,
            sessions=self.sessions,
            signer=self.signer,
            auth=self.auth,
            notifier=self.notifier,
            settings=self.settings,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            reveal_account_state=self.settings.reveal_account_state,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, building it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    if isinstance(cache, SyncRedisCache):
        cache.client.close()
        return
    try:
        asyncio.get_running_loop().create_task(cache.close())
    except RuntimeError:
        asyncio.run(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from fresh settings; refused outside TEST_MODE."""
    global runtime

    with _runtime_lock:
        previous = runtime
        if previous is not None and previous.cache is not None:
            try:
                _close_cache(previous.cache)
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
