import asyncio
import inspect
import os
import sys
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tradegate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Durable store only; the suite never needs a Redis server
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters keep hashing fast in tests
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8192")

import pytest  # noqa: E402
from fastapi.dependencies import utils as fastapi_dep_utils  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tradegate.config import Settings  # noqa: E402
from tradegate.service.admin import AdminService  # noqa: E402
from tradegate.service.auth import AuthService  # noqa: E402
from tradegate.service.blobs import LocalBlobStore  # noqa: E402
from tradegate.service.credentials import PasswordHashing, TokenSigner  # noqa: E402
from tradegate.service.errors import AuthenticationError, ErrorCode  # noqa: E402
from tradegate.service.identity import IdentityService  # noqa: E402
from tradegate.service.notifier import EmailService, Notifier, Recipient  # noqa: E402
from tradegate.service.roles import RolePolicy  # noqa: E402
from tradegate.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from tradegate.service.sessions import SessionStore  # noqa: E402
from tradegate.service.verification import VerificationWorkflow  # noqa: E402
from tradegate.storage.memory import MemoryStore  # noqa: E402
from tradegate.storage.models import Identity, Role, RoleGrant  # noqa: E402


# Avoid import-time failures for routes that rely on python-multipart in constrained test environments.
fastapi_dep_utils.ensure_multipart_is_installed = lambda: None

TEST_PASSWORD = "Secret123!"


def _clear_memory_state() -> None:
    state_file = Path(os.environ["SHARED_FS_ROOT"]) / "state" / "memory_store.json"
    if state_file.exists():
        state_file.unlink()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_memory_state()
    reset_runtime_for_tests()
    yield
    _clear_memory_state()
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


# -- test doubles ------------------------------------------------------------


@dataclass
class SentMessage:
    template: str
    recipient: Recipient
    data: Dict[str, Any] = field(default_factory=dict)


class RecordingNotifier(Notifier):
    """Notifier that records every message instead of delivering it.

    ``dispatch`` records synchronously so assertions never race a background task.
    """

    def __init__(self, *, deliver: bool = True) -> None:
        super().__init__(EmailService(), base_url="http://tradegate.test")
        self.deliver = deliver
        self.sent: List[SentMessage] = []

    async def send(self, template_name, recipient, data=None) -> bool:
        self.render(template_name, recipient, data or {})
        self.sent.append(SentMessage(template_name, recipient, dict(data or {})))
        return self.deliver

    def dispatch(self, template_name, recipient, data=None) -> None:
        self.render(template_name, recipient, data or {})
        self.sent.append(SentMessage(template_name, recipient, dict(data or {})))

    def templates(self) -> List[str]:
        return [m.template for m in self.sent]

    def last(self, template_name: str, email: Optional[str] = None) -> SentMessage:
        for message in reversed(self.sent):
            if message.template != template_name:
                continue
            if email is not None and message.recipient.email != email:
                continue
            return message
        raise AssertionError(f"no {template_name!r} message recorded")

    def last_otp(self, email: str) -> str:
        return self.last("otp", email).data["otp"]


class FakeGoogleVerifier:
    """Maps ID tokens to canned claims; unknown tokens are rejected."""

    def __init__(self) -> None:
        self.tokens: Dict[str, Dict[str, Any]] = {}

    def register(self, id_token: str, *, sub: str, email: str, given_name="", family_name=""):
        self.tokens[id_token] = {
            "sub": sub,
            "email": email,
            "email_verified": "true",
            "given_name": given_name,
            "family_name": family_name,
        }

    async def verify(self, id_token: str) -> Dict[str, Any]:
        claims = self.tokens.get(id_token)
        if claims is None:
            raise AuthenticationError(
                "Invalid Google token", error_code=ErrorCode.INVALID_GOOGLE_TOKEN
            )
        return dict(claims)


# -- unit-level fixtures ------------------------------------------------------


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="unit-test-secret-that-is-long-enough-for-hs256",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url="",
        argon2_time_cost=1,
        argon2_memory_cost=8192,
        max_document_bytes=1024,
    )


@pytest.fixture
def store(settings):
    return MemoryStore(fs_root=settings.shared_fs_root)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def google():
    return FakeGoogleVerifier()


def build_services(settings, store, notifier, google=None) -> SimpleNamespace:
    """Wire the service graph the same way the runtime does, minus Redis."""
    hashing = PasswordHashing(settings)
    signer = TokenSigner(settings)
    sessions = SessionStore(store, None, settings)
    policy = RolePolicy(store, settings)
    identities = IdentityService(store, policy, settings)
    blobs = LocalBlobStore(settings.shared_fs_root, settings.jwt_secret)
    verification = VerificationWorkflow(store, policy, notifier, blobs, settings)
    auth = AuthService(
        identities=identities,
        policy=policy,
        sessions=sessions,
        signer=signer,
        hashing=hashing,
        notifier=notifier,
        settings=settings,
        google_verifier=google,
    )
    admin = AdminService(
        identities=identities,
        sessions=sessions,
        signer=signer,
        auth=auth,
        notifier=notifier,
        settings=settings,
    )
    return SimpleNamespace(
        settings=settings,
        store=store,
        notifier=notifier,
        hashing=hashing,
        signer=signer,
        sessions=sessions,
        policy=policy,
        identities=identities,
        blobs=blobs,
        verification=verification,
        auth=auth,
        admin=admin,
    )


@pytest.fixture
def services(settings, store, notifier, google):
    return build_services(settings, store, notifier, google)


@pytest.fixture
def recording_runtime(google):
    """The process runtime with notifications and Google sign-in swapped for doubles."""
    runtime = get_runtime()
    recorder = RecordingNotifier()
    runtime.notifier = recorder
    runtime.auth.notifier = recorder
    runtime.admin.notifier = recorder
    runtime.verification.notifier = recorder
    runtime.auth.google_verifier = google
    return runtime


@pytest.fixture
def make_identity(services):
    """Factory for stored marketplace identities with a known password."""
    counter = {"n": 0}

    def _make(
        email: Optional[str] = None,
        *,
        phone: Optional[str] = None,
        password: str = TEST_PASSWORD,
        verified: bool = True,
        active: bool = True,
        roles=(Role.BUYER,),
    ):
        counter["n"] += 1
        grants = {Role(r): RoleGrant(role=Role(r)) for r in roles}
        return services.identities.create(
            Identity(
                id=str(uuid.uuid4()),
                email=email or f"user{counter['n']}@example.com",
                phone=phone,
                password_hash=services.hashing.hash_password(password),
                first_name="Test",
                last_name=f"User{counter['n']}",
                role_grants=grants,
                active_role=next(iter(grants), None),
                is_verified=verified,
                is_active=active,
            )
        )

    return _make


@pytest.fixture
def stack_factory(store, notifier, google):
    """Build a service graph over the shared store with overridden settings."""

    def _build(settings):
        return build_services(settings, store, notifier, google)

    return _build
