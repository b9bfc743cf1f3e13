import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tablesession_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production"
)
# No Redis: deny-list and rate limits run on per-process state
os.environ.setdefault("REDIS_URL", "")
# TestClient talks plain http, so the refresh cookie must not be Secure
os.environ.setdefault("REFRESH_COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tablesession.config import Settings  # noqa: E402
from tablesession.service.audit import AuditLogger  # noqa: E402
from tablesession.service.auth import AuthService  # noqa: E402
from tablesession.service.fingerprint import ClientInfo  # noqa: E402
from tablesession.service.otp import OtpService  # noqa: E402
from tablesession.service.rate_limit import RateLimiter  # noqa: E402
from tablesession.service.rotation import RefreshRotationEngine  # noqa: E402
from tablesession.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from tablesession.service.sessions import SessionRegistry  # noqa: E402
from tablesession.service.tokens import TokenCodec  # noqa: E402
from tablesession.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "TestPassword123!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-access-secret-0123456789-abcdefghijklmnop",
        jwt_refresh_secret="unit-refresh-secret-0123456789-abcdefghijklmnop",
        access_token_ttl_minutes=15,
        max_active_sessions=5,
    )


class RecordingOtpSender:
    """Keeps delivered codes so tests can read them back."""

    def __init__(self):
        self.sent = []
        self.fail_with = None

    async def send(self, phone, code, purpose):
        if self.fail_with:
            raise self.fail_with
        self.sent.append((phone, code, purpose))

    @property
    def last_code(self):
        return self.sent[-1][1]


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ServiceStack:
    """The runtime's service graph over a throwaway memory store."""

    def __init__(self, settings: Settings, cache=None):
        self.settings = settings
        self.store = MemoryStore(persist=False)
        self.codec = TokenCodec(settings, cache)
        self.audit = AuditLogger(self.store)
        self.registry = SessionRegistry(self.store, self.codec)
        self.rotation = RefreshRotationEngine(
            self.store, self.codec, self.registry, self.audit, settings
        )
        self.clock = FakeClock()
        self.sender = RecordingOtpSender()
        self.limiter = RateLimiter(cache)
        self.otp = OtpService(settings, cache, self.sender, self.limiter, clock=self.clock)
        self.auth = AuthService(
            self.store,
            settings,
            codec=self.codec,
            registry=self.registry,
            rotation=self.rotation,
            audit=self.audit,
            otp=self.otp,
        )

    def add_user(
        self, email="diner@example.com", *, role="customer", tenant_id="t1", phone=None
    ):
        return self.auth.create_user(
            email, TEST_PASSWORD, role=role, tenant_id=tenant_id, phone=phone
        )

    def audit_actions(self, **filters):
        return [e.action for e in self.store.list_audit_events(**filters)]


@pytest.fixture
def password():
    return TEST_PASSWORD


@pytest.fixture
def stack(settings):
    return ServiceStack(settings)


@pytest.fixture
def otp_outbox():
    """Capture codes the running app sends instead of logging them away."""
    sender = RecordingOtpSender()
    get_runtime().otp.sender = sender
    return sender


@pytest.fixture
def make_stack(settings):
    def _make(cache=None, **overrides):
        return ServiceStack(settings.model_copy(update=overrides), cache)

    return _make


@pytest.fixture
def phone():
    return ClientInfo(
        ip_address="203.0.113.10",
        user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)",
        accept_language="en-US",
        accept_encoding="gzip, br",
    )


@pytest.fixture
def laptop():
    return ClientInfo(
        ip_address="198.51.100.7",
        user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0",
        accept_language="de-DE",
        accept_encoding="gzip",
    )


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
