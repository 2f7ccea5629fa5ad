import asyncio
import inspect
import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="inkwell_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in tests; the runtime falls back to the per-process MemoryCache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("MAINTENANCE_ENABLED", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402
from fastapi.dependencies import utils as fastapi_dep_utils  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from inkwell.config import SessionStrategy, Settings  # noqa: E402
from inkwell.service.auth import AuthService  # noqa: E402
from inkwell.service.password_reset import PasswordResetService  # noqa: E402
from inkwell.service.passwords import PasswordService  # noqa: E402
from inkwell.service.runtime import reset_runtime_for_tests  # noqa: E402
from inkwell.service.sessions import SessionRegistry  # noqa: E402
from inkwell.service.token_blacklist import TokenBlacklistService  # noqa: E402
from inkwell.service.tokens import TokenSigner  # noqa: E402
from inkwell.service.users import UserService  # noqa: E402
from inkwell.storage.memory import MemoryStore  # noqa: E402
from inkwell.storage.memory_cache import MemoryCache  # noqa: E402


# Avoid import-time failures for routes that rely on python-multipart in constrained test environments.
fastapi_dep_utils.ensure_multipart_is_installed = lambda: None


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh store snapshot per test so accounts never leak between tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    # Restore the test's env overrides before rebuilding settings for teardown
    monkeypatch.undo()
    reset_runtime_for_tests()


class FakeClock:
    """Manually advanced monotonic clock for cache expiry tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingEmail:
    """Stand-in mail dispatcher that records messages instead of sending them."""

    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.resets: list[tuple[str, str]] = []
        self.welcomes: list[str] = []

    def send_password_reset(self, to_email: str, token: str, first_name: str = "") -> bool:
        self.resets.append((to_email, token))
        return self.succeed

    def send_welcome(self, to_email: str, first_name: str = "") -> bool:
        self.welcomes.append(to_email)
        return self.succeed


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_passwords():
    # Minimal argon2 cost keeps the suite fast
    return PasswordService(
        PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    )


def build_services(
    tmp_path,
    *,
    strategy: SessionStrategy = SessionStrategy.BLACKLIST,
    clock=None,
    passwords=None,
    email=None,
    **settings_overrides,
):
    """Wire the auth services against a MemoryStore and MemoryCache."""
    settings = Settings(
        jwt_secret="unit-test-secret-" + "x" * 32,
        shared_fs_root=str(tmp_path),
        session_strategy=strategy,
        **settings_overrides,
    )
    store = MemoryStore(fs_root=str(tmp_path / "store"))
    cache = MemoryCache(clock=clock) if clock else MemoryCache()
    signer = TokenSigner(
        settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
    )
    passwords = passwords or PasswordService(
        PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    )
    sessions = SessionRegistry(cache, ttl_seconds=settings.session_ttl_seconds)
    blacklist = TokenBlacklistService(store, cache, signer)
    email = email if email is not None else RecordingEmail()
    auth = AuthService(
        store,
        cache,
        settings,
        signer=signer,
        passwords=passwords,
        blacklist=blacklist,
        sessions=sessions,
        email=email,
    )
    resets = PasswordResetService(
        store,
        email,
        blacklist,
        passwords,
        sessions=sessions if strategy == SessionStrategy.REGISTRY else None,
    )
    users = UserService(store, auth)
    return SimpleNamespace(
        settings=settings,
        store=store,
        cache=cache,
        signer=signer,
        passwords=passwords,
        sessions=sessions,
        blacklist=blacklist,
        email=email,
        auth=auth,
        resets=resets,
        users=users,
    )


@pytest.fixture
def make_services(tmp_path):
    def _make(**kwargs):
        return build_services(tmp_path, **kwargs)

    return _make


@pytest.fixture
def services(tmp_path):
    return build_services(tmp_path)


@pytest.fixture
def registry_services(tmp_path, clock):
    return build_services(tmp_path, strategy=SessionStrategy.REGISTRY, clock=clock)


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
