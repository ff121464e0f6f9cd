import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any adminauth import initialises settings or logging
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("REDIS_URL", None)
os.environ.pop("STATE_PATH", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher as Argon2Hasher  # noqa: E402
from argon2 import Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from adminauth.config import AuthSettings  # noqa: E402
from adminauth.service.audit import MemoryAuditSink  # noqa: E402
from adminauth.service.blacklist import TokenBlacklist  # noqa: E402
from adminauth.service.engine import AuthEngine  # noqa: E402
from adminauth.service.notifications import LoggingNotifier  # noqa: E402
from adminauth.service.passwords import PasswordHasher  # noqa: E402
from adminauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from adminauth.service.sessions import SessionRegistry  # noqa: E402
from adminauth.storage.memory import MemoryCache, MemoryStore  # noqa: E402
from adminauth.storage.models import Role  # noqa: E402

PASSWORD = "Tr4nsit!Route#Secure"
ACCESS_SECRET = "access-secret-for-automated-tests-0123456789"
REFRESH_SECRET = "refresh-secret-for-automated-tests-9876543210"


def fast_hasher() -> PasswordHasher:
    """argon2id with minimal cost parameters so tests stay quick."""
    return PasswordHasher(
        Argon2Hasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def settings():
    return AuthSettings(
        access_token_secret=ACCESS_SECRET,
        refresh_token_secret=REFRESH_SECRET,
        test_mode=True,
        use_memory_cache=True,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def hasher():
    return fast_hasher()


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def engine(settings, store, cache, hasher, audit_sink, notifier):
    return AuthEngine(
        settings,
        store,
        registry=SessionRegistry(
            cache, max_sessions_per_principal=settings.max_sessions_per_principal
        ),
        blacklist=TokenBlacklist(cache),
        hasher=hasher,
        audit=audit_sink,
        notifier=notifier,
    )


@pytest.fixture
def make_principal(store, hasher):
    """Factory creating principals whose password is ``PASSWORD``."""

    def _make(email="ops@avigate.co", role=Role.ADMIN, **fields):
        principal = store.create_principal(email, hasher.hash(PASSWORD), role=role)
        if fields:
            principal = store.update(principal.id, **fields)
        return principal

    return _make


@pytest.fixture
def runtime():
    """Fresh runtime singleton with a fast hasher, for HTTP tests."""
    rt = reset_runtime_for_tests()
    rt.engine.hasher = fast_hasher()
    yield rt
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
