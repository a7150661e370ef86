import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL selects the in-process session cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from usergate.config import Settings  # noqa: E402
from usergate.service.auth import AuthService  # noqa: E402
from usergate.service.runtime import reset_runtime_for_tests  # noqa: E402
from usergate.service.tokens import TokenIssuer  # noqa: E402
from usergate.storage.memory import MemoryCache, MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings for service-level tests, independent of the environment."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        redis_url=None,
        url_verify_account="http://localhost:8080/verify",
        url_forgot_password="http://localhost:8080",
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture
def issuer(settings):
    return TokenIssuer(
        settings.jwt_secret,
        settings.jwt_issuer,
        ttl_seconds=settings.session_ttl_seconds,
    )


@pytest.fixture
def auth_service(memory_store, memory_cache, issuer, settings):
    return AuthService(memory_store, memory_cache, memory_cache, issuer, settings)


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
