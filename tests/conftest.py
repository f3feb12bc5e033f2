import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("MFA_ISSUER", "authcore-test")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.service.auth import AuthService  # noqa: E402
from authcore.service.mfa import MFAManager  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.service.tokens import TokenPool  # noqa: E402
from authcore.storage.common import SecretCipher  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def cipher():
    return SecretCipher("unit-test-mfa-key-material")


@pytest.fixture
def memory_store(cipher):
    return MemoryStore(cipher=cipher)


@pytest.fixture
def token_pool(memory_store):
    return TokenPool(
        memory_store,
        secret="unit-test-signing-secret-0123456789abcdef",
        issuer="authcore-test",
        ttl_seconds=3600,
    )


@pytest.fixture
def mfa_manager(memory_store):
    return MFAManager(memory_store, issuer="authcore-test")


@pytest.fixture
def auth_service(memory_store, token_pool, mfa_manager):
    return AuthService(memory_store, token_pool, mfa_manager)


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
