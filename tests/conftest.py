import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything builds Settings
_test_tmp_dir = tempfile.mkdtemp(prefix="tessera_test_")
os.environ.setdefault("SECRETS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)
os.environ.pop("GOOGLE_CLIENT_ID", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tessera.config import Settings  # noqa: E402
from tessera.service.audit import MemoryAuditSink  # noqa: E402
from tessera.service.auth import AuthService  # noqa: E402
from tessera.service.email import RecordingEmailService  # noqa: E402
from tessera.service.runtime import reset_runtime_for_tests  # noqa: E402
from tessera.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        use_memory_store=True,
        test_mode=True,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def outbox():
    return RecordingEmailService(base_url="http://testserver")


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def auth_service(store, settings, outbox, audit):
    return AuthService(store, settings, email=outbox, audit=audit)


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
