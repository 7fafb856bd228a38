import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authkeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process rate limits and cooldowns unless a test opts into Redis
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authkeep.config import Settings  # noqa: E402
from authkeep.service.auth import AuthService  # noqa: E402
from authkeep.service.hashing import CredentialHasher  # noqa: E402
from authkeep.service.runtime import reset_runtime_for_tests  # noqa: E402
from authkeep.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own store snapshot directory
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class RecordingNotifier:
    """Notifier double that records every message instead of sending it."""

    def __init__(self):
        self.sent = []
        self.fail_with = None

    def _record(self, kind, to_email, **fields):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"kind": kind, "to": to_email, **fields})
        return True

    def send_verification(self, to_email, name, code, link):
        return self._record("verification", to_email, name=name, code=code, link=link)

    def send_password_reset(self, to_email, name, link):
        return self._record("password_reset", to_email, name=name, link=link)

    def send_welcome(self, to_email, name):
        return self._record("welcome", to_email, name=name)

    def of_kind(self, kind):
        return [m for m in self.sent if m["kind"] == kind]


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fast_hasher():
    """Argon2id with minimal work factors so tests stay quick."""
    return CredentialHasher(
        PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def auth_service(memory_store, settings, notifier, fast_hasher):
    """Create auth service for testing."""
    return AuthService(
        memory_store,
        memory_store,
        settings,
        notifier=notifier,
        hasher=fast_hasher,
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
