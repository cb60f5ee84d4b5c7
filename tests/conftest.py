import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="starterauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from starterauth.config import Settings  # noqa: E402
from starterauth.service.auth import AuthService  # noqa: E402
from starterauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from starterauth.service.tokens import TokenIssuer  # noqa: E402
from starterauth.storage.memory import MemoryStore  # noqa: E402


class RecordingMailer:
    """Collects outgoing mail instead of sending it."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.confirmations: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []

    def send_confirmation_email(self, to_email: str, token: str) -> bool:
        self.confirmations.append((to_email, token))
        return self.succeed

    def send_password_reset_email(self, to_email: str, token: str) -> bool:
        self.resets.append((to_email, token))
        return self.succeed


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # a fresh state directory per test so the JSON-backed memory store starts empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_days=7,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def failing_mailer():
    return RecordingMailer(succeed=False)


@pytest.fixture
def token_issuer(settings):
    return TokenIssuer(settings)


@pytest.fixture
def auth_service(memory_store, token_issuer, mailer, settings):
    return AuthService(memory_store, token_issuer, mailer, settings)


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
