import asyncio
import inspect
import os
import sys
import tempfile
import threading
from pathlib import Path

# Environment must be in place before anything builds settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="mentorauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process rate limiting keeps buckets isolated per runtime
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mentorauth.config import Settings  # noqa: E402
from mentorauth.service.notifications import ChannelKind, Notification  # noqa: E402
from mentorauth.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from mentorauth.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "Str0ng#Pass"
TEST_PHONE = "+15551234567"


class RecordingChannel:
    """Notification channel that keeps deliveries in memory."""

    def __init__(self, kind: ChannelKind):
        self.kind = kind
        self.sent: list[tuple[str, Notification]] = []
        self._lock = threading.Lock()

    def deliver(self, destination: str, notification: Notification) -> bool:
        with self._lock:
            self.sent.append((destination, notification))
        return True


class Outbox:
    def __init__(self, notifier):
        self.notifier = notifier
        self.email = RecordingChannel(ChannelKind.EMAIL)
        self.sms = RecordingChannel(ChannelKind.SMS)
        notifier.register_channel(ChannelKind.EMAIL, self.email)
        notifier.register_channel(ChannelKind.SMS, self.sms)

    def messages(self, destination: str, template: str = "otp") -> list[Notification]:
        assert self.notifier.flush(timeout=5.0)
        return [
            n
            for channel in (self.email, self.sms)
            for dest, n in list(channel.sent)
            if dest == destination and n.template == template
        ]

    def last_code(self, destination: str) -> str:
        messages = self.messages(destination)
        assert messages, f"no otp delivered to {destination}"
        return messages[-1].data["code"]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "fs"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def outbox(runtime):
    return Outbox(runtime.notifier)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


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
