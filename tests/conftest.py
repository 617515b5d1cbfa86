import os
import tempfile
from datetime import datetime, timedelta, timezone

# Environment defaults must be in place before rideauth configures itself
_test_tmp_dir = tempfile.mkdtemp(prefix="rideauth_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheapest argon2 profile keeps the suite fast
os.environ.setdefault("PASSWORD_WORK_FACTOR", "1")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

from rideauth.config import Settings  # noqa: E402
from rideauth.service.delivery import CodeDelivery  # noqa: E402
from rideauth.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from rideauth.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Str0ng!Pass"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingAudit:
    def __init__(self):
        self.events = []

    def emit(self, event, **fields):
        name = getattr(event, "value", event)
        self.events.append((name, fields))

    def names(self):
        return [name for name, _ in self.events]

    def of(self, name):
        return [fields for event, fields in self.events if event == name]


class RecordingEmail:
    def __init__(self, succeed: bool = True):
        self.sent = []
        self.succeed = succeed

    def send_email(self, address, template_id, params):
        self.sent.append({"to": address, "template_id": template_id, **params})
        return self.succeed


class RecordingSms:
    def __init__(self, succeed: bool = True):
        self.sent = []
        self.succeed = succeed

    def send_sms(self, phone_number, message):
        self.sent.append({"to": phone_number, "message": message})
        return self.succeed


class Outbox:
    """Captures codes delivered through email and SMS."""

    def __init__(self):
        self.email = RecordingEmail()
        self.sms = RecordingSms()
        self.delivery = CodeDelivery(self.email, self.sms)

    def last_code(self, template_id: str | None = None) -> str:
        for message in reversed(self.email.sent):
            if template_id is None or message["template_id"] == template_id:
                return message["code"]
        raise AssertionError(f"no email with template {template_id!r} was sent")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        password_work_factor=1,
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def runtime(settings, memory_store, audit, clock, outbox):
    """A fully wired runtime on a frozen clock with captured delivery."""
    rt = Runtime(settings, store=memory_store, audit=audit, clock=clock)
    rt.delivery = outbox.delivery
    rt.auth.delivery = outbox.delivery
    return rt


@pytest.fixture
def passenger(runtime, outbox):
    result = runtime.auth.register("rider@example.com", STRONG_PASSWORD, phone="+15550101")
    return result.account
