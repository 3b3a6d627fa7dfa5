import pytest
from fastapi.testclient import TestClient

from canvass_auth.channels import DeliveryError, NoChannel
from canvass_auth.config import Settings
from canvass_auth.main import create_app
from canvass_auth.otp import OtpService

SECRET = "test-otp-secret"
ADMIN = "admin@example.com"
T0 = 1_700_000_000_000  # ms


class FakeClock:
    def __init__(self, now_ms: int = T0):
        self.now = now_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingChannel:
    """Stands in for SendGrid/SMTP. Records messages, optionally fails."""

    name = "recording"
    delivers = True

    def __init__(self, fail_with: str = None):
        self.fail_with = fail_with
        self.sent = []

    async def send(self, to, subject, body):
        if self.fail_with:
            raise DeliveryError(self.fail_with)
        self.sent.append((to, subject, body))


def make_settings(**overrides) -> Settings:
    values = dict(
        ENV="test",
        OTP_SECRET=SECRET,
        ADMIN_EMAIL=ADMIN,
        FROM_EMAIL=None,
        SENDGRID_API_KEY=None,
        SMTP_HOST=None,
        SMTP_USER=None,
        SMTP_PASS=None,
        AUDIT_DIR=None,
        LOG_JSON=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def service(settings, channel, clock):
    return OtpService(settings, channel, clock=clock)


@pytest.fixture
def dev_service(settings, clock):
    return OtpService(settings, NoChannel(), clock=clock)


@pytest.fixture
def client(settings, clock):
    app = create_app(settings, channel=NoChannel(), clock=clock)
    return TestClient(app)
