import pytest
from fastapi.testclient import TestClient

from draft_server import config, main
from .utils import FakeShop


class FakeSender:
    """Collects outgoing mail instead of talking to an SMTP server."""

    host = "smtp.test"
    port = 587
    user = "mailer@test"

    def __init__(self, fail_for=None):
        self.sent = []
        self.fail_for = fail_for or set()

    async def send(self, message):
        if set(message.to) & self.fail_for:
            raise ConnectionError("smtp down")
        self.sent.append(message)
        return f"<{len(self.sent)}@smtp.test>"

    async def verify(self):
        return None


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def shop():
    return FakeShop()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def api_secret(monkeypatch):
    monkeypatch.setattr(config, "API_SECRET", "test-secret")
    monkeypatch.setattr(config, "SHOPIFY_WEBHOOK_SECRET", "")
    monkeypatch.setattr(config, "REDIS_URL", "")
    return "test-secret"


@pytest.fixture
def services(shop, sender):
    return main.build_services(
        client=shop.client(),
        sender=sender,
        brand="IKYUM",
        from_address="noreply@ikyum.test",
        admin_recipients="admin@ikyum.test",
        copy_to_address="copy@ikyum.test",
    )


@pytest.fixture
def client(api_secret, services):
    with TestClient(main.create_app(services)) as c:
        yield c


@pytest.fixture
def auth():
    return {"X-API-KEY": "test-secret"}
