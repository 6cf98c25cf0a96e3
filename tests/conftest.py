from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from expense_bot.config import Settings
from expense_bot.db import Base, create_db_engine, create_session_factory
from expense_bot.domain.entities import ExtractionFailed, InboundMessage, MessageType
from expense_bot.extraction import NO_EXPENSES_INSIGHT, ExpenseExtractor
from expense_bot.main import create_app
from expense_bot.repository import SqlRepository
from expense_bot.services import assemble_services
from expense_bot.whatsapp import MessageTransport, TransportError

PHONE = "919876543210"
OTHER_PHONE = "447700900123"
FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeTransport(MessageTransport):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.read: list[str] = []
        self.media: dict[str, bytes] = {}
        self.closed = False
        self.fail_sends = False

    async def send_text(self, to: str, body: str) -> None:
        if self.fail_sends:
            raise TransportError("send failed")
        self.sent.append((to, body))

    async def mark_as_read(self, message_id: str) -> None:
        self.read.append(message_id)

    async def download_media(self, media_id: str) -> bytes:
        if media_id not in self.media:
            raise TransportError(f"unknown media {media_id}")
        return self.media[media_id]

    async def aclose(self) -> None:
        self.closed = True

    @property
    def replies(self) -> list[str]:
        return [body for _, body in self.sent]


class FakeExtractor(ExpenseExtractor):
    text_configured = True
    vision_configured = True

    def __init__(self) -> None:
        self.text_result = ExtractionFailed("not configured in test")
        self.receipt_result = ExtractionFailed("not configured in test")
        self.insight = "Spend less on snacks."
        self.text_calls: list[str] = []
        self.receipt_calls: list[bytes] = []
        self.summary_calls: list[list] = []

    async def parse_text_expense(self, message):
        self.text_calls.append(message)
        return self.text_result

    async def parse_receipt_image(self, image_bytes):
        self.receipt_calls.append(image_bytes)
        return self.receipt_result

    async def summarize_spending(self, records):
        self.summary_calls.append(list(records))
        if not records:
            return NO_EXPENSES_INSIGHT
        return self.insight


def make_message(
    text: str | None = None,
    *,
    sender: str = PHONE,
    message_id: str = "wamid.test",
    kind: MessageType = MessageType.TEXT,
    media_id: str | None = None,
) -> InboundMessage:
    return InboundMessage(
        id=message_id,
        sender=sender,
        type=kind,
        timestamp=FIXED_NOW,
        text=text,
        media_id=media_id,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        database_url="sqlite://",
        webhook_verify_token="verify-me",
        meta_app_secret="app-secret",
        meta_access_token="meta-token",
        meta_phone_number_id="1234567890",
        text_ai_api_key=None,
        vision_ai_api_key=None,
    )


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(engine) -> SqlRepository:
    return SqlRepository(create_session_factory(engine))


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def services(settings, repository, extractor, transport):
    return assemble_services(settings, repository, extractor, transport, clock=lambda: FIXED_NOW)


@pytest.fixture
def dispatcher(services):
    return services.dispatcher


@pytest.fixture
def client(settings, services) -> TestClient:
    return TestClient(create_app(settings, services))
