from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.engine import Engine

from .config import Settings
from .db import create_db_engine, create_session_factory
from .dispatcher import Dispatcher
from .extraction import ExpenseExtractor, OpenAIExpenseExtractor
from .repository import Repository, SqlRepository
from .webhook import WebhookProcessor
from .whatsapp import MessageTransport, WhatsAppClient


@dataclass(slots=True)
class Services:
    """Collaborators constructed once per process and shared by requests."""

    repository: Repository
    extractor: ExpenseExtractor
    transport: MessageTransport
    dispatcher: Dispatcher
    processor: WebhookProcessor
    engine: Engine | None = None


def assemble_services(
    settings: Settings,
    repository: Repository,
    extractor: ExpenseExtractor,
    transport: MessageTransport,
    *,
    engine: Engine | None = None,
    clock=None,
) -> Services:
    dispatcher = Dispatcher(
        repository,
        extractor,
        transport,
        currency=settings.currency_symbol,
        max_amount=settings.max_amount,
        default_timezone=settings.default_timezone,
        clock=clock,
    )
    return Services(
        repository=repository,
        extractor=extractor,
        transport=transport,
        dispatcher=dispatcher,
        processor=WebhookProcessor(dispatcher),
        engine=engine,
    )


def build_services(settings: Settings) -> Services:
    engine = create_db_engine(settings.database_url)
    repository = SqlRepository(create_session_factory(engine), settings.default_timezone)
    return assemble_services(
        settings,
        repository,
        OpenAIExpenseExtractor.from_settings(settings),
        WhatsAppClient.from_settings(settings),
        engine=engine,
    )


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Application services are not initialised.")
    return services
