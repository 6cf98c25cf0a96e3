import logging

import uvicorn
from fastapi import FastAPI

from .config import Settings, get_settings
from .db import Base
from .logging_config import configure_logging
from .migrations import run_migrations
from .routers import health, webhook
from .routers.health import APP_VERSION
from .services import Services, build_services

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Mandatory configuration is missing; the service must not start."""


def ensure_configured(settings: Settings) -> None:
    missing = settings.missing_required_settings()
    if missing:
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(title="WhatsApp Expense Tracker", version=APP_VERSION)
    app.state.settings = settings
    app.state.services = services

    app.include_router(health.router)
    app.include_router(webhook.router)

    @app.on_event("startup")
    def on_startup() -> None:
        """Validate configuration, then ensure database tables and migrations."""
        if app.state.services is not None:
            return
        ensure_configured(settings)
        built = build_services(settings)
        Base.metadata.create_all(bind=built.engine)
        run_migrations(built.engine)
        app.state.services = built
        logger.info(
            "Expense bot ready (environment=%s, webhook token %s)",
            settings.environment,
            "configured" if settings.webhook_verify_token else "missing",
        )

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        current = app.state.services
        if current is None:
            return
        await current.transport.aclose()
        if current.engine is not None:
            current.engine.dispose()
        logger.info("Expense bot stopped.")

    return app


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.json_logs)
    missing = settings.missing_required_settings()
    if missing:
        logger.error("Missing required environment variables: %s", ", ".join(missing))
        raise SystemExit(1)
    if not settings.meta_app_secret:
        logger.warning(
            "META_APP_SECRET is not set; webhook deliveries will be rejected unless verification is skipped."
        )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
