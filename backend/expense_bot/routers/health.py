from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from ..config import Settings
from ..schemas import ApisConfigured, HealthOut
from ..services import get_app_settings

APP_VERSION = "1.0.0"

router = APIRouter(tags=["health"])


@router.get("/")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health", response_model=HealthOut)
def health(settings: Settings = Depends(get_app_settings)) -> HealthOut:
    """Report which credentials are configured, never their values."""
    return HealthOut(
        timestamp=datetime.now(timezone.utc),
        version=APP_VERSION,
        environment=settings.environment,
        webhook_configured=bool(settings.webhook_verify_token),
        apis_configured=ApisConfigured(
            ai_text=bool(settings.text_ai_api_key),
            ai_vision=bool(settings.vision_ai_api_key),
            whatsapp=bool(settings.meta_access_token and settings.meta_phone_number_id),
        ),
    )
