import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from fastapi.responses import PlainTextResponse, Response
from pydantic import ValidationError

from ..config import Settings
from ..schemas import WebhookEnvelope
from ..services import Services, get_app_settings, get_services
from ..validator import verify_signature
from ..webhook import ACK_TOKEN, SIGNATURE_HEADER, WHATSAPP_OBJECT, verify_subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhook"])


def _signature_accepted(raw_body: bytes, signature: str | None, settings: Settings) -> bool:
    if settings.skip_signature_verification and settings.environment == "development":
        logger.warning("Webhook signature verification skipped (development mode).")
        return True
    return verify_signature(raw_body, signature, settings.meta_app_secret)


@router.get("")
def verify_webhook(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    logger.info(
        "Webhook verification attempt (mode=%s, token %s, challenge %s)",
        mode,
        "present" if token else "missing",
        "present" if challenge else "missing",
    )
    echoed = verify_subscription(mode, token, challenge, settings.webhook_verify_token)
    if echoed is None:
        logger.warning("Webhook verification failed: token mismatch or invalid mode.")
        return Response(status_code=status.HTTP_403_FORBIDDEN)
    logger.info("Webhook verified successfully.")
    return PlainTextResponse(echoed, status_code=status.HTTP_200_OK)


@router.post("")
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_app_settings),
    services: Services = Depends(get_services),
) -> Response:
    raw_body = await request.body()
    if not _signature_accepted(raw_body, request.headers.get(SIGNATURE_HEADER), settings):
        logger.warning("Rejected webhook delivery with invalid signature.")
        return PlainTextResponse("UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)

    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as exc:
        logger.error("Webhook body is not valid JSON: %s", exc)
        return PlainTextResponse("INTERNAL_SERVER_ERROR", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    webhook_object = payload.get("object") if isinstance(payload, dict) else None
    if webhook_object != WHATSAPP_OBJECT:
        logger.warning("Unknown webhook object type: %s", webhook_object)
        return Response(status_code=status.HTTP_404_NOT_FOUND)

    try:
        envelope = WebhookEnvelope.model_validate(payload)
    except ValidationError as exc:
        logger.error("Webhook envelope failed validation: %s", exc)
        return PlainTextResponse("INTERNAL_SERVER_ERROR", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    logger.info("Webhook received with %d entries", len(envelope.entry))
    background_tasks.add_task(services.processor.process_envelope, envelope)
    return PlainTextResponse(ACK_TOKEN, status_code=status.HTTP_200_OK)
