"""Webhook handshake, envelope unpacking and background message processing."""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone

from .dispatcher import Dispatcher
from .domain.entities import InboundMessage, MessageType
from .schemas import StatusUpdate, WebhookEnvelope, WebhookMessage
from .validator import validate_sender_id

logger = logging.getLogger(__name__)

WHATSAPP_OBJECT = "whatsapp_business_account"
MESSAGES_FIELD = "messages"
SUBSCRIBE_MODE = "subscribe"
ACK_TOKEN = "EVENT_RECEIVED"
SIGNATURE_HEADER = "x-hub-signature-256"


def verify_subscription(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str | None,
) -> str | None:
    """Return the challenge to echo when the handshake matches, else ``None``."""
    if mode != SUBSCRIBE_MODE or not token or not expected_token:
        return None
    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        return None
    return challenge or ""


def _parse_timestamp(raw: str | int | None) -> datetime | None:
    if raw is None:
        return None
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def to_inbound_message(message: WebhookMessage, sender_name: str | None = None) -> InboundMessage:
    if message.type == MessageType.TEXT.value:
        kind = MessageType.TEXT
    elif message.type == MessageType.IMAGE.value:
        kind = MessageType.IMAGE
    else:
        kind = MessageType.UNSUPPORTED

    return InboundMessage(
        id=message.id,
        sender=message.from_,
        type=kind,
        timestamp=_parse_timestamp(message.timestamp),
        text=message.text.body if kind is MessageType.TEXT and message.text else None,
        media_id=message.image.id if kind is MessageType.IMAGE and message.image else None,
        sender_name=sender_name,
    )


def unpack_envelope(envelope: WebhookEnvelope) -> tuple[list[InboundMessage], list[StatusUpdate]]:
    """Flatten entries and changes into inbound messages and delivery statuses.

    Only changes whose field is ``messages`` are considered.
    """
    messages: list[InboundMessage] = []
    statuses: list[StatusUpdate] = []
    for entry in envelope.entry:
        for change in entry.changes:
            if change.field != MESSAGES_FIELD:
                logger.debug("Ignoring webhook change for field %s", change.field)
                continue
            names = {
                contact.wa_id: contact.profile.name
                for contact in change.value.contacts
                if contact.wa_id and contact.profile and contact.profile.name
            }
            for message in change.value.messages:
                messages.append(to_inbound_message(message, names.get(message.from_)))
            statuses.extend(change.value.statuses)
    return messages, statuses


class WebhookProcessor:
    """Runs after the delivery has been acknowledged; failures are only logged."""

    def __init__(self, dispatcher: Dispatcher) -> None:
        self._dispatcher = dispatcher

    async def process_envelope(self, envelope: WebhookEnvelope) -> int:
        messages, statuses = unpack_envelope(envelope)
        for status in statuses:
            logger.info("Delivery status for %s: %s", status.id, status.status)

        handled = 0
        for message in messages:
            log_extra = {"message_id": message.id, "sender": message.sender}
            if not validate_sender_id(message.sender):
                logger.warning("Skipping message %s with invalid sender id", message.id, extra=log_extra)
                continue
            logger.info(
                "Processing %s message %s from %s", message.type.value, message.id, message.sender, extra=log_extra
            )
            try:
                await self._dispatcher.handle(message)
            except Exception:
                logger.exception("Background processing failed for message %s", message.id, extra=log_extra)
                continue
            handled += 1
        return handled
