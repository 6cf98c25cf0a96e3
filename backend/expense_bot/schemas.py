from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    """Base for platform payloads; unknown keys are tolerated and kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TextBody(WireModel):
    body: str = ""


class MediaRef(WireModel):
    id: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None


class ContactProfile(WireModel):
    name: Optional[str] = None


class Contact(WireModel):
    wa_id: Optional[str] = None
    profile: Optional[ContactProfile] = None


class WebhookMessage(WireModel):
    from_: str = Field(alias="from")
    id: str
    timestamp: Optional[str | int] = None
    type: str = "text"
    text: Optional[TextBody] = None
    image: Optional[MediaRef] = None


class StatusUpdate(WireModel):
    id: Optional[str] = None
    status: Optional[str] = None
    recipient_id: Optional[str] = None
    timestamp: Optional[str | int] = None


class ChangeValue(WireModel):
    messaging_product: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    contacts: list[Contact] = Field(default_factory=list)
    messages: list[WebhookMessage] = Field(default_factory=list)
    statuses: list[StatusUpdate] = Field(default_factory=list)


class Change(WireModel):
    field: str
    value: ChangeValue = Field(default_factory=ChangeValue)


class Entry(WireModel):
    id: Optional[str] = None
    changes: list[Change] = Field(default_factory=list)


class WebhookEnvelope(WireModel):
    object: str
    entry: list[Entry] = Field(default_factory=list)


class ApisConfigured(BaseModel):
    ai_text: bool
    ai_vision: bool
    whatsapp: bool


class HealthOut(BaseModel):
    status: str = "OK"
    timestamp: datetime
    version: str
    environment: str
    webhook_configured: bool
    apis_configured: ApisConfigured
