"""
Decoding of WhatsApp Business API webhook payloads.

A raw payload is turned into exactly one of three events:

- NewMessageEvent: ``value.messages`` is non-empty; carries the first message
  and the first contact (if any)
- StatusUpdateEvent: ``value.statuses`` is non-empty; carries the first status
- UnrecognizedEvent: anything else, including payloads where a link of
  ``metaData.entry[0].changes[0].value`` is missing or the first relevant
  entry fails validation

Decoding never raises; bodies sent by the vendor are treated as untrusted.
"""

import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from wamirror.schemas import DeliveryState

logger = logging.getLogger(__name__)


# =============================================================================
# Vendor Payload Models
# =============================================================================

class TextContent(BaseModel):
    body: str = ""


class VendorMessage(BaseModel):
    """One entry of ``value.messages``."""
    id: str = Field(..., min_length=1)
    sender: str = Field(..., alias="from", min_length=1)
    timestamp: int = Field(..., ge=0, description="Seconds since epoch, sent as a numeric string")
    type: str = "text"
    text: Optional[TextContent] = None
    recipient_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def body(self) -> str:
        """Text body; only text messages are interpreted."""
        if self.type != "text" or self.text is None:
            return ""
        return self.text.body


class ContactProfile(BaseModel):
    name: Optional[str] = None


class VendorContact(BaseModel):
    """One entry of ``value.contacts``."""
    wa_id: Optional[str] = None
    profile: Optional[ContactProfile] = None

    @property
    def name(self) -> Optional[str]:
        return self.profile.name if self.profile else None


class VendorStatus(BaseModel):
    """One entry of ``value.statuses``."""
    id: str = Field(..., min_length=1)
    status: DeliveryState
    recipient_id: Optional[str] = None
    timestamp: Optional[int] = None


class ChangeValue(BaseModel):
    # Entries stay raw here; only the first one is validated, and only when it is used.
    # null is the same as absent.
    messages: Optional[list[Any]] = None
    statuses: Optional[list[Any]] = None
    contacts: Optional[list[Any]] = None


class Change(BaseModel):
    value: Optional[ChangeValue] = None


class Entry(BaseModel):
    changes: Optional[list[Any]] = None


class MetaData(BaseModel):
    entry: Optional[list[Any]] = None


class WebhookEnvelope(BaseModel):
    """Outer document as archived by the webhook relay."""
    meta_data: Optional[MetaData] = Field(None, alias="metaData")

    model_config = ConfigDict(populate_by_name=True)

    def change_value(self) -> Optional[ChangeValue]:
        """
        The ``value`` of the first change of the first entry, if every link exists.

        Only ``entry[0]`` and its ``changes[0]`` are validated; later entries
        and changes are never looked at.

        Raises:
            ValidationError: if ``entry[0]`` or ``changes[0]`` is malformed
        """
        if self.meta_data is None or not self.meta_data.entry:
            return None
        entry = Entry.model_validate(self.meta_data.entry[0])
        if not entry.changes:
            return None
        return Change.model_validate(entry.changes[0]).value


# =============================================================================
# Decoded Events
# =============================================================================

class NewMessageEvent(BaseModel):
    kind: Literal["new_message"] = "new_message"
    message: VendorMessage
    contact: Optional[VendorContact] = None


class StatusUpdateEvent(BaseModel):
    kind: Literal["status_update"] = "status_update"
    status: VendorStatus


class UnrecognizedEvent(BaseModel):
    kind: Literal["unrecognized"] = "unrecognized"
    reason: str


WebhookEvent = Annotated[
    Union[NewMessageEvent, StatusUpdateEvent, UnrecognizedEvent],
    Field(discriminator="kind"),
]


def decode_webhook_payload(payload: Any) -> WebhookEvent:
    """
    Decode a raw webhook payload into a NewMessageEvent, StatusUpdateEvent
    or UnrecognizedEvent. First match wins: a non-empty ``messages`` list is
    decided on its first entry and never falls through to ``statuses``.
    """
    try:
        envelope = WebhookEnvelope.model_validate(payload)
    except ValidationError as e:
        return UnrecognizedEvent(reason=f"invalid envelope: {e.error_count()} error(s)")

    try:
        value = envelope.change_value()
    except ValidationError as e:
        return UnrecognizedEvent(reason=f"invalid entry or change: {e.error_count()} error(s)")
    if value is None:
        return UnrecognizedEvent(reason="no metaData.entry[0].changes[0].value")

    if value.messages:
        try:
            message = VendorMessage.model_validate(value.messages[0])
        except ValidationError as e:
            logger.debug(f"Rejected message entry: {e}")
            return UnrecognizedEvent(reason="invalid message entry")

        contact = None
        if value.contacts:
            try:
                contact = VendorContact.model_validate(value.contacts[0])
            except ValidationError:
                logger.debug("Ignoring malformed contact entry")

        return NewMessageEvent(message=message, contact=contact)

    if value.statuses:
        try:
            status = VendorStatus.model_validate(value.statuses[0])
        except ValidationError as e:
            logger.debug(f"Rejected status entry: {e}")
            return UnrecognizedEvent(reason="invalid status entry")
        return StatusUpdateEvent(status=status)

    return UnrecognizedEvent(reason="no messages or statuses")
