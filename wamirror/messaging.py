"""
Messages composed in the chat UI and stored without going through a webhook.
"""

import logging
import time
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from wamirror.realtime import EventPublisher, EventType, RealtimeEvent
from wamirror.schemas import DeliveryState, Direction, MessageResponse
from wamirror.storage import insert_message

logger = logging.getLogger(__name__)


class LocalMessageError(ValueError):
    """Raised when a local send is rejected before anything is written."""


def generate_local_id() -> str:
    """Unique id for a locally created message, e.g. local-1700000000123-3f2a9c1e."""
    return f"local-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


async def send_local_message(
    db: Session,
    business_phone_id: str,
    conversation_id: str,
    body: str,
    display_name: Optional[str] = None,
    publisher: Optional[EventPublisher] = None,
):
    """
    Store an outbound message typed by the business user and announce it.

    The message starts in the "sent" state; nothing is delivered to the
    vendor.

    Raises:
        LocalMessageError: on a missing conversation id or a blank body
        SQLAlchemyError: if the write fails
    """
    if not conversation_id or not conversation_id.strip():
        raise LocalMessageError("conversationId is required")
    if conversation_id == business_phone_id:
        raise LocalMessageError("conversationId cannot be the business phone id")
    if not body or not body.strip():
        raise LocalMessageError("body must not be empty")

    message = insert_message(
        db,
        external_id=generate_local_id(),
        conversation_id=conversation_id,
        sender_id=business_phone_id,
        sent_at_unix=int(time.time()),
        kind="text",
        body=body,
        delivery_state=DeliveryState.SENT,
        direction=Direction.OUTBOUND,
        display_name=display_name,
    )
    logger.info(f"Stored local message {message.external_id} for conversation {conversation_id}")

    if publisher is not None:
        record = MessageResponse.model_validate(message)
        try:
            await publisher.publish(
                RealtimeEvent(event=EventType.NEW_MESSAGE, data=record.model_dump(by_alias=True, mode="json"))
            )
        except Exception as e:
            logger.warning(f"Dropping new-message event for {message.external_id}: {e}")
    return message
