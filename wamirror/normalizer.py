"""
Webhook Normalizer.

Turns one vendor webhook payload into at most one side effect: a new canonical
message, or a delivery-state update on an existing one. Each effect is
followed by a real-time event when a publisher is configured.

Best-effort ingestion: a database error while storing the effect is logged
and counted, and the payload is reported as "nothing processed" instead of
raising. Webhook callers therefore still answer 200 and the vendor does not
retry, at the price of losing that payload.
"""

import json
import logging
from pathlib import Path
from typing import Any, Iterable, NamedTuple, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wamirror.metrics import record_webhook_outcome
from wamirror.payloads import (
    NewMessageEvent,
    StatusUpdateEvent,
    UnrecognizedEvent,
    decode_webhook_payload,
)
from wamirror.realtime import EventPublisher, EventType, RealtimeEvent
from wamirror.schemas import DeliveryState, Direction, MessageResponse, StatusUpdateData
from wamirror.storage import get_message_by_external_id, insert_message, update_delivery_state

logger = logging.getLogger(__name__)


class SamplesNotFoundError(Exception):
    """Raised when a sample directory is missing or holds no JSON files."""


class BatchItem(NamedTuple):
    source: str
    message: Any


class BatchOutcome(NamedTuple):
    processed: int
    items: list


class WebhookNormalizer:
    """
    Applies webhook payloads to the message store.

    Args:
        business_phone_id: Phone number id of the business account. Messages
            sent from it are outbound; it is never used as a conversation id.
        publisher: Receives new-message and status-update events. None
            disables publishing.
    """

    def __init__(self, business_phone_id: str, publisher: Optional[EventPublisher] = None):
        if not business_phone_id:
            raise ValueError("business_phone_id must not be empty")
        self.business_phone_id = business_phone_id
        self.publisher = publisher

    def classify_direction(self, sender_id: str) -> Direction:
        if sender_id == self.business_phone_id:
            return Direction.OUTBOUND
        return Direction.INBOUND

    async def process(self, db: Session, payload: Any):
        """
        Normalize one payload.

        Returns:
            The created or updated Message, or None when the payload was
            unrecognized, referred to an unknown message, or could not be stored
        """
        event = decode_webhook_payload(payload)

        if isinstance(event, NewMessageEvent):
            return await self._store_new_message(db, event)
        if isinstance(event, StatusUpdateEvent):
            return await self._apply_status_update(db, event)

        logger.info(f"Ignoring webhook payload: {event.reason}")
        record_webhook_outcome("ignored")
        return None

    async def _store_new_message(self, db: Session, event: NewMessageEvent):
        message = event.message
        contact = event.contact
        direction = self.classify_direction(message.sender)

        if direction == Direction.INBOUND:
            conversation_id = message.sender
        else:
            conversation_id = message.recipient_id or (contact.wa_id if contact else None)

        if not conversation_id or conversation_id == self.business_phone_id:
            logger.warning(f"Ignoring outbound message {message.id}: no counterpart to file it under")
            record_webhook_outcome("ignored")
            return None

        try:
            stored = insert_message(
                db,
                external_id=message.id,
                conversation_id=conversation_id,
                sender_id=message.sender,
                sent_at_unix=message.timestamp,
                kind=message.type,
                body=message.body,
                delivery_state=DeliveryState.DELIVERED,
                direction=direction,
                display_name=contact.name if contact else None,
            )
        except SQLAlchemyError as e:
            self._drop_on_persistence_error(message.id, e)
            return None

        logger.info(f"Stored {direction.value} message {message.id} in conversation {conversation_id}")
        record_webhook_outcome("created")
        record = MessageResponse.model_validate(stored)
        await self._publish(EventType.NEW_MESSAGE, record.model_dump(by_alias=True, mode="json"))
        return stored

    async def _apply_status_update(self, db: Session, event: StatusUpdateEvent):
        status = event.status

        try:
            existing = get_message_by_external_id(db, status.id)
            if existing is None:
                logger.info(f"Status update for unknown message {status.id}, ignoring")
                record_webhook_outcome("unmatched_status")
                return None
            updated = update_delivery_state(db, existing, status.status)
        except SQLAlchemyError as e:
            self._drop_on_persistence_error(status.id, e)
            return None

        logger.info(f"Message {status.id} is now {status.status.value}")
        record_webhook_outcome("updated")
        data = StatusUpdateData(external_id=status.id, delivery_state=status.status)
        await self._publish(EventType.STATUS_UPDATE, data.model_dump(by_alias=True, mode="json"))
        return updated

    def _drop_on_persistence_error(self, external_id: str, error: SQLAlchemyError) -> None:
        logger.error(
            f"Best-effort ingestion dropped payload for {external_id}: {error}",
            extra={"external_id": external_id},
        )
        record_webhook_outcome("persistence_error")

    async def _publish(self, event_type: EventType, data: dict) -> None:
        if self.publisher is None:
            return
        try:
            await self.publisher.publish(RealtimeEvent(event=event_type, data=data))
        except Exception as e:
            # Best effort; the record is already committed
            logger.warning(f"Dropping {event_type.value} event after publish failure: {e}")

    # =========================================================================
    # Batch processing
    # =========================================================================

    async def process_batch(
        self,
        db: Session,
        payloads: Iterable[Union[Any, Tuple[str, Any]]],
        labelled: bool = False,
    ) -> BatchOutcome:
        """
        Normalize payloads one after another, in order.

        No-ops and dropped payloads are skipped; the batch never stops early.

        Args:
            db: Database session
            payloads: Raw payloads, or (source, payload) pairs when labelled is True
            labelled: Whether payloads carry their own source labels

        Returns:
            BatchOutcome with the number of successes and a BatchItem per success
        """
        items = []
        for index, entry in enumerate(payloads):
            source, payload = entry if labelled else (str(index), entry)
            try:
                result = await self.process(db, payload)
            except Exception as e:
                logger.error(f"Skipping batch item {source}: {e}")
                continue
            if result is not None:
                items.append(BatchItem(source=source, message=result))

        logger.info(f"Batch finished: {len(items)} processed")
        return BatchOutcome(processed=len(items), items=items)

    async def process_directory(self, db: Session, directory: Union[str, Path]) -> BatchOutcome:
        """
        Normalize every ``*.json`` file of a directory, in file-name order.

        Raises:
            SamplesNotFoundError: if the directory is missing or has no JSON files
        """
        return await self.process_batch(db, load_sample_payloads(directory), labelled=True)


def load_sample_payloads(directory: Union[str, Path]) -> list:
    """
    Read ``*.json`` files as (file name, payload) pairs sorted by file name.
    Files that cannot be read or parsed are logged and left out.
    """
    path = Path(directory)
    if not path.is_dir():
        raise SamplesNotFoundError(f"Samples directory not found: {path}")

    files = sorted(p for p in path.glob("*.json") if p.is_file())
    if not files:
        raise SamplesNotFoundError(f"No sample files found in {path}")

    payloads = []
    for file in files:
        try:
            payloads.append((file.name, json.loads(file.read_text(encoding="utf-8"))))
        except (OSError, ValueError) as e:
            logger.warning(f"Skipping unreadable sample {file.name}: {e}")
    return payloads
