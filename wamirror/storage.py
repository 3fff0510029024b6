import logging
from datetime import datetime, timezone
from typing import Generator, Optional, Union

from sqlalchemy import create_engine, func, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from wamirror.config import settings
from wamirror.schemas import DeliveryState, Direction

logger = logging.getLogger(__name__)

# check_same_thread=False lets SQLite sessions cross FastAPI's threadpool
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from wamirror.models import Message  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and the messages table exists.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("processed_messages"):
            logger.error("Database schema not applied: 'processed_messages' table not found")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def insert_message(
    db: Session,
    external_id: str,
    conversation_id: str,
    sender_id: str,
    sent_at_unix: int,
    direction: Union[Direction, str],
    delivery_state: Union[DeliveryState, str],
    kind: str = "text",
    body: str = "",
    display_name: Optional[str] = None,
):
    """
    Store a new canonical message.

    No de-duplication happens here: inserting the same external_id twice
    stores two rows.

    Returns:
        The stored Message

    Raises:
        SQLAlchemyError: after rolling back, if the write fails
    """
    from wamirror.models import Message

    logger.info(f"Storing message: external_id={external_id}, conversation={conversation_id}")

    now = _utc_now_iso()
    message = Message(
        external_id=external_id,
        meta_msg_id=external_id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        sent_at_unix=sent_at_unix,
        kind=kind,
        body=body,
        delivery_state=DeliveryState(delivery_state).value,
        direction=Direction(direction).value,
        display_name=display_name,
        created_at=now,
        updated_at=now,
    )

    try:
        db.add(message)
        db.commit()
        db.refresh(message)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store message {external_id}: {e}")
        raise

    logger.debug(f"Message stored with id={message.id}")
    return message


def get_message_by_external_id(db: Session, external_id: str):
    """
    Retrieve the message a vendor id refers to.

    When replays stored several rows for one external_id, the earliest wins.

    Returns:
        Message object if found, None otherwise
    """
    from wamirror.models import Message

    try:
        result = (
            db.query(Message)
            .filter(Message.external_id == external_id)
            .order_by(Message.id.asc())
            .first()
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to look up message {external_id}: {e}")
        raise
    logger.debug(f"Lookup external_id={external_id}: {'found' if result else 'not found'}")
    return result


def update_delivery_state(db: Session, message, delivery_state: Union[DeliveryState, str]):
    """
    Overwrite the delivery state of a stored message (last write wins).

    Raises:
        SQLAlchemyError: after rolling back, if the write fails
    """
    state = DeliveryState(delivery_state).value
    logger.info(f"Updating delivery state: external_id={message.external_id}, state={state}")

    try:
        message.delivery_state = state
        message.updated_at = _utc_now_iso()
        db.commit()
        db.refresh(message)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update message {message.external_id}: {e}")
        raise

    return message


# =============================================================================
# Read Projections
# =============================================================================

def list_conversations(db: Session) -> list[dict]:
    """
    One summary per conversation, built from its most recent message.

    Returns:
        List of dicts (conversation_id, display_name, last_message,
        last_message_at_unix), newest conversation first
    """
    from wamirror.models import Message

    ranked = (
        db.query(
            Message.conversation_id.label("conversation_id"),
            Message.display_name.label("display_name"),
            Message.body.label("last_message"),
            Message.sent_at_unix.label("last_message_at_unix"),
            func.row_number().over(
                partition_by=Message.conversation_id,
                order_by=(Message.sent_at_unix.desc(), Message.id.desc()),
            ).label("row_rank"),
        )
        .subquery()
    )

    rows = (
        db.query(
            ranked.c.conversation_id,
            ranked.c.display_name,
            ranked.c.last_message,
            ranked.c.last_message_at_unix,
        )
        .filter(ranked.c.row_rank == 1)
        .order_by(ranked.c.last_message_at_unix.desc(), ranked.c.conversation_id.asc())
        .all()
    )
    logger.info(f"Listed {len(rows)} conversations")

    return [
        {
            "conversation_id": row.conversation_id,
            "display_name": row.display_name,
            "last_message": row.last_message,
            "last_message_at_unix": row.last_message_at_unix,
        }
        for row in rows
    ]


def list_conversation_messages(db: Session, conversation_id: str) -> list:
    """All messages of one conversation, oldest first."""
    from wamirror.models import Message

    messages = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.sent_at_unix.asc(), Message.id.asc())
        .all()
    )
    logger.info(f"Listed {len(messages)} messages for conversation {conversation_id}")
    return messages
