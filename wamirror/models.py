"""
SQLAlchemy ORM models for database tables.

For the Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, Integer, String, Text

from wamirror.storage import Base


class Message(Base):
    """
    A canonical message, either ingested from a webhook or sent locally.

    Table: processed_messages
    Primary Key: id (surrogate). external_id is indexed but not unique:
    replaying a webhook payload stores a second row.
    """
    __tablename__ = "processed_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String, nullable=False, index=True)
    meta_msg_id = Column(String, nullable=False)
    conversation_id = Column(String, nullable=False, index=True)
    sender_id = Column(String, nullable=False)
    sent_at_unix = Column(Integer, nullable=False, index=True)
    kind = Column(String, nullable=False, default="text")
    body = Column(Text, nullable=False, default="")
    delivery_state = Column(String, nullable=False, default="sent")
    direction = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)
