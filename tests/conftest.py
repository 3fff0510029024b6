"""
Pytest configuration and shared fixtures.

Test settings are put in the environment before any application import so
the module-level settings, engine and app pick them up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_wamirror.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("BUSINESS_PHONE_ID", "918329446654")
os.environ["WEBHOOK_SECRET"] = ""

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from wamirror.config import get_settings
get_settings.cache_clear()

from wamirror.main import app, get_publisher
from wamirror.storage import Base, SessionLocal, engine


BUSINESS_ID = os.environ["BUSINESS_PHONE_ID"]


class RecordingPublisher:
    """Publisher that keeps events in memory instead of sending them."""

    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e.event.value == event_type]


def message_payload(
    message_id: str,
    sender: str,
    timestamp: str = "1700000000",
    body: str = "hi",
    contact_name: str = None,
    contact_wa_id: str = None,
    recipient_id: str = None,
    message_type: str = "text",
) -> dict:
    """Webhook payload carrying one new message, shaped like the vendor's."""
    message = {
        "from": sender,
        "id": message_id,
        "timestamp": timestamp,
        "type": message_type,
    }
    if message_type == "text":
        message["text"] = {"body": body}
    if recipient_id is not None:
        message["recipient_id"] = recipient_id

    value = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": BUSINESS_ID, "phone_number_id": "629305560276479"},
        "messages": [message],
    }
    if contact_name is not None or contact_wa_id is not None:
        value["contacts"] = [{"profile": {"name": contact_name}, "wa_id": contact_wa_id or sender}]

    return {
        "payload_type": "whatsapp_webhook",
        "_id": f"{message_id}-payload",
        "metaData": {
            "entry": [{"changes": [{"field": "messages", "value": value}], "id": "30164062719905277"}],
            "gs_app_id": "conv1-app",
            "object": "whatsapp_business_account",
        },
    }


def status_payload(message_id: str, state: str, recipient_id: str = "919999999999") -> dict:
    """Webhook payload carrying one delivery-status update."""
    return {
        "payload_type": "whatsapp_webhook",
        "_id": f"{message_id}-status",
        "metaData": {
            "entry": [
                {
                    "changes": [
                        {
                            "field": "messages",
                            "value": {
                                "messaging_product": "whatsapp",
                                "statuses": [
                                    {
                                        "id": message_id,
                                        "meta_msg_id": message_id,
                                        "recipient_id": recipient_id,
                                        "status": state,
                                        "timestamp": "1700000020",
                                    }
                                ],
                            },
                        }
                    ]
                }
            ]
        },
    }


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture(scope="function")
def client(publisher):
    """Test client on a fresh database, publishing into a RecordingPublisher."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_publisher] = lambda: publisher

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db():
    """Session on a fresh database, for tests that bypass HTTP."""
    from wamirror.models import Message  # noqa: F401

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
