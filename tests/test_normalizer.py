"""
Tests for the webhook normalizer, driven directly without HTTP.

Tests cover:
- Direction and conversation id classification
- Status updates on known and unknown messages
- Replays storing duplicates
- Best-effort ingestion on persistence failures
- Batch and directory processing
"""

import asyncio
import json
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from wamirror.models import Message
from wamirror.normalizer import SamplesNotFoundError, WebhookNormalizer, load_sample_payloads

from conftest import BUSINESS_ID, message_payload, status_payload


@pytest.fixture
def normalizer(publisher):
    return WebhookNormalizer(business_phone_id=BUSINESS_ID, publisher=publisher)


def run(coro):
    return asyncio.run(coro)


class TestNewMessages:
    """New-message payloads."""

    def test_inbound_message_example(self, db, normalizer, publisher):
        """The documented example: inbound text message from a customer."""
        payload = message_payload("wamid.A1", "919999999999", timestamp="1700000000", body="hi")

        message = run(normalizer.process(db, payload))

        assert message is not None
        assert message.direction == "inbound"
        assert message.conversation_id == "919999999999"
        assert message.delivery_state == "delivered"
        assert message.body == "hi"
        assert message.external_id == "wamid.A1"
        assert message.meta_msg_id == "wamid.A1"
        assert message.sent_at_unix == 1700000000
        assert message.display_name is None

        events = publisher.of_type("new-message")
        assert len(events) == 1
        assert events[0].data["externalId"] == "wamid.A1"
        assert events[0].data["conversationId"] == "919999999999"
        assert events[0].data["deliveryState"] == "delivered"

    def test_outbound_message_uses_recipient_id(self, db, normalizer):
        payload = message_payload(
            "wamid.B1", BUSINESS_ID, recipient_id="917845129630", contact_wa_id="910000000000"
        )

        message = run(normalizer.process(db, payload))

        assert message.direction == "outbound"
        assert message.conversation_id == "917845129630"
        assert message.sender_id == BUSINESS_ID

    def test_outbound_message_falls_back_to_contact(self, db, normalizer):
        payload = message_payload("wamid.B2", BUSINESS_ID, contact_name="Amit Singh", contact_wa_id="917845129630")

        message = run(normalizer.process(db, payload))

        assert message.direction == "outbound"
        assert message.conversation_id == "917845129630"
        assert message.display_name == "Amit Singh"

    def test_outbound_message_without_counterpart_is_ignored(self, db, normalizer, publisher):
        message = run(normalizer.process(db, message_payload("wamid.B3", BUSINESS_ID)))

        assert message is None
        assert db.query(Message).count() == 0
        assert publisher.events == []

    @pytest.mark.parametrize("sender,expected", [
        (BUSINESS_ID, "outbound"),
        ("919999999999", "inbound"),
        ("918329446655", "inbound"),
    ])
    def test_direction_depends_only_on_sender(self, db, normalizer, sender, expected):
        payload = message_payload("wamid.D1", sender, contact_wa_id="917845129630")

        message = run(normalizer.process(db, payload))

        assert message.direction == expected

    def test_display_name_from_contact(self, db, normalizer):
        payload = message_payload("wamid.C1", "919937320320", contact_name="Ravi Kumar")

        message = run(normalizer.process(db, payload))

        assert message.display_name == "Ravi Kumar"

    def test_non_text_message_stored_with_empty_body(self, db, normalizer):
        payload = message_payload("wamid.I1", "919999999999", message_type="image")

        message = run(normalizer.process(db, payload))

        assert message.kind == "image"
        assert message.body == ""

    def test_replay_stores_duplicate(self, db, normalizer):
        """Inserts are not de-duplicated: the same payload twice gives two rows."""
        payload = message_payload("wamid.A1", "919999999999")

        first = run(normalizer.process(db, payload))
        second = run(normalizer.process(db, payload))

        assert first.id != second.id
        assert db.query(Message).filter(Message.external_id == "wamid.A1").count() == 2

    def test_works_without_publisher(self, db):
        normalizer = WebhookNormalizer(business_phone_id=BUSINESS_ID)

        message = run(normalizer.process(db, message_payload("wamid.A1", "919999999999")))

        assert message is not None

    def test_empty_business_id_rejected(self):
        with pytest.raises(ValueError):
            WebhookNormalizer(business_phone_id="")


class TestStatusUpdates:
    """Status-update payloads."""

    def test_status_update_example(self, db, normalizer, publisher):
        run(normalizer.process(db, message_payload("wamid.A1", "919999999999", body="hi")))

        updated = run(normalizer.process(db, status_payload("wamid.A1", "read")))

        assert updated is not None
        assert updated.delivery_state == "read"
        stored = db.query(Message).filter(Message.external_id == "wamid.A1").one()
        assert stored.delivery_state == "read"

        events = publisher.of_type("status-update")
        assert len(events) == 1
        assert events[0].data == {"externalId": "wamid.A1", "deliveryState": "read"}

    def test_unknown_message_is_noop(self, db, normalizer, publisher):
        result = run(normalizer.process(db, status_payload("wamid.missing", "delivered")))

        assert result is None
        assert db.query(Message).count() == 0
        assert publisher.events == []

    def test_last_write_wins(self, db, normalizer):
        run(normalizer.process(db, message_payload("wamid.A1", "919999999999")))

        run(normalizer.process(db, status_payload("wamid.A1", "read")))
        run(normalizer.process(db, status_payload("wamid.A1", "failed")))

        stored = db.query(Message).filter(Message.external_id == "wamid.A1").one()
        assert stored.delivery_state == "failed"

    def test_updates_earliest_duplicate(self, db, normalizer):
        payload = message_payload("wamid.A1", "919999999999")
        first = run(normalizer.process(db, payload))
        second = run(normalizer.process(db, payload))

        run(normalizer.process(db, status_payload("wamid.A1", "read")))

        db.expire_all()
        assert db.get(Message, first.id).delivery_state == "read"
        assert db.get(Message, second.id).delivery_state == "delivered"


class TestBestEffortIngestion:
    """Persistence failures are logged and dropped, never raised."""

    def test_insert_failure_returns_none(self, normalizer, publisher):
        session = MagicMock()
        session.commit.side_effect = SQLAlchemyError("disk I/O error")

        result = run(normalizer.process(session, message_payload("wamid.A1", "919999999999")))

        assert result is None
        session.rollback.assert_called_once()
        assert publisher.events == []

    def test_update_failure_returns_none(self, normalizer, publisher):
        existing = Message(external_id="wamid.A1", delivery_state="delivered")
        session = MagicMock()
        session.query.return_value.filter.return_value.order_by.return_value.first.return_value = existing
        session.commit.side_effect = SQLAlchemyError("database is locked")

        result = run(normalizer.process(session, status_payload("wamid.A1", "read")))

        assert result is None
        session.rollback.assert_called_once()
        assert publisher.events == []

    def test_lookup_failure_returns_none(self, normalizer, publisher):
        session = MagicMock()
        session.query.side_effect = SQLAlchemyError("database is locked")

        result = run(normalizer.process(session, status_payload("wamid.A1", "read")))

        assert result is None
        session.rollback.assert_called_once()
        session.commit.assert_not_called()
        assert publisher.events == []


class FailingPublisher:
    async def publish(self, event):
        raise RuntimeError("broker unavailable")


class TestBestEffortPublishing:
    """A failing publisher never undoes or fails a stored change."""

    def test_new_message_kept_when_publish_fails(self, db):
        normalizer = WebhookNormalizer(business_phone_id=BUSINESS_ID, publisher=FailingPublisher())

        message = run(normalizer.process(db, message_payload("wamid.A1", "919999999999")))

        assert message is not None
        assert db.query(Message).count() == 1

    def test_status_update_kept_when_publish_fails(self, db):
        normalizer = WebhookNormalizer(business_phone_id=BUSINESS_ID, publisher=FailingPublisher())
        run(normalizer.process(db, message_payload("wamid.A1", "919999999999")))

        updated = run(normalizer.process(db, status_payload("wamid.A1", "read")))

        assert updated.delivery_state == "read"


class TestLooseShapes:
    """Payloads with null lists or junk trailing entries are still applied."""

    def test_null_contacts_still_stored(self, db, normalizer):
        payload = message_payload("wamid.A1", "919999999999")
        payload["metaData"]["entry"][0]["changes"][0]["value"]["contacts"] = None

        message = run(normalizer.process(db, payload))

        assert message is not None
        assert message.display_name is None

    def test_null_messages_status_still_applied(self, db, normalizer):
        run(normalizer.process(db, message_payload("wamid.A1", "919999999999")))
        payload = status_payload("wamid.A1", "read")
        payload["metaData"]["entry"][0]["changes"][0]["value"]["messages"] = None

        updated = run(normalizer.process(db, payload))

        assert updated.delivery_state == "read"

    def test_junk_second_entry_still_stored(self, db, normalizer):
        payload = message_payload("wamid.A1", "919999999999")
        payload["metaData"]["entry"].append(None)

        message = run(normalizer.process(db, payload))

        assert message is not None
        assert db.query(Message).count() == 1


class TestBatch:
    """Batch processing of payload lists and directories."""

    def test_malformed_payloads_are_skipped(self, db, normalizer):
        payloads = [
            message_payload("wamid.1", "919999999999"),
            {"metaData": {}},
            message_payload("wamid.2", "919937320320"),
            "junk",
            message_payload("wamid.3", BUSINESS_ID, contact_wa_id="919937320320"),
        ]

        outcome = run(normalizer.process_batch(db, payloads))

        assert outcome.processed == 3
        assert [item.source for item in outcome.items] == ["0", "2", "4"]
        assert [item.message.external_id for item in outcome.items] == ["wamid.1", "wamid.2", "wamid.3"]

    def test_status_after_message_in_same_batch(self, db, normalizer):
        payloads = [
            message_payload("wamid.1", BUSINESS_ID, contact_wa_id="919937320320"),
            status_payload("wamid.1", "read"),
            status_payload("wamid.unknown", "read"),
        ]

        outcome = run(normalizer.process_batch(db, payloads))

        assert outcome.processed == 2
        assert outcome.items[1].message.delivery_state == "read"

    def test_empty_batch(self, db, normalizer):
        outcome = run(normalizer.process_batch(db, []))

        assert outcome.processed == 0
        assert outcome.items == []

    def test_directory_in_file_name_order(self, db, normalizer, tmp_path):
        (tmp_path / "b_status.json").write_text(json.dumps(status_payload("wamid.1", "read")))
        (tmp_path / "a_message.json").write_text(json.dumps(message_payload("wamid.1", "919999999999")))
        (tmp_path / "c_broken.json").write_text("{not json")
        (tmp_path / "notes.txt").write_text("ignored")

        outcome = run(normalizer.process_directory(db, tmp_path))

        assert outcome.processed == 2
        assert [item.source for item in outcome.items] == ["a_message.json", "b_status.json"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(SamplesNotFoundError):
            load_sample_payloads(tmp_path / "nope")

    def test_directory_without_json(self, tmp_path):
        (tmp_path / "readme.md").write_text("nothing here")

        with pytest.raises(SamplesNotFoundError):
            load_sample_payloads(tmp_path)
