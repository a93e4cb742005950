"""
Tests for the distribution engine and the /gateway endpoints.

Tests cover:
- Topic filtering and FIFO batch selection
- Claim exclusivity, both interleaved step by step and under threads
- Re-delivery of a device's own outstanding claims
- Best-effort poll timestamp
- End-to-end poll and status report scenarios
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest import mock

import pytest
from fastapi.testclient import TestClient

from sms_gateway.devices import resolve_device, set_device_topics
from sms_gateway.gateway import (
    POLL_BATCH_SIZE,
    claim_messages,
    poll_for_device,
    poll_pending_messages,
    select_pending_messages,
)
from sms_gateway.main import app
from sms_gateway.messages import create_message, get_message_by_id, update_message_status
from sms_gateway.models import Device, Message
from sms_gateway.storage import Base, SessionLocal, engine
from sms_gateway.utils import utcnow


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


def subscribed_device(db, key, topics):
    device = resolve_device(db, key)
    set_device_topics(db, device.id, topics)
    return device.id


class TestSelection:

    def test_no_topics_returns_nothing(self, db):
        device_id = subscribed_device(db, "dev1", [])
        create_message(db, "otp", "+1", "x")

        assert poll_pending_messages(db, device_id, []) == []

    def test_only_subscribed_topics_delivered(self, db):
        device_id = subscribed_device(db, "dev1", ["A", "B"])
        create_message(db, "A", "+1", "a")
        create_message(db, "B", "+2", "b")
        create_message(db, "C", "+3", "c")

        messages = poll_pending_messages(db, device_id, ["A", "B"])

        assert sorted(m.topic for m in messages) == ["A", "B"]

    def test_oldest_first_and_batch_capped(self, db):
        device_id = subscribed_device(db, "dev1", ["otp"])
        start = utcnow() - timedelta(minutes=30)
        for i in range(POLL_BATCH_SIZE + 5):
            create_message(db, "otp", f"+{i}", f"body {i}", now=start + timedelta(seconds=i))

        messages = poll_pending_messages(db, device_id, ["otp"])

        assert len(messages) == POLL_BATCH_SIZE
        assert [m.body for m in messages] == [f"body {i}" for i in range(POLL_BATCH_SIZE)]

    def test_non_pending_messages_skipped(self, db):
        device_id = subscribed_device(db, "dev1", ["otp"])
        done = create_message(db, "otp", "+1", "done")
        update_message_status(db, done.id, "sent")
        create_message(db, "otp", "+2", "waiting")

        messages = poll_pending_messages(db, device_id, ["otp"])

        assert [m.body for m in messages] == ["waiting"]

    def test_claim_sets_assignment(self, db):
        device_id = subscribed_device(db, "dev1", ["otp"])
        message = create_message(db, "otp", "+1", "x")

        poll_pending_messages(db, device_id, ["otp"])

        assert get_message_by_id(db, message.id).assigned_device_id == device_id

    def test_repoll_returns_own_claims(self, db):
        device_id = subscribed_device(db, "dev1", ["otp"])
        message = create_message(db, "otp", "+1", "x")

        first = poll_pending_messages(db, device_id, ["otp"])
        second = poll_pending_messages(db, device_id, ["otp"])

        assert [m.id for m in first] == [message.id]
        assert [m.id for m in second] == [message.id]

    def test_reported_message_not_redelivered(self, db):
        device_id = subscribed_device(db, "dev1", ["otp"])
        message = create_message(db, "otp", "+1", "x")
        poll_pending_messages(db, device_id, ["otp"])

        update_message_status(db, message.id, "sent")

        assert poll_pending_messages(db, device_id, ["otp"]) == []

    def test_claimed_by_other_device_excluded(self, db):
        dev1 = subscribed_device(db, "dev1", ["alerts"])
        dev2 = subscribed_device(db, "dev2", ["alerts"])
        create_message(db, "alerts", "+1", "x")

        assert len(poll_pending_messages(db, dev1, ["alerts"])) == 1
        assert poll_pending_messages(db, dev2, ["alerts"]) == []


class TestClaimExclusivity:

    def test_interleaved_claims(self, db):
        dev1 = subscribed_device(db, "dev1", ["alerts"])
        dev2 = subscribed_device(db, "dev2", ["alerts"])
        message = create_message(db, "alerts", "+1", "x")

        s1, s2 = SessionLocal(), SessionLocal()
        try:
            seen1 = select_pending_messages(s1, dev1, ["alerts"])
            seen2 = select_pending_messages(s2, dev2, ["alerts"])
            assert [m.id for m in seen1] == [m.id for m in seen2] == [message.id]

            assert claim_messages(s1, dev1, [message.id]) == 1
            assert claim_messages(s2, dev2, [message.id]) == 0
        finally:
            s1.close()
            s2.close()

        db.expire_all()
        assert get_message_by_id(db, message.id).assigned_device_id == dev1

    def test_strict_poll_drops_lost_claims(self, db):
        dev1 = subscribed_device(db, "dev1", ["alerts"])
        dev2 = subscribed_device(db, "dev2", ["alerts"])
        message = create_message(db, "alerts", "+1", "x")

        # dev1 claims between dev2's select and claim
        real_select = select_pending_messages

        def select_then_lose(session, device_id, topics, limit=POLL_BATCH_SIZE):
            selected = real_select(session, device_id, topics, limit)
            other = SessionLocal()
            try:
                claim_messages(other, dev1, [m.id for m in selected])
            finally:
                other.close()
            return selected

        with mock.patch("sms_gateway.gateway.select_pending_messages", side_effect=select_then_lose):
            loose = poll_pending_messages(db, dev2, ["alerts"], strict=False)

        assert [m.id for m in loose] == [message.id]

        assert get_message_by_id(db, message.id).assigned_device_id == dev1

        second = create_message(db, "alerts", "+2", "y")
        with mock.patch("sms_gateway.gateway.select_pending_messages", side_effect=select_then_lose):
            strict = poll_pending_messages(db, dev2, ["alerts"], strict=True)

        assert strict == []
        assert get_message_by_id(db, second.id).assigned_device_id == dev1

    def test_concurrent_claimers_never_share_a_message(self, db):
        device_ids = [subscribed_device(db, f"dev{i}", ["bulk"]) for i in range(6)]
        start = utcnow() - timedelta(hours=1)
        for i in range(40):
            create_message(db, "bulk", f"+{i}", "x", now=start + timedelta(seconds=i))

        barrier = threading.Barrier(len(device_ids))

        def claimer(device_id):
            session = SessionLocal()
            newly_claimed = 0
            try:
                barrier.wait()
                while True:
                    selected = select_pending_messages(session, device_id, ["bulk"])
                    if not selected:
                        return newly_claimed
                    newly_claimed += claim_messages(session, device_id, [m.id for m in selected])
                    # Report what this device now owns so the next select moves on
                    for m in selected:
                        if m.assigned_device_id == device_id:
                            update_message_status(session, m.id, "sent")
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=len(device_ids)) as pool:
            totals = list(pool.map(claimer, device_ids))

        db.expire_all()
        assigned = db.query(Message).filter(Message.assigned_device_id.isnot(None)).count()
        assert assigned == 40
        assert db.query(Message).filter(Message.status == "sent").count() == 40
        # Each null -> device transition was counted by exactly one claimer
        assert sum(totals) == 40


class TestPollForDevice:

    def test_unknown_key_registers_device(self, db):
        assert poll_for_device(db, "brand-new") == []

        device = db.query(Device).filter(Device.device_key == "brand-new").one()
        assert device.last_poll_at is not None

    def test_poll_time_failure_is_not_fatal(self, db):
        device_id = subscribed_device(db, "dev1", ["otp"])
        create_message(db, "otp", "+1", "x")

        with mock.patch("sms_gateway.gateway.mark_polled", return_value=False):
            messages = poll_for_device(db, "dev1")

        assert [m.body for m in messages] == ["x"]
        assert get_message_by_id(db, messages[0].id).assigned_device_id == device_id


class TestGatewayApi:

    def test_poll_requires_device_key(self, client):
        response = client.get("/gateway/poll")

        assert response.status_code == 401
        assert response.json() == {"detail": "Invalid or missing device key"}

    def test_status_requires_device_key(self, client):
        response = client.put("/gateway/status/msg_x", json={"status": "sent"})

        assert response.status_code == 401

    def test_deliver_and_report_sent(self, client):
        headers = {"X-Device-Key": "dev1"}
        assert client.get("/gateway/poll", headers=headers).json() == {"messages": []}
        assert client.put("/devices", json={"topics": ["otp"]}, headers=headers).status_code == 200
        message_id = client.post(
            "/messages", json={"topic": "otp", "to_number": "+123", "body": "hi"}
        ).json()["id"]

        polled = client.get("/gateway/poll", headers=headers).json()["messages"]
        assert polled == [{"id": message_id, "to_number": "+123", "body": "hi"}]

        response = client.put(f"/gateway/status/{message_id}", json={"status": "sent"}, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"message": "Message status updated"}

        stored = client.get(f"/messages/{message_id}").json()
        assert stored["status"] == "sent"
        assert stored["sent_at"] is not None
        assert stored["failed_at"] is None

    def test_two_devices_one_message(self, client):
        for key in ("dev1", "dev2"):
            client.put("/devices", json={"topics": ["alerts"]}, headers={"X-Device-Key": key})
        client.post("/messages", json={"topic": "alerts", "to_number": "+1", "body": "fire"})

        first = client.get("/gateway/poll", headers={"X-Device-Key": "dev1"}).json()["messages"]
        second = client.get("/gateway/poll", headers={"X-Device-Key": "dev2"}).json()["messages"]

        assert len(first) == 1
        assert second == []

    def test_report_failed_without_reason(self, client):
        headers = {"X-Device-Key": "dev1"}
        message_id = client.post(
            "/messages", json={"topic": "otp", "to_number": "+1", "body": "x"}
        ).json()["id"]

        response = client.put(f"/gateway/status/{message_id}", json={"status": "failed"}, headers=headers)

        assert response.status_code == 200
        stored = client.get(f"/messages/{message_id}").json()
        assert stored["status"] == "failed"
        assert stored["failure_reason"] == "Unknown error"

    def test_report_invalid_status(self, client):
        headers = {"X-Device-Key": "dev1"}
        message_id = client.post(
            "/messages", json={"topic": "otp", "to_number": "+1", "body": "x"}
        ).json()["id"]

        response = client.put(f"/gateway/status/{message_id}", json={"status": "bogus"}, headers=headers)

        assert response.status_code == 400
        assert client.get(f"/messages/{message_id}").json()["status"] == "pending"

    def test_report_unknown_message(self, client):
        response = client.put(
            "/gateway/status/msg_missing", json={"status": "sent"}, headers={"X-Device-Key": "dev1"}
        )

        assert response.status_code == 404
        assert response.json() == {"detail": "Message not found"}

    def test_report_conflicting_terminal_status(self, client):
        headers = {"X-Device-Key": "dev1"}
        message_id = client.post(
            "/messages", json={"topic": "otp", "to_number": "+1", "body": "x"}
        ).json()["id"]
        client.put(f"/gateway/status/{message_id}", json={"status": "sent"}, headers=headers)

        response = client.put(f"/gateway/status/{message_id}", json={"status": "failed"}, headers=headers)

        assert response.status_code == 409
