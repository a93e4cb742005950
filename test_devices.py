"""
Tests for the device registry and the /devices endpoints.
"""

from unittest import mock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from sms_gateway.devices import (
    get_device_topics,
    mark_polled,
    resolve_device,
    set_device_topics,
)
from sms_gateway.errors import NotFound, ValidationError
from sms_gateway.main import app
from sms_gateway.models import Device, DeviceTopic
from sms_gateway.storage import Base, engine


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


class TestResolveDevice:

    def test_unknown_key_creates_device(self, db):
        device = resolve_device(db, "dev1")

        assert device.id is not None
        assert device.device_key == "dev1"
        assert device.last_poll_at is None
        assert get_device_topics(db, device.id) == []

    def test_known_key_returns_same_device(self, db):
        first = resolve_device(db, "dev1")
        second = resolve_device(db, "dev1")

        assert first.id == second.id
        assert db.query(Device).count() == 1

    def test_keys_are_case_sensitive(self, db):
        lower = resolve_device(db, "dev1")
        upper = resolve_device(db, "DEV1")

        assert lower.id != upper.id

    def test_blank_key_rejected(self, db):
        with pytest.raises(ValidationError):
            resolve_device(db, "  ")


class TestTopics:

    def test_topics_sorted_and_deduplicated(self, db):
        device = resolve_device(db, "dev1")

        stored = set_device_topics(db, device.id, ["otp", "alerts", "otp"])

        assert stored == ["alerts", "otp"]
        assert get_device_topics(db, device.id) == ["alerts", "otp"]

    def test_set_replaces_whole_set(self, db):
        device = resolve_device(db, "dev1")
        set_device_topics(db, device.id, ["a", "b"])

        set_device_topics(db, device.id, ["c"])

        assert get_device_topics(db, device.id) == ["c"]
        assert db.query(DeviceTopic).count() == 1

    def test_set_is_idempotent(self, db):
        device = resolve_device(db, "dev1")
        set_device_topics(db, device.id, ["a", "b"])
        set_device_topics(db, device.id, ["a", "b"])

        assert get_device_topics(db, device.id) == ["a", "b"]
        assert db.query(DeviceTopic).count() == 2

    def test_empty_set_clears_subscriptions(self, db):
        device = resolve_device(db, "dev1")
        set_device_topics(db, device.id, ["a"])

        set_device_topics(db, device.id, [])

        assert get_device_topics(db, device.id) == []

    def test_set_bumps_updated_at(self, db):
        device = resolve_device(db, "dev1")
        before = device.updated_at

        set_device_topics(db, device.id, ["a"])

        assert db.get(Device, device.id).updated_at >= before

    def test_unknown_device(self, db):
        with pytest.raises(NotFound):
            set_device_topics(db, 999, ["a"])

    def test_topics_are_per_device(self, db):
        dev1 = resolve_device(db, "dev1")
        dev2 = resolve_device(db, "dev2")
        set_device_topics(db, dev1.id, ["a"])
        set_device_topics(db, dev2.id, ["b"])

        assert get_device_topics(db, dev1.id) == ["a"]
        assert get_device_topics(db, dev2.id) == ["b"]


class TestMarkPolled:

    def test_sets_last_poll_at(self, db):
        device = resolve_device(db, "dev1")

        assert mark_polled(db, device.id) is True
        assert db.get(Device, device.id).last_poll_at is not None

    def test_store_failure_is_swallowed(self, db):
        device = resolve_device(db, "dev1")
        error = OperationalError("UPDATE devices", {}, Exception("database is locked"))

        with mock.patch.object(db, "commit", side_effect=error):
            assert mark_polled(db, device.id) is False


class TestDevicesApi:

    def test_put_requires_device_key(self, client):
        response = client.put("/devices", json={"topics": ["a"]})

        assert response.status_code == 401

    def test_put_then_get(self, client):
        headers = {"X-Device-Key": "dev1"}

        response = client.put("/devices", json={"topics": ["otp", "alerts"]}, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"message": "Device configuration updated"}

        data = client.get("/devices", headers=headers).json()
        assert data["device_key"] == "dev1"
        assert data["topics"] == ["alerts", "otp"]
        assert data["last_poll_at"] is None

    def test_topics_field_required(self, client):
        response = client.put("/devices", json={}, headers={"X-Device-Key": "dev1"})

        assert response.status_code == 422

    def test_blank_topic_rejected(self, client):
        response = client.put("/devices", json={"topics": ["otp", " "]}, headers={"X-Device-Key": "dev1"})

        assert response.status_code == 422

    def test_poll_records_last_poll(self, client):
        headers = {"X-Device-Key": "dev1"}
        client.get("/gateway/poll", headers=headers)

        assert client.get("/devices", headers=headers).json()["last_poll_at"] is not None
