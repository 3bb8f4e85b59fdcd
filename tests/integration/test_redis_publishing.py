# pylint: disable=redefined-outer-name
import json

import fakeredis
import pytest

from conftest import NOW, make_request
from bloodbank.adapters import audit as audit_adapter
from bloodbank.adapters import notifications, redis_adapter
from bloodbank.domain import audit


@pytest.fixture
def client():
    return fakeredis.FakeRedis()


def subscribe(client, channel):
    pubsub = client.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe(channel)
    pubsub.get_message(timeout=1)
    return pubsub


def received(pubsub):
    messages = []
    while True:
        message = pubsub.get_message(timeout=0.1)
        if message is None:
            return messages
        messages.append(json.loads(message["data"]))


def test_serialize_handles_datetimes_and_sets():
    payload = json.loads(redis_adapter.serialize({"at": NOW, "ids": {"b", "a"}}))
    assert payload == {"at": "2030-01-15T12:00:00+00:00", "ids": ["a", "b"]}


def test_notification_is_published(client):
    pubsub = subscribe(client, notifications.NOTIFICATIONS_CHANNEL)
    dispatcher = notifications.RedisNotificationDispatcher(client=client)

    dispatcher.send(
        notifications.Notification(
            recipient_id="donor-1",
            title="Urgent Blood Request",
            message="O- blood needed urgently at City General Hospital",
            type=notifications.BLOOD_REQUEST,
            metadata={"required_by": NOW},
        )
    )

    [message] = received(pubsub)
    assert message["recipient_id"] == "donor-1"
    assert message["priority"] == "medium"
    assert message["metadata"]["required_by"] == NOW.isoformat()


def test_batch_is_published_in_one_pipeline(client):
    pubsub = subscribe(client, notifications.NOTIFICATIONS_CHANNEL)
    dispatcher = notifications.RedisNotificationDispatcher(client=client)

    dispatcher.send_batch(
        [
            notifications.Notification(recipient_id=staff_id, title="New Blood Request", message="2 units", type="blood_request")
            for staff_id in ("staff-1", "staff-2")
        ]
    )
    dispatcher.send_batch([])

    assert [m["recipient_id"] for m in received(pubsub)] == ["staff-1", "staff-2"]


def test_audit_fact_is_published(client, staff_actor):
    pubsub = subscribe(client, audit_adapter.AUDIT_CHANNEL)
    request = make_request()
    request.cancel(staff_actor, "Duplicate request", NOW)

    audit_adapter.RedisAuditRecorder(client=client).record(audit.fact_for(request.events[-1]))

    [message] = received(pubsub)
    assert message["action"] == "blood_request_cancel"
    assert message["risk_level"] == "high"
    assert message["details"]["matched_donor_ids"] == []
    assert message["occurred_at"] == NOW.isoformat()
