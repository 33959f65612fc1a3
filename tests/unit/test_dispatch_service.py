from datetime import date

import pytest

from dose_reminders.models.domain.reminder_domain import (
    DeliveryResult,
    EligibilityDecision,
    Recipient,
    TrackedEvent,
)
from dose_reminders.services.dispatch_service import (
    DispatchCoordinator,
    build_payload,
    compose_body,
    treat_as_notified,
)
from dose_reminders.services.push.fcm_client import PushTransportError

TARGET = date(2024, 3, 6)


def _decision(recipient_id: str = "parent-1", tokens=("token-1",), children=("child-1",)):
    events = [
        TrackedEvent(event_id=child_id, due_date=TARGET, label=f"Kid {child_id}", category="MMR")
        for child_id in children
    ]
    recipient = Recipient(
        recipient_id=recipient_id, delivery_addresses=list(tokens), events=events
    )
    return EligibilityDecision(recipient=recipient, eligible=True, candidates=events)


def test_compose_body_joins_fragments():
    events = [
        TrackedEvent(event_id="c1", label="Asha", category="MMR"),
        TrackedEvent(event_id="c2", label="Ravi", category="DTaP"),
    ]

    assert compose_body(events) == (
        "Reminder: MMR (Asha), DTaP (Ravi) are due tomorrow. "
        "Please enquire or book an appointment."
    )


def test_payload_carries_type_and_target_date():
    assert build_payload(TARGET) == {"type": "vaccine_reminder", "date": "2024-03-06"}


def test_policy_accepts_zero_success_results():
    assert treat_as_notified(DeliveryResult(success_count=0, failure_count=3)) is True


@pytest.mark.asyncio
async def test_success_marks_notified_and_writes_audit(coordinator, fake_transport, fake_store):
    units = await coordinator.dispatch_all([_decision(children=("child-1", "child-2"))], TARGET)

    assert len(fake_transport.calls) == 1
    call = fake_transport.calls[0]
    assert call["title"] == "Vaccine reminder"
    assert call["tokens"] == ["token-1"]
    assert call["data"] == {"type": "vaccine_reminder", "date": "2024-03-06"}
    assert "MMR (Kid child-1)" in call["body"]

    assert fake_store.updates == [
        {
            "Parents/parent-1/children/child-1/lastNotifiedDate": "2024-03-06",
            "Parents/parent-1/children/child-2/lastNotifiedDate": "2024-03-06",
        }
    ]
    record = fake_store.read("notifications/parent-1/child-1/2024-03-06")
    assert record["result"] == {"successCount": 1, "failureCount": 0}
    assert record["body"] == call["body"]
    assert record["sentAt"] == {".sv": "timestamp"}
    assert fake_store.read("notifications/parent-1/child-2/2024-03-06") is not None
    assert fake_store.read("notifications_failures") is None

    assert units[0].notified is True
    assert units[0].error is None


@pytest.mark.asyncio
async def test_partial_delivery_still_counts_as_notified(coordinator, fake_transport, fake_store):
    fake_transport.result = DeliveryResult(
        success_count=1, failure_count=1, failed_tokens={"token-2": "UNREGISTERED"}
    )

    units = await coordinator.dispatch_all([_decision(tokens=("token-1", "token-2"))], TARGET)

    assert units[0].notified is True
    assert fake_store.read("Parents/parent-1/children/child-1/lastNotifiedDate") == "2024-03-06"
    record = fake_store.read("notifications/parent-1/child-1/2024-03-06")
    assert record["result"] == {"successCount": 1, "failureCount": 1}


@pytest.mark.asyncio
async def test_transport_error_records_failure_without_marking(coordinator, fake_transport, fake_store):
    fake_transport.errors["token-1"] = PushTransportError("FCM unavailable")

    units = await coordinator.dispatch_all([_decision()], TARGET)

    assert fake_store.updates == []
    assert fake_store.read("notifications") is None
    failure = fake_store.read("notifications_failures/parent-1/child-1/2024-03-06")
    assert failure["error"] == "FCM unavailable"
    assert failure["ts"] == 1709611200000
    assert units[0].notified is False
    assert units[0].error == "FCM unavailable"


@pytest.mark.asyncio
async def test_one_failing_recipient_does_not_affect_others(coordinator, fake_transport, fake_store):
    fake_transport.errors["bad-token"] = PushTransportError("boom")

    units = await coordinator.dispatch_all(
        [_decision("parent-a", tokens=("bad-token",)), _decision("parent-b")], TARGET
    )

    assert [unit.notified for unit in units] == [False, True]
    assert fake_store.read("notifications_failures/parent-a/child-1/2024-03-06") is not None
    assert fake_store.read("notifications/parent-b/child-1/2024-03-06") is not None
    assert fake_store.read("Parents/parent-a") is None


@pytest.mark.asyncio
async def test_store_update_failure_is_recorded_as_failure(coordinator, fake_store):
    fake_store.fail_update = RuntimeError("permission denied")

    units = await coordinator.dispatch_all([_decision()], TARGET)

    assert units[0].notified is False
    assert "permission denied" in units[0].error
    failure = fake_store.read("notifications_failures/parent-1/child-1/2024-03-06")
    assert "permission denied" in failure["error"]


@pytest.mark.asyncio
async def test_failure_record_write_error_does_not_raise(coordinator, fake_transport, fake_store):
    fake_transport.errors["token-1"] = PushTransportError("boom")
    fake_store.fail_set_prefix = "notifications_failures"

    units = await coordinator.dispatch_all([_decision()], TARGET)

    assert units[0].settled is True
    assert units[0].error == "boom"


@pytest.mark.asyncio
async def test_rejecting_policy_leaves_events_eligible(fake_transport, repository, audit_recorder, fake_store):
    fake_transport.result = DeliveryResult(success_count=0, failure_count=1)
    coordinator = DispatchCoordinator(
        fake_transport,
        repository,
        audit_recorder,
        delivery_policy=lambda result: result.success_count > 0,
    )

    units = await coordinator.dispatch_all([_decision()], TARGET)

    assert units[0].notified is False
    assert fake_store.updates == []
    assert fake_store.read("notifications_failures/parent-1/child-1/2024-03-06") is not None


@pytest.mark.asyncio
async def test_ineligible_decisions_are_not_dispatched(coordinator, fake_transport):
    decision = _decision()
    decision.eligible = False

    units = await coordinator.dispatch_all([decision], TARGET)

    assert units == []
    assert fake_transport.calls == []
