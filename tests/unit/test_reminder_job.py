from datetime import date

import pytest

from conftest import parent_document
from dose_reminders.jobs.reminder_job import EXIT_FATAL, EXIT_OK, ReminderJob, RunState
from dose_reminders.services.push.fcm_client import PushTransportError


@pytest.fixture
def job(repository, resolver, coordinator, calculator):
    return ReminderJob(repository, resolver, coordinator, calculator)


def test_target_date_is_tomorrow_in_reference_zone(job):
    assert job.target_date() == date(2024, 3, 6)


@pytest.mark.asyncio
async def test_eligible_parent_is_notified_once(job, fake_store, fake_transport):
    fake_store.data = {"Parents": {"parent-1": parent_document()}}

    summary = await job.run_once()

    assert summary.exit_code == EXIT_OK
    assert summary.target_date == date(2024, 3, 6)
    assert summary.dispatched == 1
    assert summary.notified == 1
    assert summary.events_notified == 1
    assert job.state == RunState.DONE

    assert len(fake_transport.calls) == 1
    assert "MMR (Asha)" in fake_transport.calls[0]["body"]
    assert fake_store.read("Parents/parent-1/children/child-1/lastNotifiedDate") == "2024-03-06"
    assert fake_store.read("notifications/parent-1/child-1/2024-03-06")["result"] == {
        "successCount": 1,
        "failureCount": 0,
    }


@pytest.mark.asyncio
async def test_second_run_same_day_is_a_no_op(job, fake_store, fake_transport):
    fake_store.data = {"Parents": {"parent-1": parent_document()}}

    await job.run_once()
    summary = await job.run_once()

    assert len(fake_transport.calls) == 1
    assert summary.dispatched == 0
    assert summary.skipped == {"no_due_events": 1}


@pytest.mark.asyncio
async def test_transport_error_still_exits_zero(job, fake_store, fake_transport):
    fake_store.data = {"Parents": {"parent-1": parent_document()}}
    fake_transport.errors["token-1"] = PushTransportError("FCM unavailable")

    summary = await job.run_once()

    assert summary.exit_code == EXIT_OK
    assert summary.failed == 1
    assert fake_store.updates == []
    failure = fake_store.read("notifications_failures/parent-1/child-1/2024-03-06")
    assert failure["error"] == "FCM unavailable"
    assert fake_store.read("Parents/parent-1/children/child-1/lastNotifiedDate") is None


@pytest.mark.asyncio
async def test_muted_parent_gets_nothing(job, fake_store, fake_transport):
    fake_store.data = {"Parents": {"parent-1": parent_document(muted=True)}}

    summary = await job.run_once()

    assert summary.skipped == {"muted": 1}
    assert fake_transport.calls == []
    assert fake_store.sets == []


@pytest.mark.asyncio
async def test_only_eligible_parent_is_dispatched(job, fake_store, fake_transport):
    fake_store.data = {
        "Parents": {
            "parent-due": parent_document(tokens=("due-token",)),
            "parent-later": parent_document(due_date="2024-03-20", tokens=("later-token",)),
        }
    }

    summary = await job.run_once()

    assert [call["tokens"] for call in fake_transport.calls] == [["due-token"]]
    assert fake_store.read("notifications/parent-due") is not None
    assert fake_store.read("notifications/parent-later") is None
    assert summary.recipients_scanned == 2
    assert summary.skipped == {"no_due_events": 1}


@pytest.mark.asyncio
async def test_bulk_read_failure_is_fatal(job, fake_store, fake_transport):
    fake_store.fail_get = RuntimeError("database offline")

    summary = await job.run_once()

    assert summary.exit_code == EXIT_FATAL
    assert "database offline" in summary.error
    assert fake_transport.calls == []
    assert job.is_running is False


@pytest.mark.asyncio
async def test_empty_store_exits_zero(job, fake_transport):
    summary = await job.run_once()

    assert summary.exit_code == EXIT_OK
    assert summary.recipients_scanned == 0
    assert fake_transport.calls == []


@pytest.mark.asyncio
async def test_dry_run_sends_and_writes_nothing(repository, resolver, coordinator, calculator, fake_store, fake_transport):
    fake_store.data = {"Parents": {"parent-1": parent_document()}}
    job = ReminderJob(repository, resolver, coordinator, calculator, dry_run=True)

    summary = await job.run_once()

    assert summary.exit_code == EXIT_OK
    assert summary.dry_run is True
    assert summary.recipients_scanned == 1
    assert fake_transport.calls == []
    assert fake_store.sets == []
    assert fake_store.updates == []


@pytest.mark.asyncio
async def test_overlapping_run_is_skipped(job, fake_transport):
    job.is_running = True

    summary = await job.run_once()

    assert summary.skipped_run is True
    assert fake_transport.calls == []
