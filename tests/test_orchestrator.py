import asyncio
import dataclasses
import threading
import time

import pytest

from conftest import (
    CONTACT_MAPPINGS,
    DESTINATION_SCHEMAS,
    RecordingSleep,
    contact_request,
    make_contacts,
)

from quillswitch.exceptions import (
    AuthenticationError,
    InvalidTransitionError,
    RateLimitError,
    TransientNetworkError,
)
from quillswitch.extractors import MemoryExtractor
from quillswitch.loaders import MemoryLoader
from quillswitch.models import (
    MappingSuggestion,
    ObjectTypeRequest,
    ObjectTypeStatus,
    ProjectStatus,
    ScheduleConfig,
)
from quillswitch.services.error_handler import RetryOutcome
from quillswitch.storage import MigrationStore


class GaugedLoader(MemoryLoader):
    """MemoryLoader that measures how many batches load at once."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.active = 0
        self.peak = 0
        self._gauge = threading.Lock()

    def load_batch(self, *args, **kwargs):
        with self._gauge:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(0.005)
            return super().load_batch(*args, **kwargs)
        finally:
            with self._gauge:
                self.active -= 1


def failing_batch(exc, first_record="c020", times=None):
    """before_load hook raising ``exc`` for the batch starting at ``first_record``."""
    state = {"calls": 0, "enabled": True}

    def hook(object_type, records, call_number):
        if records and records[0].id == first_record and state["enabled"]:
            state["calls"] += 1
            if times is None or state["calls"] <= times:
                raise exc
    hook.state = state
    return hook


def only_object_type(orchestrator, project_id):
    object_types = orchestrator.store.list_object_types(project_id)
    assert len(object_types) == 1
    return object_types[0]


def test_full_run_migrates_every_record(make_orchestrator, source):
    destination = GaugedLoader("dst", schemas=DESTINATION_SCHEMAS)
    orchestrator = make_orchestrator(source, destination)
    observed = []
    update = orchestrator.progress.update

    def checked_update(object_type_id, migrated=0, failed=0):
        object_type = update(object_type_id, migrated=migrated, failed=failed)
        observed.append((object_type.processed_records, object_type.total_records))
        return object_type
    orchestrator.progress.update = checked_update

    async def scenario():
        project = await orchestrator.start(contact_request(batch_size=10, concurrent_batches=2))
        return await orchestrator.wait(project.id)

    project = asyncio.run(scenario())
    snapshot = orchestrator.snapshot(project.id)

    assert project.status == ProjectStatus.COMPLETED
    assert snapshot.migrated_records == 100
    assert snapshot.failed_records == 0
    assert snapshot.percentage == 100.0
    assert destination.batch_calls == 10
    assert destination.peak <= 2
    assert len(observed) == 10
    assert all(processed <= total for processed, total in observed)
    assert destination.loaded("contacts")["c007"] == {
        "firstname": "Name7",
        "lastname": "Example",
        "email": "user7@example.com",
    }
    assert only_object_type(orchestrator, project.id).status == ObjectTypeStatus.DONE
    assert project.last_successful_run_at is not None


def test_results_do_not_depend_on_concurrency(make_orchestrator):
    loaded = []
    for concurrency in (1, 4):
        source = MemoryExtractor("src", data={"contacts": make_contacts(55)})
        destination = MemoryLoader("dst", schemas=DESTINATION_SCHEMAS)
        orchestrator = make_orchestrator(source, destination)

        async def scenario():
            project = await orchestrator.start(contact_request(batch_size=7, concurrent_batches=concurrency))
            return await orchestrator.wait(project.id)

        project = asyncio.run(scenario())
        assert project.status == ProjectStatus.COMPLETED
        assert orchestrator.snapshot(project.id).migrated_records == 55
        loaded.append(destination.loaded("contacts"))

    assert loaded[0] == loaded[1]


def test_rate_limited_batch_recovers_with_backoff(make_orchestrator, source, destination):
    sleep = RecordingSleep()
    destination.before_load = failing_batch(RateLimitError(), times=3)
    orchestrator = make_orchestrator(source, destination, sleep=sleep)

    async def scenario():
        project = await orchestrator.start(contact_request())
        return await orchestrator.wait(project.id)

    project = asyncio.run(scenario())

    assert project.status == ProjectStatus.COMPLETED
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert orchestrator.snapshot(project.id).migrated_records == 100
    errors = orchestrator.store.list_errors(project.id)
    assert len(errors) == 1
    assert errors[0].retryable and errors[0].resolved
    assert errors[0].attempts == 3
    assert orchestrator.errors(project.id)["total"] == 0


def test_rate_limits_get_five_attempts(make_orchestrator, source, destination):
    hook = failing_batch(RateLimitError())
    destination.before_load = hook
    orchestrator = make_orchestrator(source, destination)

    async def scenario():
        project = await orchestrator.start(contact_request())
        return await orchestrator.wait(project.id)

    project = asyncio.run(scenario())

    assert hook.state["calls"] == 5
    assert project.status == ProjectStatus.COMPLETED_WITH_ERRORS
    assert orchestrator.errors(project.id)["by_type"]["rate_limited"][0]["attempts"] == 5


def test_exhausted_batch_fails_then_manual_retry_recovers(make_orchestrator, source, destination):
    hook = failing_batch(TransientNetworkError("connection reset", 503))
    destination.before_load = hook
    orchestrator = make_orchestrator(source, destination)

    async def scenario():
        project = await orchestrator.start(contact_request())
        project = await orchestrator.wait(project.id)
        snapshot = orchestrator.snapshot(project.id)
        monitor = orchestrator.errors(project.id)

        hook.state["enabled"] = False
        outcome = await orchestrator.retry_error(monitor["by_type"]["transient_network"][0]["id"])
        return project, snapshot, monitor, outcome

    project, snapshot, monitor, outcome = asyncio.run(scenario())

    assert hook.state["calls"] == 3
    assert project.status == ProjectStatus.COMPLETED_WITH_ERRORS
    assert (snapshot.migrated_records, snapshot.failed_records) == (90, 10)
    assert monitor["total"] == 1
    error = monitor["by_type"]["transient_network"][0]
    assert error["terminal"] and error["attempts"] == 3 and error["batch_sequence"] is not None

    assert outcome == RetryOutcome.SUCCEEDED
    after = orchestrator.snapshot(project.id)
    assert (after.migrated_records, after.failed_records) == (100, 0)
    assert orchestrator.errors(project.id)["total"] == 0
    assert "c020" in destination.loaded("contacts")


def test_auth_failure_fails_the_project(make_orchestrator, source, destination):
    def hook(object_type, records, call_number):
        if call_number == 2:
            raise AuthenticationError("token revoked", 401)
    destination.before_load = hook
    orchestrator = make_orchestrator(source, destination)

    async def scenario():
        project = await orchestrator.start(contact_request(concurrent_batches=1))
        return await orchestrator.wait(project.id)

    project = asyncio.run(scenario())

    assert project.status == ProjectStatus.FAILED
    assert destination.batch_calls == 2
    assert orchestrator.errors(project.id)["by_type"]["auth_failure"][0]["severity"] == "critical"


def test_record_rejections_complete_with_errors(make_orchestrator, source):
    destination = MemoryLoader("dst", schemas=DESTINATION_SCHEMAS, reject={"c003": "invalid email"})
    orchestrator = make_orchestrator(source, destination)

    async def scenario():
        project = await orchestrator.start(contact_request())
        return await orchestrator.wait(project.id)

    project = asyncio.run(scenario())
    monitor = orchestrator.errors(project.id)

    assert project.status == ProjectStatus.COMPLETED_WITH_ERRORS
    assert orchestrator.snapshot(project.id).failed_records == 1
    assert monitor["by_type"]["validation_error"][0]["record_id"] == "c003"


def test_pause_and_resume_continue_from_committed_cursor(make_orchestrator, destination):
    holder = {}
    cursors = []

    def before_extract(object_type, cursor, call_number):
        cursors.append(cursor)
        if call_number == 5:
            holder["orchestrator"].pause(holder["project_id"])

    source = MemoryExtractor("src", data={"contacts": make_contacts(100)}, before_extract=before_extract)
    orchestrator = make_orchestrator(source, destination)
    holder["orchestrator"] = orchestrator

    async def scenario():
        project = orchestrator.create_project(contact_request(batch_size=10, concurrent_batches=2))
        holder["project_id"] = project.id
        await orchestrator.start_project(project.id)
        paused = await orchestrator.wait(project.id)
        paused_state = (
            paused.status,
            paused.status_reason,
            orchestrator.snapshot(project.id).migrated_records,
            len(destination.loaded("contacts")),
        )
        object_type = only_object_type(orchestrator, project.id)
        cursor = orchestrator.store.get_cursor(project.id, object_type.id)
        object_status = object_type.status

        await orchestrator.resume(project.id)
        finished = await orchestrator.wait(project.id)
        return paused_state, cursor, object_status, finished

    paused_state, cursor, object_status, finished = asyncio.run(scenario())

    assert paused_state == (ProjectStatus.PAUSED, "paused by user", 40, 40)
    assert cursor == "40"
    assert object_status == ObjectTypeStatus.PENDING
    assert cursors[5] == "40"
    assert finished.status == ProjectStatus.COMPLETED
    assert orchestrator.snapshot(finished.id).migrated_records == 100
    assert len(destination.load_counts) == 100
    assert set(destination.load_counts.values()) == {1}


def test_resume_without_cursor_skips_migrated_records(make_orchestrator, destination):
    holder = {}

    def before_extract(object_type, cursor, call_number):
        if call_number == 5:
            holder["orchestrator"].pause(holder["project_id"])

    source = MemoryExtractor("src", data={"contacts": make_contacts(100)}, before_extract=before_extract)
    orchestrator = make_orchestrator(source, destination)
    holder["orchestrator"] = orchestrator

    async def scenario():
        project = orchestrator.create_project(contact_request())
        holder["project_id"] = project.id
        await orchestrator.start_project(project.id)
        await orchestrator.wait(project.id)

        object_type = only_object_type(orchestrator, project.id)
        orchestrator.store.save_cursor(project.id, object_type.id, None)
        await orchestrator.resume(project.id)
        return await orchestrator.wait(project.id)

    project = asyncio.run(scenario())

    assert project.status == ProjectStatus.COMPLETED
    assert orchestrator.snapshot(project.id).migrated_records == 100
    assert destination.batch_calls == 10
    assert set(destination.load_counts.values()) == {1}


def test_lifecycle_transitions_are_enforced(make_orchestrator, source, destination):
    orchestrator = make_orchestrator(source, destination)

    async def scenario():
        project = await orchestrator.start(contact_request())
        with pytest.raises(InvalidTransitionError):
            await orchestrator.resume(project.id)
        with pytest.raises(InvalidTransitionError):
            await orchestrator.start_project(project.id)
        await orchestrator.wait(project.id)
        with pytest.raises(InvalidTransitionError):
            orchestrator.pause(project.id)
        with pytest.raises(InvalidTransitionError):
            orchestrator.cancel(project.id)
        return project

    project = asyncio.run(scenario())

    assert project.status == ProjectStatus.COMPLETED


def test_cancel_stops_a_running_project(make_orchestrator, destination):
    holder = {}

    def before_extract(object_type, cursor, call_number):
        if call_number == 3:
            holder["orchestrator"].cancel(holder["project_id"])

    source = MemoryExtractor("src", data={"contacts": make_contacts(100)}, before_extract=before_extract)
    orchestrator = make_orchestrator(source, destination)
    holder["orchestrator"] = orchestrator

    async def scenario():
        project = orchestrator.create_project(contact_request())
        holder["project_id"] = project.id
        await orchestrator.start_project(project.id)
        return await orchestrator.wait(project.id)

    project = asyncio.run(scenario())

    assert project.status == ProjectStatus.CANCELLED
    assert len(destination.loaded("contacts")) == 20


def test_unmapped_required_fields_pause_until_mapped(make_orchestrator, source, destination):
    orchestrator = make_orchestrator(source, destination)
    partial = [MappingSuggestion("first_name", "firstname", 1.0)]

    async def scenario():
        project = await orchestrator.start(contact_request(mappings=partial))
        first = await orchestrator.wait(project.id)
        first_state = (first.status, first.status_reason, source.calls)
        object_type = only_object_type(orchestrator, project.id)
        awaiting = (object_type.status, object_type.status_reason)

        orchestrator.apply_mappings(object_type.id, [MappingSuggestion("last_name", "lastname", 1.0)])
        pending = object_type.status
        await orchestrator.resume(project.id)
        second = await orchestrator.wait(project.id)
        second_status = second.status

        orchestrator.apply_mappings(object_type.id, CONTACT_MAPPINGS)
        await orchestrator.resume(project.id)
        third = await orchestrator.wait(project.id)
        return first_state, awaiting, pending, second_status, third

    first_state, awaiting, pending, second_status, third = asyncio.run(scenario())

    assert first_state == (ProjectStatus.PAUSED, "awaiting field mappings", 0)
    assert awaiting[0] == ObjectTypeStatus.NEEDS_MAPPING
    assert "email" in awaiting[1]
    assert pending == ObjectTypeStatus.PENDING
    assert second_status == ProjectStatus.PAUSED
    assert third.status == ProjectStatus.COMPLETED
    assert len(destination.loaded("contacts")) == 100


def test_missing_mappings_are_suggested(make_orchestrator, source, destination):
    orchestrator = make_orchestrator(source, destination)

    async def scenario():
        project = await orchestrator.start(contact_request(mappings=[]))
        return await orchestrator.wait(project.id)

    project = asyncio.run(scenario())
    object_type = only_object_type(orchestrator, project.id)
    mapped = {m.source_field: m.destination_field for m in orchestrator.store.get_field_mappings(object_type.id)}

    assert project.status == ProjectStatus.COMPLETED
    assert mapped == {"email": "email", "first_name": "firstname", "last_name": "lastname"}
    assert destination.loaded("contacts")["c000"]["firstname"] == "Name0"


@pytest.mark.parametrize("threshold,expected", [
    (0.5, ProjectStatus.FAILED),
    (1.0, ProjectStatus.COMPLETED_WITH_ERRORS),
])
def test_object_failure_threshold(make_orchestrator, source, destination, threshold, expected):
    orchestrator = make_orchestrator(source, destination)
    request = contact_request(
        object_types=[
            ObjectTypeRequest(name="contacts", field_mappings=list(CONTACT_MAPPINGS)),
            ObjectTypeRequest(name="widgets"),
        ],
        object_failure_threshold=threshold,
    )

    async def scenario():
        project = await orchestrator.start(request)
        return await orchestrator.wait(project.id)

    project = asyncio.run(scenario())
    statuses = {o.name: o.status for o in orchestrator.store.list_object_types(project.id)}

    assert project.status == expected
    assert statuses == {"contacts": ObjectTypeStatus.DONE, "widgets": ObjectTypeStatus.FAILED}
    assert len(destination.loaded("contacts")) == 100


def test_create_project_validates_request(make_orchestrator, source, destination):
    orchestrator = make_orchestrator(source, destination)

    with pytest.raises(ValueError):
        orchestrator.create_project(dataclasses.replace(contact_request(), source_connection_id="nope"))
    with pytest.raises(ValueError):
        orchestrator.create_project(dataclasses.replace(contact_request(), destination_connection_id="nope"))
    with pytest.raises(ValueError):
        orchestrator.create_project(dataclasses.replace(contact_request(), object_types=[]))
    assert orchestrator.store.list_projects() == []


def test_recurring_schedule_runs_incrementally(make_orchestrator, source, destination):
    orchestrator = make_orchestrator(source, destination)
    schedule = ScheduleConfig(type="recurring", cron="0 2 * * *")

    async def scenario():
        project = await orchestrator.start(contact_request(schedule=schedule))
        scheduled = (project.status, project.metadata.get("next_run"), orchestrator.scheduler.next_run(project.id))

        await orchestrator.run_scheduled(project.id)
        skipped = await orchestrator.run_scheduled(project.id)
        first = await orchestrator.wait(project.id)
        first_status = first.status

        source.add_records("contacts", [{
            "id": "c100",
            "first_name": "Late",
            "last_name": "Arrival",
            "email": "late@example.com",
            "updated_at": "2999-01-01T00:00:00+00:00",
        }])
        await orchestrator.run_scheduled(project.id)
        clone_id = orchestrator.store.get_project(project.id).metadata["latest_run"]
        clone = await orchestrator.wait(clone_id)
        orchestrator.scheduler.shutdown()
        return scheduled, skipped, first_status, clone

    scheduled, skipped, first_status, clone = asyncio.run(scenario())

    status, next_run, scheduler_next_run = scheduled
    assert status == ProjectStatus.SCHEDULED
    assert next_run is not None and scheduler_next_run is not None
    assert skipped is None
    assert first_status == ProjectStatus.COMPLETED

    assert clone.status == ProjectStatus.COMPLETED
    assert orchestrator.snapshot(clone.id).migrated_records == 1
    assert len(destination.load_counts) == 101
    assert set(destination.load_counts.values()) == {1}
    assert destination.loaded("contacts")["c100"]["lastname"] == "Arrival"


def test_malformed_cron_is_rejected(make_orchestrator, source, destination):
    orchestrator = make_orchestrator(source, destination)
    request = contact_request(schedule=ScheduleConfig(type="recurring", cron="not a cron"))

    with pytest.raises(ValueError):
        asyncio.run(orchestrator.start(request))


def test_cancelling_a_scheduled_project_drops_its_schedule(make_orchestrator, source, destination):
    orchestrator = make_orchestrator(source, destination)

    async def scenario():
        project = await orchestrator.start(
            contact_request(schedule=ScheduleConfig(type="recurring", cron="*/5 * * * *"))
        )
        orchestrator.cancel(project.id)
        next_run = orchestrator.scheduler.next_run(project.id)
        orchestrator.scheduler.shutdown()
        return project, next_run

    project, next_run = asyncio.run(scenario())

    assert project.status == ProjectStatus.CANCELLED
    assert next_run is None


def test_interrupted_project_is_paused_and_resumes_from_cursor(make_orchestrator, source, store):
    first = make_orchestrator(source, MemoryLoader("dst", schemas=DESTINATION_SCHEMAS), store=store)
    project = first.create_project(contact_request())
    project.status = ProjectStatus.IN_PROGRESS
    store.save_project(project)
    object_type = only_object_type(first, project.id)
    object_type.total_records = 100
    object_type.processed_records = 30
    store.save_object_type(object_type)
    store.save_cursor(project.id, object_type.id, "30")
    store.mark_migrated(object_type.id, [f"c{i:03d}" for i in range(30)])

    destination = MemoryLoader("dst", schemas=DESTINATION_SCHEMAS)
    second = make_orchestrator(source, destination, store=store)

    assert second.recover_interrupted() == [project.id]
    recovered = store.get_project(project.id)
    assert recovered.status == ProjectStatus.PAUSED
    assert recovered.status_reason == "interrupted; resume to continue"

    async def scenario():
        await second.resume(project.id)
        return await second.wait(project.id)

    finished = asyncio.run(scenario())

    assert finished.status == ProjectStatus.COMPLETED
    assert len(destination.loaded("contacts")) == 70
    assert "c029" not in destination.loaded("contacts")
    assert second.snapshot(project.id).migrated_records == 100


class DiskFullOnceStore(MigrationStore):
    """MigrationStore whose first ``mark_migrated`` fails like a full disk."""

    def __init__(self):
        super().__init__()
        self.failures = 0

    def mark_migrated(self, object_type_id, record_ids):
        if self.failures == 0:
            self.failures += 1
            raise OSError("No space left on device")
        super().mark_migrated(object_type_id, record_ids)


def unresolved_errors(orchestrator, project_id):
    return [e for group in orchestrator.errors(project_id)["by_type"].values() for e in group]


def test_store_failure_after_loading_fails_the_project(make_orchestrator, source, destination):
    store = DiskFullOnceStore()
    orchestrator = make_orchestrator(source, destination, store=store)

    async def scenario():
        project = await orchestrator.start(contact_request(concurrent_batches=1))
        return await orchestrator.wait(project.id)

    project = asyncio.run(scenario())
    snapshot = orchestrator.snapshot(project.id)
    object_type = only_object_type(orchestrator, project.id)
    errors = unresolved_errors(orchestrator, project.id)

    assert project.status == ProjectStatus.FAILED
    assert "No space left on device" in project.status_reason
    assert (snapshot.migrated_records, snapshot.total_records) == (90, 100)
    assert snapshot.percentage == 90.0
    assert len(errors) == 1
    assert errors[0]["terminal"] and errors[0]["batch_sequence"] == 0
    assert store.get_cursor(project.id, object_type.id) is None
    assert len(destination.loaded("contacts")) == 100


def test_counting_failure_fails_the_object_type(make_orchestrator, source, destination):
    orchestrator = make_orchestrator(source, destination)
    update = orchestrator.progress.update
    calls = []

    def update_failing_once(object_type_id, migrated=0, failed=0):
        calls.append(migrated)
        if len(calls) == 3:
            raise RuntimeError("counter out of sync")
        return update(object_type_id, migrated=migrated, failed=failed)
    orchestrator.progress.update = update_failing_once

    async def scenario():
        project = await orchestrator.start(contact_request(concurrent_batches=1))
        return await orchestrator.wait(project.id)

    project = asyncio.run(scenario())
    object_type = only_object_type(orchestrator, project.id)
    snapshot = orchestrator.snapshot(project.id)

    assert project.status == ProjectStatus.FAILED
    assert object_type.status == ObjectTypeStatus.FAILED
    assert "were not committed" in object_type.status_reason
    assert (snapshot.migrated_records, snapshot.total_records) == (90, 100)
    assert snapshot.percentage < 100.0
    assert orchestrator.store.get_cursor(project.id, object_type.id) == "20"
    errors = unresolved_errors(orchestrator, project.id)
    assert len(errors) == 1 and errors[0]["batch_sequence"] == 2


def test_paused_project_can_be_cancelled(make_orchestrator, source, destination):
    orchestrator = make_orchestrator(source, destination)

    async def scenario():
        project = await orchestrator.start(contact_request(mappings=CONTACT_MAPPINGS[:2]))
        project = await orchestrator.wait(project.id)
        assert project.status == ProjectStatus.PAUSED
        orchestrator.cancel(project.id)
        with pytest.raises(InvalidTransitionError):
            await orchestrator.resume(project.id)
        return project

    project = asyncio.run(scenario())

    assert project.status == ProjectStatus.CANCELLED
    assert project.completed_at is not None
    assert destination.loaded("contacts") == {}
