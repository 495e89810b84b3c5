import asyncio
import random

import pytest

from quillswitch.models import MigrationProject, ObjectType, ObjectTypeStatus
from quillswitch.services.progress import ProgressTracker


@pytest.fixture
def tracked(store):
    project = MigrationProject("Acme", "src", "dst")
    store.save_project(project)
    tracker = ProgressTracker(store)
    object_type = ObjectType(project_id=project.id, name="contacts")
    tracker.register(project.id, object_type)
    tracker.set_total(object_type.id, 10)
    return tracker, project, object_type


def test_counts_and_percentage(tracked, store):
    tracker, project, object_type = tracked

    tracker.update(object_type.id, migrated=3, failed=1)
    snapshot = tracker.snapshot(project.id)

    assert snapshot.migrated_records == 3
    assert snapshot.failed_records == 1
    assert snapshot.processed_records == 4
    assert snapshot.percentage == 30.0
    assert snapshot.overall == {"total": 10, "migrated": 3, "failed": 1, "percentage": 30.0}
    assert store.get_project(project.id).migrated_objects == 3


def test_update_cannot_pass_total_or_go_negative(tracked):
    tracker, project, object_type = tracked
    tracker.update(object_type.id, migrated=8)

    with pytest.raises(ValueError):
        tracker.update(object_type.id, migrated=3)
    with pytest.raises(ValueError):
        tracker.update(object_type.id, failed=-1)
    assert object_type.processed_records == 8


def test_retry_moves_records_from_failed_to_migrated(tracked):
    tracker, project, object_type = tracked
    tracker.update(object_type.id, migrated=5, failed=5)

    tracker.update(object_type.id, migrated=5, failed=-5)

    assert object_type.migrated_records == 10
    assert object_type.failed_records == 0


def test_set_total_never_drops_below_processed(tracked):
    tracker, project, object_type = tracked
    tracker.update(object_type.id, migrated=6)

    tracker.set_total(object_type.id, 2)

    assert object_type.total_records == 6


def test_final_counts_do_not_depend_on_update_order(store):
    deltas = [(3, 0), (2, 1), (0, 4), (5, 0), (1, 1), (4, 0)]

    def run(order):
        project = MigrationProject("Acme", "src", "dst")
        store.save_project(project)
        tracker = ProgressTracker(store)
        object_type = ObjectType(project_id=project.id, name="contacts")
        tracker.register(project.id, object_type)
        tracker.set_total(object_type.id, 21)
        for migrated, failed in order:
            tracker.update(object_type.id, migrated=migrated, failed=failed)
        snapshot = tracker.snapshot(project.id).to_dict()
        return {k: snapshot[k] for k in ("percentage", "migrated_records", "failed_records", "total_records")}

    shuffled = list(deltas)
    random.Random(7).shuffle(shuffled)

    assert run(deltas) == run(shuffled) == {
        "percentage": 71.43,
        "migrated_records": 15,
        "failed_records": 6,
        "total_records": 21,
    }


def test_empty_object_type_is_complete_once_done(tracked):
    tracker, project, object_type = tracked
    tracker.set_total(object_type.id, 0)

    assert tracker.snapshot(project.id).percentage == 0.0

    object_type.status = ObjectTypeStatus.DONE
    assert tracker.snapshot(project.id).percentage == 100.0


def test_snapshot_reports_active_stage(tracked):
    tracker, project, object_type = tracked
    object_type.status = ObjectTypeStatus.LOADING

    snapshot = tracker.snapshot(project.id)

    assert snapshot.current_object == "contacts"
    assert snapshot.stage == "loading"


def test_subscribers_receive_snapshots(tracked):
    tracker, project, object_type = tracked

    async def scenario():
        queue = tracker.subscribe(project.id, maxsize=2)
        for _ in range(3):
            tracker.update(object_type.id, migrated=1)
        received = [queue.get_nowait() for _ in range(queue.qsize())]
        tracker.unsubscribe(project.id, queue)
        tracker.update(object_type.id, migrated=1)
        return received, queue.qsize()

    received, leftover = asyncio.run(scenario())

    assert [p["migrated_records"] for p in received] == [2, 3]
    assert leftover == 0
