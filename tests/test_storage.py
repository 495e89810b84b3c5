import json

import pytest

from quillswitch.exceptions import MappingValidationError, ProjectNotFoundError
from quillswitch.models import (
    ErrorType,
    FieldMapping,
    MigrationError,
    MigrationProject,
    ObjectType,
    ProjectStatus,
    Severity,
)
from quillswitch.storage import JsonFileMigrationStore, MigrationStore


class FlakyPersistStore(MigrationStore):
    def __init__(self):
        super().__init__()
        self.fail = False

    def _persist(self, force=False):
        if self.fail:
            raise OSError("disk full")


def test_missing_project_raises(store):
    with pytest.raises(ProjectNotFoundError):
        store.get_project("nope")
    with pytest.raises(KeyError):
        store.get_object_type("nope")


def test_list_projects_filters_by_owner_and_workspace(store):
    store.save_project(MigrationProject("A", "s", "d", owner_id="u1", workspace_id="w1"))
    store.save_project(MigrationProject("B", "s", "d", owner_id="u2", workspace_id="w1"))

    assert [p.company_name for p in store.list_projects(owner_id="u1")] == ["A"]
    assert len(store.list_projects(workspace_id="w1")) == 2


def test_mapping_replace_rejects_shared_required_destination(store):
    store.replace_field_mappings("ot", [FieldMapping("ot", "email", "email", is_required=True)])

    with pytest.raises(MappingValidationError):
        store.replace_field_mappings("ot", [
            FieldMapping("ot", "email", "email", is_required=True),
            FieldMapping("ot", "work_email", "email", is_required=True),
        ])
    with pytest.raises(MappingValidationError):
        store.replace_field_mappings("ot", [FieldMapping("other", "email", "email")])

    assert [m.source_field for m in store.get_field_mappings("ot")] == ["email"]


def test_mapping_replace_restores_previous_set_when_persist_fails():
    store = FlakyPersistStore()
    store.replace_field_mappings("ot", [FieldMapping("ot", "email", "email")])
    store.fail = True

    with pytest.raises(OSError):
        store.replace_field_mappings("ot", [FieldMapping("ot", "name", "lastname")])

    assert [m.destination_field for m in store.get_field_mappings("ot")] == ["email"]


def test_cursor_and_migrated_ids(store):
    assert store.get_cursor("p", "ot") is None

    store.save_cursor("p", "ot", "40")
    store.mark_migrated("ot", ["a", "b"])

    assert store.get_cursor("p", "ot") == "40"
    assert store.migrated_ids("ot") == {"a", "b"}


def test_json_store_survives_restart(tmp_path):
    path = tmp_path / "state" / "migrations.json"
    store = JsonFileMigrationStore(str(path))
    project = MigrationProject("Acme", "src", "dst", status=ProjectStatus.PAUSED, status_reason="paused by user")
    store.save_project(project)
    object_type = ObjectType(project_id=project.id, name="contacts", total_records=100, processed_records=40)
    store.save_object_type(object_type)
    store.replace_field_mappings(object_type.id, [FieldMapping(object_type.id, "email", "email", is_required=True)])
    store.save_error(MigrationError(project.id, ErrorType.RATE_LIMITED, Severity.MEDIUM, "slow down"))
    store.save_cursor(project.id, object_type.id, "40")
    store.mark_migrated(object_type.id, ["c000", "c001"])
    store.flush()

    reloaded = JsonFileMigrationStore(str(path))

    restored = reloaded.get_project(project.id)
    assert restored.status == ProjectStatus.PAUSED
    assert restored.status_reason == "paused by user"
    assert reloaded.get_object_type(object_type.id).migrated_records == 40
    assert reloaded.get_field_mappings(object_type.id)[0].is_required
    assert reloaded.list_errors(project.id)[0].type == ErrorType.RATE_LIMITED
    assert reloaded.get_cursor(project.id, object_type.id) == "40"
    assert reloaded.migrated_ids(object_type.id) == {"c000", "c001"}
    assert not list(path.parent.glob(".*.tmp"))
    assert json.loads(path.read_text())["cursors"][project.id][object_type.id] == "40"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def saved_state(path):
    return json.loads(path.read_text())


def test_json_store_spaces_unforced_writes(tmp_path):
    clock = FakeClock()
    path = tmp_path / "migrations.json"
    store = JsonFileMigrationStore(str(path), write_interval=5.0, clock=clock)
    first = MigrationProject("Acme", "src", "dst")
    store.save_project(first)
    store.save_project(MigrationProject("Globex", "src", "dst"))

    assert [p["company_name"] for p in saved_state(path)["projects"]] == ["Acme"]

    clock.now = 5.0
    store.save_cursor(first.id, "ot", "10")
    assert len(saved_state(path)["projects"]) == 2

    store.save_cursor(first.id, "ot", "20")
    assert saved_state(path)["cursors"][first.id]["ot"] == "10"
    store.flush()
    assert saved_state(path)["cursors"][first.id]["ot"] == "20"

    store.replace_field_mappings("ot", [FieldMapping("ot", "email", "email")])
    assert saved_state(path)["field_mappings"]["ot"][0]["destination_field"] == "email"


def test_migrated_ids_go_to_the_journal_once(tmp_path):
    path = tmp_path / "migrations.json"
    store = JsonFileMigrationStore(str(path), write_interval=0.0)
    for start in range(0, 30, 10):
        store.mark_migrated("ot", [f"c{i:03d}" for i in range(start, start + 10)])

    state = saved_state(path)
    assert "migrated_ids" not in state
    assert state["journal_lines"] == 3
    lines = store.journal_path.read_text().splitlines()
    assert [len(json.loads(line)["ids"]) for line in lines] == [10, 10, 10]
    assert len(JsonFileMigrationStore(str(path)).migrated_ids("ot")) == 30


def test_restart_drops_journal_lines_the_state_never_counted(tmp_path):
    path = tmp_path / "migrations.json"
    store = JsonFileMigrationStore(str(path), write_interval=5.0, clock=FakeClock())
    store.mark_migrated("ot", ["a"])
    # Crash between the journal append and the state write
    with open(store.journal_path, "a") as f:
        f.write(json.dumps({"object_type_id": "ot", "ids": ["b"]}) + "\n")

    reloaded = JsonFileMigrationStore(str(path))

    assert reloaded.migrated_ids("ot") == {"a"}
    assert len(store.journal_path.read_text().splitlines()) == 1


def test_json_store_reads_ids_from_older_state_files(tmp_path):
    path = tmp_path / "migrations.json"
    path.write_text(json.dumps({"migrated_ids": {"ot": ["x", "y"]}}))

    assert JsonFileMigrationStore(str(path)).migrated_ids("ot") == {"x", "y"}
