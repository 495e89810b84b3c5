import time

import pytest
from fastapi.testclient import TestClient

from conftest import DESTINATION_SCHEMAS, make_contacts

from quillswitch.api.dependencies import (
    build_orchestrator,
    configure_orchestrator,
    get_orchestrator,
    reset_orchestrator,
)
from quillswitch.api.main import create_app
from quillswitch.extractors import MemoryExtractor
from quillswitch.loaders import MemoryLoader
from quillswitch.models import MappingSuggestion
from quillswitch.services.llm_inference import LLMMappingAdvisor

FINISHED = {"completed", "completed_with_errors", "failed", "cancelled"}

CONTACT_MAPPINGS = [
    {"source_field": "first_name", "destination_field": "firstname"},
    {"source_field": "last_name", "destination_field": "lastname"},
    {"source_field": "email", "destination_field": "email", "is_required": True, "transformation_rule": "trim|lowercase"},
]


def migration_payload(mappings=None, **overrides):
    payload = {
        "company_name": "Acme",
        "source_connection_id": "src",
        "destination_connection_id": "dst",
        "object_types": [
            {"name": "contacts", "field_mappings": CONTACT_MAPPINGS if mappings is None else mappings},
        ],
        "batch_config": {"batch_size": 10, "concurrent_batches": 2},
    }
    payload.update(overrides)
    return payload


def wait_for_status(client, migration_id, statuses=FINISHED):
    for _ in range(500):
        body = client.get(f"/api/migrations/{migration_id}").json()
        if body["status"] in statuses:
            return body
        time.sleep(0.01)
    raise AssertionError(f"Migration {migration_id} stuck in {body['status']}")


@pytest.fixture(autouse=True)
def reset_state():
    reset_orchestrator()
    yield
    reset_orchestrator()


@pytest.fixture
def destination():
    return MemoryLoader("dst", schemas=DESTINATION_SCHEMAS, reject={"c003": "email is invalid"})


@pytest.fixture
def client(make_orchestrator, destination):
    source = MemoryExtractor("src", data={"contacts": make_contacts(50)})
    configure_orchestrator(make_orchestrator(source, destination))
    with TestClient(create_app()) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_create_and_finish_migration(client, destination):
    response = client.post("/api/migrations", json=migration_payload())
    assert response.status_code == 200
    migration_id = response.json()["id"]

    body = wait_for_status(client, migration_id)

    assert body["status"] == "completed_with_errors"
    assert body["object_types"][0]["migrated_records"] == 49
    assert body["object_types"][0]["failed_records"] == 1
    assert len(destination.loaded("contacts")) == 49

    progress = client.get(f"/api/migrations/{migration_id}/progress").json()
    assert progress["percentage"] == 98.0
    assert progress["total_records"] == 50

    errors = client.get(f"/api/migrations/{migration_id}/errors").json()
    assert errors["total"] == 1
    assert errors["by_type"]["validation_error"][0]["record_id"] == "c003"

    listing = client.get("/api/migrations").json()
    assert listing["total"] == 1
    assert listing["migrations"][0]["id"] == migration_id


def test_unknown_migration_is_404(client):
    assert client.get("/api/migrations/nope").status_code == 404
    assert client.post("/api/migrations/nope/pause").status_code == 404


def test_unknown_connection_is_400(client):
    response = client.post("/api/migrations", json=migration_payload(source_connection_id="nope"))

    assert response.status_code == 400
    assert "nope" in response.json()["detail"]


def test_invalid_transition_is_409(client):
    migration_id = client.post("/api/migrations", json=migration_payload()).json()["id"]
    wait_for_status(client, migration_id)

    assert client.post(f"/api/migrations/{migration_id}/pause").status_code == 409
    assert client.post(f"/api/migrations/{migration_id}/resume").status_code == 409
    assert client.post(f"/api/migrations/{migration_id}/cancel").status_code == 409


def test_mappings_fixed_through_the_api_unblock_the_run(client, destination):
    partial = CONTACT_MAPPINGS[:2]
    migration_id = client.post("/api/migrations", json=migration_payload(mappings=partial)).json()["id"]

    paused = wait_for_status(client, migration_id, statuses={"paused"})
    assert paused["status_reason"] == "awaiting field mappings"
    object_type = paused["object_types"][0]
    assert object_type["status"] == "needs_mapping"

    response = client.put(f"/api/mappings/{object_type['id']}", json={"field_mappings": CONTACT_MAPPINGS})
    assert response.status_code == 200
    mappings = client.get(f"/api/mappings/{object_type['id']}").json()
    assert {m["destination_field"] for m in mappings} == {"firstname", "lastname", "email"}

    assert client.post(f"/api/migrations/{migration_id}/resume").status_code == 200
    body = wait_for_status(client, migration_id)
    assert body["object_types"][0]["migrated_records"] == 49


def test_mapping_endpoints_reject_bad_input(client):
    assert client.get("/api/mappings/nope").status_code == 404

    migration_id = client.post("/api/migrations", json=migration_payload(mappings=CONTACT_MAPPINGS[:2])).json()["id"]
    object_type = wait_for_status(client, migration_id, statuses={"paused"})["object_types"][0]

    response = client.put(f"/api/mappings/{object_type['id']}", json={"field_mappings": [
        {"source_field": "email", "destination_field": "email", "transformation_rule": "shout"},
    ]})
    assert response.status_code == 400


def test_suggest_mappings(client):
    response = client.post("/api/mappings/suggest", json={
        "source_fields": ["email", "first_name", "favourite_colour"],
        "destination_fields": ["email", "firstname", "company"],
    })

    assert response.status_code == 200
    body = response.json()
    pairs = {s["source_field"]: s["destination_field"] for s in body["suggestions"]}
    assert pairs["email"] == "email"
    assert pairs["first_name"] == "firstname"
    assert body["provider"] == "heuristic"
    assert body["needs_manual_mapping"] == []


def test_schema_endpoint(client):
    response = client.get("/api/schemas/dst/contacts")
    assert response.status_code == 200
    body = response.json()
    assert body["fields"] == ["firstname", "lastname", "email"]
    assert body["required"] == ["email"]

    assert client.get("/api/schemas/nope/contacts").status_code == 404
    assert client.get("/api/schemas/dst/widgets").status_code == 400


def test_retry_unknown_error_is_404(client):
    assert client.post("/api/errors/nope/retry").status_code == 404


def test_event_stream_ends_with_done(client):
    migration_id = client.post("/api/migrations", json=migration_payload()).json()["id"]
    wait_for_status(client, migration_id)

    response = client.get(f"/api/migrations/{migration_id}/events")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.text.startswith("event: progress")
    assert "event: done" in response.text


class ColourAdvisor:
    def suggest_mappings(self, source_fields, destination_fields, required_fields, object_type=None):
        return [MappingSuggestion("favourite_colour", "company", 0.9, reason="model guess")]


def test_suggest_mappings_uses_the_ai_advisor(client):
    get_orchestrator().field_mapper.advisor = ColourAdvisor()

    body = client.post("/api/mappings/suggest", json={
        "source_fields": ["email", "favourite_colour"],
        "destination_fields": ["email", "company"],
    }).json()

    assert body["provider"] == "ai+heuristic"
    pairs = {s["source_field"]: s["destination_field"] for s in body["suggestions"]}
    assert pairs == {"email": "email", "favourite_colour": "company"}


def test_advisor_is_built_from_the_environment(monkeypatch):
    monkeypatch.delenv("QUILLSWITCH_CONNECTIONS_FILE", raising=False)
    monkeypatch.delenv("QUILLSWITCH_STATE_FILE", raising=False)
    monkeypatch.setenv("QUILLSWITCH_LLM_PROVIDER", "anthropic")
    monkeypatch.setenv("QUILLSWITCH_LLM_MODEL", "claude-test")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "a-key")

    advisor = build_orchestrator().field_mapper.advisor

    assert isinstance(advisor, LLMMappingAdvisor)
    assert (advisor.provider, advisor.model, advisor.api_key) == ("anthropic", "claude-test", "a-key")

    monkeypatch.delenv("QUILLSWITCH_LLM_PROVIDER")
    assert build_orchestrator().field_mapper.advisor is None
