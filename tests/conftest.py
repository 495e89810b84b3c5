import json
from typing import Any, Dict, List, Optional

import pytest
import requests

from quillswitch.extractors import MemoryExtractor
from quillswitch.loaders import MemoryLoader
from quillswitch.models import (
    BatchConfig,
    MappingSuggestion,
    MigrationRequest,
    ObjectTypeRequest,
    RetryConfig,
)
from quillswitch.orchestrator import MigrationOrchestrator
from quillswitch.services.connections import ConnectionRegistry
from quillswitch.storage import MigrationStore

DESTINATION_SCHEMAS = {
    "contacts": (["firstname", "lastname", "email"], ["email"]),
}

CONTACT_MAPPINGS = [
    MappingSuggestion("first_name", "firstname", 1.0),
    MappingSuggestion("last_name", "lastname", 1.0),
    MappingSuggestion("email", "email", 1.0, is_required=True, transformation_rule="trim|lowercase"),
]


def make_contacts(count: int, start: int = 0) -> List[Dict[str, Any]]:
    return [
        {
            "id": f"c{i:03d}",
            "first_name": f"Name{i}",
            "last_name": "Example",
            "email": f" User{i}@Example.com ",
            "updated_at": "2024-01-01T00:00:00+00:00",
        }
        for i in range(start, start + count)
    ]


def contact_request(
    batch_size: int = 10,
    concurrent_batches: int = 2,
    mappings: Optional[List[MappingSuggestion]] = None,
    **kwargs
) -> MigrationRequest:
    object_types = kwargs.pop("object_types", None) or [
        ObjectTypeRequest(name="contacts", field_mappings=list(CONTACT_MAPPINGS if mappings is None else mappings))
    ]
    return MigrationRequest(
        company_name="Acme",
        source_connection_id="src",
        destination_connection_id="dst",
        object_types=object_types,
        batch_config=BatchConfig(batch_size=batch_size, concurrent_batches=concurrent_batches),
        **kwargs,
    )


async def no_sleep(delay: float) -> None:
    return None


class RecordingSleep:
    """Async sleep stand-in that remembers the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def store():
    return MigrationStore()


@pytest.fixture
def make_orchestrator():
    def _make(extractor, loader, sleep=no_sleep, store=None) -> MigrationOrchestrator:
        registry = ConnectionRegistry()
        registry.register("src", extractor=extractor)
        registry.register("dst", loader=loader)
        return MigrationOrchestrator(registry, store=store or MigrationStore(), sleep=sleep)
    return _make


@pytest.fixture
def source():
    return MemoryExtractor("src", data={"contacts": make_contacts(100)})


@pytest.fixture
def destination():
    return MemoryLoader("dst", schemas=DESTINATION_SCHEMAS)


@pytest.fixture
def retry_config():
    return RetryConfig(base_delay=0.0, max_delay=0.0)


def make_response(status: int, body: Any = None, headers: Optional[Dict[str, str]] = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(body).encode("utf-8") if body is not None else b""
    response.encoding = "utf-8"
    response.headers.update(headers or {})
    response.reason = "reason"
    return response


class FakeSession:
    """requests.Session stand-in answering from a queue of responses."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []
        self.headers: Dict[str, str] = {}

    def queue(self, status: int, body: Any = None, headers: Optional[Dict[str, str]] = None) -> None:
        self.responses.append(make_response(status, body, headers))

    def request(self, method: str, url: str, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            raise AssertionError(f"Unexpected request {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_session():
    return FakeSession()
