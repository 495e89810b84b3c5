import pytest

from quillswitch.exceptions import UnknownObjectTypeError
from quillswitch.extractors import MemoryExtractor
from quillswitch.loaders import MemoryLoader
from quillswitch.services.connections import ConnectionRegistry
from quillswitch.services.schema_resolver import SchemaResolver, canonical_object_type


@pytest.fixture
def registry():
    registry = ConnectionRegistry()
    registry.register(
        "src",
        extractor=MemoryExtractor("src", schemas={"contacts": (["email", "name"], ["email", "ghost"])}),
    )
    registry.register("dst", loader=MemoryLoader("dst"))
    return registry


def test_schema_comes_from_the_connection_and_is_cached(registry):
    resolver = SchemaResolver(registry)

    first = resolver.get_schema("src", "Contacts")
    registry.describer("src").schemas["contacts"] = (["other"], [])
    second = resolver.get_schema("src", "contacts")

    assert first.source == "api"
    assert first.fields == ["email", "name"]
    assert first.required == ["email"]
    assert second is first


def test_invalidate_drops_cached_schema(registry):
    resolver = SchemaResolver(registry)
    resolver.get_schema("src", "contacts")
    registry.describer("src").schemas["contacts"] = (["other"], [])

    resolver.invalidate("src")

    assert resolver.get_schema("src", "contacts").fields == ["other"]


def test_falls_back_when_connection_cannot_describe(registry):
    result = SchemaResolver(registry).get_schema("dst", "Accounts")

    assert result.source == "fallback"
    assert "name" in result.fields
    assert result.required == ["name"]


def test_unknown_object_type_without_fallback_raises(registry):
    with pytest.raises(UnknownObjectTypeError):
        SchemaResolver(registry).get_schema("dst", "widgets")


@pytest.mark.parametrize("name,expected", [
    ("contacts", "contact"),
    ("Opportunities", "deal"),
    ("account", "company"),
    ("widgets", None),
])
def test_canonical_object_type(name, expected):
    assert canonical_object_type(name) == expected
