import pytest

from quillswitch.exceptions import MappingValidationError
from quillswitch.models import FieldMapping, SourceRecord
from quillswitch.services.transformer import TransformEngine


@pytest.fixture
def engine():
    return TransformEngine()


def _record(**data):
    return SourceRecord(id="r1", object_type="contacts", data=data)


def test_chained_rule_applies_steps_in_order(engine):
    assert engine.apply_rule("  Jane@Example.COM ", "trim|lowercase") == "jane@example.com"
    assert engine.apply_rule("Jane Marie Doe", "split_name:last|uppercase") == "MARIE DOE"
    assert engine.apply_rule("A very long company name", "truncate:6") == "A very"


def test_rule_arguments(engine):
    assert engine.apply_rule("cus_123", "strip_prefix:cus_") == "123"
    assert engine.apply_rule("123", "prefix:sf_") == "sf_123"
    assert engine.apply_rule("Closed Won", "enum_map:Closed Won=closedwon,Prospecting=appointmentscheduled") == "closedwon"
    assert engine.apply_rule("Unmapped", "enum_map:a=b") == "Unmapped"
    assert engine.apply_rule("", "default:unknown") == "unknown"
    assert engine.apply_rule(True, "boolean_to_enum:yes,no") == "yes"
    assert engine.apply_rule(2500, "divide:100") == 25.0
    assert engine.apply_rule("United Kingdom", "country_code") == "GB"
    assert engine.apply_rule("+1 (555) 123-4567", "clean_phone") == "+15551234567"


def test_date_rules(engine):
    assert engine.apply_rule("2024-01-01T00:00:00Z", "iso_to_unix") == 1704067200
    assert engine.apply_rule(1704067200000, "unix_to_iso") == "2024-01-01T00:00:00+00:00"


@pytest.mark.parametrize("rule", [
    "no_such_step",
    "trim||lowercase",
    "truncate:abc",
    "prefix",
    "divide:0",
    "split_name:middle",
    "lowercase:extra",
])
def test_invalid_rules_are_rejected(engine, rule):
    with pytest.raises(MappingValidationError):
        engine.parse_rule(rule)


def test_custom_transform_receives_argument(engine):
    engine.register_transform("repeat", lambda value, config: value * int(config["arg"]))

    assert engine.apply_rule("ab", "repeat:3") == "ababab"
    assert "repeat" in engine.available_transforms


def test_transform_record_builds_nested_destination(engine):
    record = _record(first_name=" Jane ", address={"city": "Berlin"})
    mappings = [
        FieldMapping("ot", "first_name", "properties.firstname", transformation_rule="trim"),
        FieldMapping("ot", "address.city", "properties.city"),
        FieldMapping("ot", "missing", "properties.phone"),
    ]

    result = engine.transform_record(record, mappings)

    assert result.is_valid
    assert result.data == {"properties": {"firstname": "Jane", "city": "Berlin"}}


def test_empty_required_field_is_a_validation_error(engine):
    record = _record(email="   ")
    mappings = [FieldMapping("ot", "email", "email", is_required=True, transformation_rule="trim")]

    result = engine.transform_record(record, mappings)

    assert not result.is_valid
    assert "email" in result.error_summary


def test_failing_step_marks_record_invalid(engine):
    engine.register_transform("explode", lambda value, config: 1 / 0)
    record = _record(name="x")

    result = engine.transform_record(record, [FieldMapping("ot", "name", "name", transformation_rule="explode")])

    assert not result.is_valid
    assert result.validation_errors[0].error_type == "transform"
