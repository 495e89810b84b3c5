"""Transformation engine for field mapping rules.

A rule is a pipe-chained string such as ``"trim|lowercase"`` or
``"split_name:first|truncate:40"``. Each step is ``name`` or ``name:argument``.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone
from dateutil import parser as date_parser

from ..exceptions import MappingValidationError
from ..models.mapping import FieldMapping
from ..models.record import SourceRecord, TransformedRecord

logger = logging.getLogger(__name__)


# Common country name to ISO code mappings
COUNTRY_CODES = {
    "united states": "US",
    "united states of america": "US",
    "usa": "US",
    "united kingdom": "GB",
    "uk": "GB",
    "great britain": "GB",
    "germany": "DE",
    "france": "FR",
    "canada": "CA",
    "australia": "AU",
    "japan": "JP",
    "china": "CN",
    "india": "IN",
    "brazil": "BR",
    "mexico": "MX",
    "spain": "ES",
    "italy": "IT",
    "netherlands": "NL",
    "sweden": "SE",
    "switzerland": "CH",
    "ireland": "IE",
    "new zealand": "NZ",
    "singapore": "SG",
}


@dataclass
class RuleStep:
    """One parsed step of a transformation rule."""
    name: str
    config: Dict[str, Any] = field(default_factory=dict)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class TransformEngine:
    """
    Engine for turning source records into destination payloads.

    Supports:
    - Pipe-chained rule strings, validated up front by ``parse_rule``
    - Custom transformation functions via ``register_transform``
    - Nested source and destination fields in dot notation
    """

    def __init__(self):
        """Initialize the transform engine."""
        self._custom_transforms: Dict[str, Callable[[Any, Dict[str, Any]], Any]] = {}
        self._builtin_transforms = self._register_builtin_transforms()
        self._rule_cache: Dict[str, List[RuleStep]] = {}

    def _register_builtin_transforms(self) -> Dict[str, Callable[[Any, Dict[str, Any]], Any]]:
        """Register all built-in transformation functions."""
        return {
            "trim": self._transform_trim,
            "lowercase": self._transform_lowercase,
            "uppercase": self._transform_uppercase,
            "prefix": self._transform_prefix,
            "strip_prefix": self._transform_strip_prefix,
            "truncate": self._transform_truncate,
            "default": self._transform_default,
            "split_name": self._transform_split_name,
            "enum_map": self._transform_enum_map,
            "boolean_to_enum": self._transform_boolean_to_enum,
            "iso_to_unix": self._transform_iso_to_unix,
            "unix_to_iso": self._transform_unix_to_iso,
            "multiply": self._transform_multiply,
            "divide": self._transform_divide,
            "clean_phone": self._transform_clean_phone,
            "country_code": self._transform_country_code,
        }

    def register_transform(self, name: str, func: Callable[[Any, Dict[str, Any]], Any]) -> None:
        """Register a custom transformation function taking ``(value, config)``.

        The raw rule argument, if any, arrives as ``config["arg"]``.
        """
        self._custom_transforms[name] = func
        self._rule_cache.clear()

    @property
    def available_transforms(self) -> List[str]:
        return sorted(set(self._builtin_transforms) | set(self._custom_transforms))

    def parse_rule(self, rule: Optional[str]) -> List[RuleStep]:
        """
        Parse and validate a rule string.

        Args:
            rule: Pipe-chained rule expression, or None/empty for a direct copy

        Returns:
            Parsed steps in application order

        Raises:
            MappingValidationError: If a step is unknown or its argument is invalid
        """
        if not rule or not rule.strip():
            return []
        if rule in self._rule_cache:
            return self._rule_cache[rule]

        steps = []
        for raw_step in rule.split("|"):
            raw_step = raw_step.strip()
            if not raw_step:
                raise MappingValidationError(f"Empty step in transformation rule '{rule}'")
            name, _, arg = raw_step.partition(":")
            name = name.strip().lower()
            steps.append(RuleStep(name=name, config=self._parse_step_config(name, arg, rule)))

        self._rule_cache[rule] = steps
        return steps

    def _parse_step_config(self, name: str, arg: str, rule: str) -> Dict[str, Any]:
        """Turn a step argument into the config dict its transform expects."""
        if name in self._custom_transforms:
            return {"arg": arg}
        if name not in self._builtin_transforms:
            raise MappingValidationError(f"Unknown transform '{name}' in rule '{rule}'")

        if name in ("prefix", "strip_prefix"):
            if not arg:
                raise MappingValidationError(f"{name} needs a prefix, e.g. '{name}:cus_'")
            return {"prefix": arg}

        if name == "truncate":
            try:
                max_length = int(arg)
            except ValueError:
                raise MappingValidationError(f"truncate needs an integer length, got '{arg}'")
            if max_length < 1:
                raise MappingValidationError("truncate length must be positive")
            return {"max_length": max_length}

        if name == "default":
            return {"value": arg}

        if name == "split_name":
            part = arg or "first"
            if part not in ("first", "last"):
                raise MappingValidationError(f"split_name takes 'first' or 'last', got '{arg}'")
            return {"part": part}

        if name == "enum_map":
            mapping = {}
            for pair in arg.split(","):
                source, sep, target = pair.partition("=")
                if not sep or not source.strip():
                    raise MappingValidationError(f"enum_map entries look like 'a=b', got '{pair}'")
                mapping[source.strip()] = target.strip()
            return {"mapping": mapping}

        if name == "boolean_to_enum":
            values = arg.split(",")
            if len(values) != 2:
                raise MappingValidationError("boolean_to_enum needs two values, e.g. 'boolean_to_enum:yes,no'")
            return {"true_value": values[0].strip(), "false_value": values[1].strip()}

        if name in ("multiply", "divide"):
            try:
                number = float(arg)
            except ValueError:
                raise MappingValidationError(f"{name} needs a number, got '{arg}'")
            if name == "divide" and number == 0:
                raise MappingValidationError("divide by zero")
            return {"multiplier" if name == "multiply" else "divisor": number}

        if arg:
            raise MappingValidationError(f"{name} takes no argument")
        return {}

    def apply_rule(self, value: Any, rule: Optional[str]) -> Any:
        """Apply a rule string to a single value."""
        return self._apply_steps(value, self.parse_rule(rule))

    def _apply_steps(self, value: Any, steps: List[RuleStep]) -> Any:
        for step in steps:
            func = self._custom_transforms.get(step.name) or self._builtin_transforms[step.name]
            value = func(value, step.config)
        return value

    def transform_record(
        self,
        record: SourceRecord,
        mappings: List[FieldMapping]
    ) -> TransformedRecord:
        """
        Transform a source record into the destination shape.

        Args:
            record: Extracted source record
            mappings: Field mappings of the record's object type

        Returns:
            Transformed record; a required mapping whose value ends up empty
            adds a validation error instead of raising
        """
        target_data: Dict[str, Any] = {}
        result = TransformedRecord(id=record.id, object_type=record.object_type, data=target_data)

        for mapping in mappings:
            source_value = record.get_field(mapping.source_field)
            steps = self.parse_rule(mapping.transformation_rule)
            try:
                value = self._apply_steps(source_value, steps)
            except Exception as e:
                result.add_validation_error(
                    mapping.destination_field,
                    f"Transform error: {e}",
                    error_type="transform",
                    value=source_value,
                )
                logger.error(f"Transform error for {mapping.destination_field} on record {record.id}: {e}")
                continue

            if _is_empty(value):
                if mapping.is_required:
                    result.add_validation_error(
                        mapping.destination_field,
                        f"Required field is empty (source field '{mapping.source_field}')",
                        error_type="missing_required",
                    )
                continue

            self._set_nested_value(target_data, mapping.destination_field, value)

        return result

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: Any) -> None:
        """Set a nested value using dot notation."""
        parts = path.split(".")
        current = data

        for part in parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        current[parts[-1]] = value

    # Built-in transform functions

    def _transform_trim(self, value: Any, config: Dict) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    def _transform_lowercase(self, value: Any, config: Dict) -> Any:
        """Convert to lowercase."""
        if value is None:
            return None
        return str(value).lower()

    def _transform_uppercase(self, value: Any, config: Dict) -> Any:
        """Convert to uppercase."""
        if value is None:
            return None
        return str(value).upper()

    def _transform_prefix(self, value: Any, config: Dict) -> Any:
        """Add a prefix to the value."""
        if value is None:
            return None
        return f"{config['prefix']}{value}"

    def _transform_strip_prefix(self, value: Any, config: Dict) -> Any:
        """Strip a prefix if present."""
        if value is None:
            return None
        value_str = str(value)
        prefix = config["prefix"]
        if value_str.startswith(prefix):
            value_str = value_str[len(prefix):]
        return value_str

    def _transform_truncate(self, value: Any, config: Dict) -> Any:
        """Truncate to max length."""
        if value is None:
            return None
        return str(value)[:config["max_length"]]

    def _transform_default(self, value: Any, config: Dict) -> Any:
        """Return default value if source is empty."""
        if _is_empty(value):
            return config["value"]
        return value

    def _transform_split_name(self, value: Any, config: Dict) -> Any:
        """Split a full name into first/last parts."""
        if not value:
            return None

        parts = str(value).strip().split(" ", 1)
        if config["part"] == "first":
            return parts[0]
        return parts[1].strip() if len(parts) > 1 else None

    def _transform_enum_map(self, value: Any, config: Dict) -> Any:
        """Map value using a lookup table, passing unknown values through."""
        if value is None:
            return None
        return config["mapping"].get(str(value), value)

    def _transform_boolean_to_enum(self, value: Any, config: Dict) -> Any:
        """Convert boolean to enum value."""
        true_value = config["true_value"]
        false_value = config["false_value"]

        if value is None:
            return false_value
        if isinstance(value, str):
            return true_value if value.lower() in ("true", "1", "yes") else false_value
        return true_value if value else false_value

    def _transform_iso_to_unix(self, value: Any, config: Dict) -> Any:
        """Convert ISO datetime string to Unix timestamp."""
        if value is None:
            return None
        if isinstance(value, (int, float)):
            return int(value)  # Already a timestamp

        dt = date_parser.parse(str(value))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())

    def _transform_unix_to_iso(self, value: Any, config: Dict) -> Any:
        """Convert Unix timestamp to ISO datetime string (UTC)."""
        if value is None:
            return None
        timestamp = float(value)
        # Millisecond timestamps (HubSpot) are far beyond any plausible second count
        if timestamp > 1e11:
            timestamp /= 1000
        return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()

    def _transform_multiply(self, value: Any, config: Dict) -> Any:
        """Multiply numeric value."""
        if value is None:
            return None
        try:
            return float(value) * config["multiplier"]
        except (ValueError, TypeError):
            return value

    def _transform_divide(self, value: Any, config: Dict) -> Any:
        """Divide numeric value."""
        if value is None:
            return None
        try:
            return float(value) / config["divisor"]
        except (ValueError, TypeError):
            return value

    def _transform_clean_phone(self, value: Any, config: Dict) -> Any:
        """Clean phone number formatting."""
        if value is None:
            return None

        # Remove common formatting characters
        phone = re.sub(r"[^\d+]", "", str(value))

        # Ensure it starts with + for international
        if phone and not phone.startswith("+") and len(phone) > 10:
            phone = f"+{phone}"

        return phone if phone else None

    def _transform_country_code(self, value: Any, config: Dict) -> Any:
        """Convert country name to ISO code."""
        if value is None:
            return None

        value_lower = str(value).lower().strip()

        # If already a 2-letter code, return uppercase
        if len(value_lower) == 2:
            return value_lower.upper()

        return COUNTRY_CODES.get(value_lower, value)
