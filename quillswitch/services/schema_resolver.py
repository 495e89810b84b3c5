"""Field list lookup for object types, with a static fallback table."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..exceptions import UnknownObjectTypeError

logger = logging.getLogger(__name__)


# Default fields used when the connected system cannot describe an object type
FALLBACK_FIELDS: Dict[str, List[str]] = {
    "contact": [
        "id", "first_name", "last_name", "email", "phone",
        "company", "title", "created_at", "updated_at",
    ],
    "company": [
        "id", "name", "domain", "industry", "size",
        "phone", "address", "created_at", "updated_at",
    ],
    "deal": [
        "id", "name", "amount", "stage", "probability",
        "close_date", "contact_id", "company_id", "created_at", "updated_at",
    ],
    "lead": [
        "id", "first_name", "last_name", "email", "company",
        "status", "source", "created_at", "updated_at",
    ],
}

FALLBACK_REQUIRED: Dict[str, List[str]] = {
    "contact": ["email"],
    "company": ["name"],
    "deal": ["name"],
    "lead": ["email"],
}

OBJECT_TYPE_ALIASES: Dict[str, str] = {
    "contact": "contact",
    "contacts": "contact",
    "company": "company",
    "companies": "company",
    "account": "company",
    "accounts": "company",
    "deal": "deal",
    "deals": "deal",
    "opportunity": "deal",
    "opportunities": "deal",
    "lead": "lead",
    "leads": "lead",
}


def canonical_object_type(object_type: str) -> Optional[str]:
    """Map an object type name onto its fallback table key, if any."""
    key = object_type.strip().lower().replace(" ", "_")
    return OBJECT_TYPE_ALIASES.get(key)


@dataclass
class SchemaResult:
    """Field list for one object type of one connection."""
    object_type: str
    fields: List[str] = field(default_factory=list)
    required: List[str] = field(default_factory=list)
    source: str = "api"  # api, fallback

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_type": self.object_type,
            "fields": self.fields,
            "required": self.required,
            "source": self.source,
        }


class SchemaResolver:
    """
    Resolves the field list of an object type on a connection.

    The connected system is asked first (``describe_fields`` on the
    connection's extractor or loader). Any failure on that path downgrades to
    the static fallback table; only an object type the table does not know
    raises ``UnknownObjectTypeError``.
    """

    def __init__(self, connections):
        """
        Initialize the resolver.

        Args:
            connections: ConnectionRegistry used to reach each connection
        """
        self.connections = connections
        self._cache: Dict[Tuple[str, str], SchemaResult] = {}
        self._lock = threading.Lock()

    def get_schema(self, connection_id: str, object_type: str) -> SchemaResult:
        """
        Get the schema for an object type.

        Args:
            connection_id: Opaque connection handle
            object_type: Object type name (e.g. "contacts", "Account")

        Returns:
            SchemaResult with ``source`` set to "api" or "fallback"

        Raises:
            UnknownObjectTypeError: If the upstream fails and no fallback exists
        """
        cache_key = (connection_id, object_type.lower())
        with self._lock:
            cached = self._cache.get(cache_key)
        if cached:
            return cached

        try:
            describer = self.connections.describer(connection_id)
            fields, required = describer.describe_fields(object_type)
        except Exception as e:
            logger.warning(
                f"Schema lookup for {object_type} on {connection_id} failed, using fallback: {e}"
            )
            return self.fallback_schema(object_type)

        if not fields:
            logger.warning(f"No fields reported for {object_type} on {connection_id}, using fallback")
            return self.fallback_schema(object_type)

        result = SchemaResult(
            object_type=object_type,
            fields=list(fields),
            required=[f for f in required if f in fields],
            source="api",
        )
        with self._lock:
            self._cache[cache_key] = result
        logger.info(f"Resolved {len(result.fields)} fields for {object_type} on {connection_id}")
        return result

    def fallback_schema(self, object_type: str) -> SchemaResult:
        """Static schema for a known object type."""
        key = canonical_object_type(object_type)
        if key is None:
            raise UnknownObjectTypeError(f"No schema available for object type '{object_type}'")
        return SchemaResult(
            object_type=object_type,
            fields=list(FALLBACK_FIELDS[key]),
            required=list(FALLBACK_REQUIRED[key]),
            source="fallback",
        )

    def invalidate(self, connection_id: Optional[str] = None) -> None:
        """Drop cached schemas, for one connection or all of them."""
        with self._lock:
            if connection_id is None:
                self._cache.clear()
            else:
                for key in [k for k in self._cache if k[0] == connection_id]:
                    del self._cache[key]
