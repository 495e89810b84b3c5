"""API loader for CRM destinations (HubSpot, Salesforce, generic REST)."""

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from .base import BaseLoader
from ..exceptions import DuplicateRecordError
from ..extractors.api_extractor import APIExtractor
from ..http_client import RateLimiter, auth_headers, check_response, create_session, send
from ..models.migration import ConnectionConfig
from ..models.record import TransformedRecord
from ..services.transformer import TransformEngine

logger = logging.getLogger(__name__)


class APILoader(BaseLoader):
    """
    Loader for REST endpoints.

    Creates records with POST; when the destination answers 409 the record
    is updated in place with PUT/PATCH instead (upsert). Other error statuses
    are translated by ``check_response``: 400/422 reject the record, auth,
    rate-limit and 5xx failures abort the batch.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        dry_run: bool = False,
        session: Optional[requests.Session] = None,
        transform_engine: Optional[TransformEngine] = None
    ):
        """
        Initialize the API loader.

        Args:
            config: Connection configuration
            dry_run: If True, simulate without making changes
            session: Custom requests session
            transform_engine: Engine used to apply mapping rules
        """
        super().__init__(config.id, dry_run, transform_engine)
        self.config = config
        self.service = config.service.lower()
        if self.service not in APIExtractor.SERVICE_CONFIGS:
            raise ValueError(f"Unsupported service for API loading: {config.service}")
        self._session = session or create_session(
            max_retries=config.max_retries,
            backoff_factor=config.backoff_factor,
            headers=auth_headers(
                config.access_token,
                config.options.get("auth_type", "bearer"),
                config.options.get("auth_header", "Authorization"),
            ),
        )
        self._rate_limiter = RateLimiter(config.rate_limit)
        # Schema lookups share the extractor's metadata calls
        self._describer = APIExtractor(config, session=self._session)

    @property
    def base_url(self) -> str:
        return self._describer.base_url

    def _get_endpoint(self, object_type: str) -> str:
        """Get the collection endpoint for an object type."""
        if object_type in self.config.object_endpoints:
            return self.config.object_endpoints[object_type]
        if self.service == "hubspot":
            return f"/crm/v3/objects/{self._describer._hubspot_object(object_type)}"
        if self.service == "salesforce":
            sf_object = self._describer._salesforce_object(object_type)
            return self._describer._salesforce_path(f"/sobjects/{sf_object}")
        return f"/{object_type.lower()}"

    def _payload(self, record: TransformedRecord) -> Dict[str, Any]:
        if self.service == "hubspot":
            return {"properties": record.data}
        return record.data

    def _send(self, method: str, url: str, record: TransformedRecord, check: bool = True) -> requests.Response:
        self._rate_limiter.wait()
        return send(
            self._session,
            method,
            url,
            record_id=record.id,
            check=check,
            json=self._payload(record),
            timeout=self.config.timeout,
        )

    def _existing_id(self, record: TransformedRecord, response: requests.Response) -> str:
        """Destination id of the record a 409 collided with."""
        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict):
            # HubSpot: "Contact already exists. Existing ID: 123"
            message = str(body.get("message", ""))
            if "Existing ID:" in message:
                return message.split("Existing ID:")[-1].strip()
            if body.get("id"):
                return str(body["id"])
        return str(record.data.get("id", record.id))

    def load_record(self, object_type: str, record: TransformedRecord, upsert: bool = True) -> str:
        """Load a single record to the API."""
        url = f"{self.base_url}{self._get_endpoint(object_type)}"

        # Try POST first (create)
        response = self._send("POST", url, record, check=False)

        if response.status_code == 409:
            if not upsert:
                raise DuplicateRecordError(
                    f"{object_type} {record.id} already exists in {self.connection_id}",
                    record_id=record.id,
                    status_code=409,
                )
            # Conflict: update the existing record instead
            existing_id = self._existing_id(record, response)
            method = "PUT" if self.service == "generic" else "PATCH"
            self._send(method, f"{url}/{existing_id}", record)
            logger.debug(f"Updated existing {object_type} {existing_id} for record {record.id}")
            return existing_id

        check_response(response, record.id)

        response_data = response.json() if response.content else {}
        target_id = (
            response_data.get("id") or
            response_data.get("Id") or
            response_data.get("data", {}).get("id") or
            record.id
        )
        return str(target_id)

    def describe_fields(self, object_type: str) -> Tuple[List[str], List[str]]:
        return self._describer.describe_fields(object_type)

    def validate_connection(self) -> bool:
        """Validate connection to the API."""
        return self._describer.validate_connection()
