"""API-based extractor for CRM services like HubSpot and Salesforce."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

from .base import BaseExtractor, ExtractedBatch
from ..exceptions import ConnectorError, UnknownObjectTypeError
from ..http_client import RateLimiter, auth_headers, create_session, send
from ..models.migration import ConnectionConfig
from ..models.record import SourceRecord

logger = logging.getLogger(__name__)

# Cursor handed out with the final batch; extracting from it yields nothing
END_CURSOR = "__end__"


class APIExtractor(BaseExtractor):
    """
    Extractor for REST API data sources.

    Supports:
    - HubSpot CRM v3 (``after`` cursor pagination, search API for
      incremental reads and counts)
    - Salesforce REST (SOQL with ``nextRecordsUrl`` pagination)
    - Generic REST APIs with offset pagination
    """

    # Service-specific configurations
    SERVICE_CONFIGS = {
        "hubspot": {
            "base_url": "https://api.hubapi.com",
            "auth_type": "bearer",
            "pagination_type": "cursor",
            "max_page_size": 100,
        },
        "salesforce": {
            "base_url": None,  # Instance URL, set per connection
            "auth_type": "bearer",
            "pagination_type": "url",
            "api_version": "v59.0",
        },
        "generic": {
            "base_url": None,
            "auth_type": "bearer",
            "pagination_type": "offset",
            "data_field": "data",
            "id_field": "id",
        },
    }

    HUBSPOT_OBJECTS = {
        "contact": "contacts",
        "company": "companies",
        "account": "companies",
        "accounts": "companies",
        "deal": "deals",
        "opportunity": "deals",
        "opportunities": "deals",
        "lead": "leads",
        "ticket": "tickets",
    }

    # Properties HubSpot needs before it accepts a create
    HUBSPOT_REQUIRED = {
        "contacts": ["email"],
        "companies": ["name"],
        "deals": ["dealname", "pipeline", "dealstage"],
    }

    SALESFORCE_OBJECTS = {
        "contact": "Contact",
        "contacts": "Contact",
        "company": "Account",
        "companies": "Account",
        "account": "Account",
        "accounts": "Account",
        "deal": "Opportunity",
        "deals": "Opportunity",
        "opportunity": "Opportunity",
        "opportunities": "Opportunity",
        "lead": "Lead",
        "leads": "Lead",
    }

    SALESFORCE_FIELDS = {
        "Account": "Id, Name, Type, Industry, Phone, Website, BillingStreet, BillingCity, BillingState, BillingPostalCode, BillingCountry, LastModifiedDate",
        "Contact": "Id, AccountId, FirstName, LastName, Email, Phone, Title, MailingStreet, MailingCity, MailingState, MailingPostalCode, MailingCountry, LastModifiedDate",
        "Lead": "Id, FirstName, LastName, Company, Email, Phone, Street, City, State, PostalCode, Country, Status, LastModifiedDate",
        "Opportunity": "Id, AccountId, Name, Amount, StageName, CloseDate, Type, LastModifiedDate",
    }

    def __init__(
        self,
        config: ConnectionConfig,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the API extractor.

        Args:
            config: Connection configuration
            session: Custom requests session (tests inject fakes here)
        """
        super().__init__(config.id)
        self.config = config
        self.service = config.service.lower()
        if self.service not in self.SERVICE_CONFIGS:
            raise ValueError(f"Unsupported service for API extraction: {config.service}")
        self._service_config = self.SERVICE_CONFIGS[self.service]
        self._session = session or create_session(
            max_retries=config.max_retries,
            backoff_factor=config.backoff_factor,
            headers=auth_headers(
                config.access_token,
                config.options.get("auth_type", self._service_config["auth_type"]),
            ),
        )
        self._rate_limiter = RateLimiter(config.rate_limit)

    @property
    def base_url(self) -> str:
        """Get the base URL for API requests."""
        base_url = self.config.base_url or self._service_config.get("base_url")
        if not base_url:
            raise ConnectorError(f"Connection {self.connection_id} has no base_url configured")
        return base_url.rstrip("/")

    def _request(self, method: str, path_or_url: str, **kwargs) -> Dict[str, Any]:
        url = path_or_url if path_or_url.startswith("http") else f"{self.base_url}{path_or_url}"
        self._rate_limiter.wait()
        response = send(self._session, method, url, timeout=self.config.timeout, **kwargs)
        return response.json() if response.content else {}

    # Extraction

    def extract_batch(
        self,
        object_type: str,
        cursor: Optional[str] = None,
        size: int = 100,
        since: Optional[datetime] = None
    ) -> ExtractedBatch:
        """Extract a batch of records from the API."""
        if cursor == END_CURSOR:
            return ExtractedBatch(records=[], next_cursor=END_CURSOR, has_more=False)

        if self.service == "hubspot":
            batch = self._extract_hubspot(object_type, cursor, size, since)
        elif self.service == "salesforce":
            batch = self._extract_salesforce(object_type, cursor, size, since)
        else:
            batch = self._extract_generic(object_type, cursor, size, since)

        if not batch.has_more:
            batch.next_cursor = END_CURSOR
        logger.debug(
            f"Extracted {len(batch.records)} {object_type} records from {self.connection_id}"
        )
        return batch

    def _hubspot_object(self, object_type: str) -> str:
        return self.HUBSPOT_OBJECTS.get(object_type.lower(), object_type.lower())

    def _hubspot_record(self, object_type: str, item: Dict[str, Any]) -> SourceRecord:
        data = dict(item.get("properties") or {})
        data["id"] = item.get("id")
        return self.create_record(
            id=item.get("id"),
            object_type=object_type,
            data=data,
            metadata={"updated_at": item.get("updatedAt")},
        )

    def _hubspot_since_filter(self, since: datetime) -> List[Dict[str, Any]]:
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        return [{
            "filters": [{
                "propertyName": "lastmodifieddate",
                "operator": "GTE",
                "value": str(int(since.timestamp() * 1000)),
            }]
        }]

    def _extract_hubspot(
        self,
        object_type: str,
        cursor: Optional[str],
        size: int,
        since: Optional[datetime]
    ) -> ExtractedBatch:
        hs_object = self._hubspot_object(object_type)
        limit = min(size, self._service_config["max_page_size"])

        if since is not None:
            body: Dict[str, Any] = {
                "filterGroups": self._hubspot_since_filter(since),
                "sorts": [{"propertyName": "lastmodifieddate", "direction": "ASCENDING"}],
                "limit": limit,
            }
            if cursor:
                body["after"] = cursor
            data = self._request("POST", f"/crm/v3/objects/{hs_object}/search", json=body)
        else:
            params: Dict[str, Any] = {"limit": limit}
            if cursor:
                params["after"] = cursor
            properties = self.config.options.get("properties", {}).get(object_type)
            if properties:
                params["properties"] = ",".join(properties)
            data = self._request("GET", f"/crm/v3/objects/{hs_object}", params=params)

        records = [self._hubspot_record(object_type, item) for item in data.get("results", [])]
        next_after = data.get("paging", {}).get("next", {}).get("after")
        return ExtractedBatch(records=records, next_cursor=next_after, has_more=bool(next_after))

    def _salesforce_object(self, object_type: str) -> str:
        return self.SALESFORCE_OBJECTS.get(object_type.lower(), object_type)

    def _salesforce_path(self, suffix: str) -> str:
        return f"/services/data/{self._service_config['api_version']}{suffix}"

    def _soql(self, object_type: str, since: Optional[datetime], count: bool = False) -> str:
        sf_object = self._salesforce_object(object_type)
        fields = "COUNT()" if count else self.SALESFORCE_FIELDS.get(sf_object, "Id, Name, LastModifiedDate")
        query = f"SELECT {fields} FROM {sf_object}"
        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            query += f" WHERE LastModifiedDate >= {since.strftime('%Y-%m-%dT%H:%M:%SZ')}"
        if not count:
            query += " ORDER BY Id"
        return query

    def _extract_salesforce(
        self,
        object_type: str,
        cursor: Optional[str],
        size: int,
        since: Optional[datetime]
    ) -> ExtractedBatch:
        # Salesforce only honors batch sizes between 200 and 2000
        headers = {"Sforce-Query-Options": f"batchSize={max(200, min(size, 2000))}"}
        if cursor:
            data = self._request("GET", cursor, headers=headers)
        else:
            query = quote(self._soql(object_type, since))
            data = self._request("GET", self._salesforce_path(f"/query?q={query}"), headers=headers)

        records = []
        for item in data.get("records", []):
            item = {k: v for k, v in item.items() if k != "attributes"}
            records.append(self.create_record(
                id=item.get("Id"),
                object_type=object_type,
                data=item,
                metadata={"updated_at": item.get("LastModifiedDate")},
            ))

        next_url = data.get("nextRecordsUrl")
        done = data.get("done", True)
        return ExtractedBatch(records=records, next_cursor=next_url, has_more=not done and bool(next_url))

    def _generic_endpoint(self, object_type: str) -> str:
        return self.config.object_endpoints.get(object_type, f"/{object_type.lower()}")

    def _extract_generic(
        self,
        object_type: str,
        cursor: Optional[str],
        size: int,
        since: Optional[datetime]
    ) -> ExtractedBatch:
        offset = int(cursor) if cursor else 0
        params: Dict[str, Any] = {"limit": size, "offset": offset}
        if since is not None:
            params[self.config.options.get("since_param", "updated_since")] = since.isoformat()

        data = self._request("GET", self._generic_endpoint(object_type), params=params)
        items = data if isinstance(data, list) else data.get(
            self.config.options.get("data_field", self._service_config["data_field"]), []
        )
        id_field = self.config.options.get("id_field", self._service_config["id_field"])

        records = [
            self.create_record(id=item.get(id_field, offset + i), object_type=object_type, data=item)
            for i, item in enumerate(items)
        ]
        return ExtractedBatch(
            records=records,
            next_cursor=str(offset + len(records)),
            has_more=len(items) >= size,
        )

    # Metadata

    def count_records(self, object_type: str, since: Optional[datetime] = None) -> Optional[int]:
        """Ask the service for a record count, where it can report one."""
        if self.service == "hubspot":
            body: Dict[str, Any] = {"limit": 1}
            if since is not None:
                body["filterGroups"] = self._hubspot_since_filter(since)
            data = self._request("POST", f"/crm/v3/objects/{self._hubspot_object(object_type)}/search", json=body)
            return data.get("total")

        if self.service == "salesforce":
            query = quote(self._soql(object_type, since, count=True))
            data = self._request("GET", self._salesforce_path(f"/query?q={query}"))
            return data.get("totalSize")

        total_field = self.config.options.get("total_field")
        if not total_field:
            return None
        data = self._request("GET", self._generic_endpoint(object_type), params={"limit": 1, "offset": 0})
        return data.get(total_field) if isinstance(data, dict) else None

    def describe_fields(self, object_type: str) -> Tuple[List[str], List[str]]:
        """
        Read field names from the service's metadata API.

        Raises:
            UnknownObjectTypeError: If the service does not know the object type
        """
        if self.service == "hubspot":
            hs_object = self._hubspot_object(object_type)
            try:
                data = self._request("GET", f"/crm/v3/properties/{hs_object}")
            except ConnectorError as e:
                if e.status_code == 404:
                    raise UnknownObjectTypeError(f"HubSpot has no object type {object_type}") from e
                raise
            fields = [p["name"] for p in data.get("results", []) if not p.get("hidden")]
            required = [f for f in self.HUBSPOT_REQUIRED.get(hs_object, []) if f in fields]
            return fields, required

        if self.service == "salesforce":
            sf_object = self._salesforce_object(object_type)
            try:
                data = self._request("GET", self._salesforce_path(f"/sobjects/{sf_object}/describe"))
            except ConnectorError as e:
                if e.status_code == 404:
                    raise UnknownObjectTypeError(f"Salesforce has no object type {sf_object}") from e
                raise
            fields = [f["name"] for f in data.get("fields", [])]
            required = [
                f["name"] for f in data.get("fields", [])
                if f.get("createable") and not f.get("nillable", True) and not f.get("defaultedOnCreate")
            ]
            return fields, required

        return super().describe_fields(object_type)

    def validate_connection(self) -> bool:
        """Validate connection to the API."""
        try:
            if self.service == "hubspot":
                self._request("GET", "/crm/v3/objects/contacts", params={"limit": 1})
            elif self.service == "salesforce":
                self._request("GET", self._salesforce_path("/limits"))
            else:
                self._request("GET", "/")
            return True
        except ConnectorError as e:
            logger.error(f"API connection validation failed for {self.connection_id}: {e}")
            return False
