"""Registry mapping opaque connection ids to connectors."""

import json
import logging
import threading
from typing import Any, Dict, Optional, Union

from ..extractors.api_extractor import APIExtractor
from ..extractors.base import BaseExtractor
from ..extractors.memory_extractor import MemoryExtractor
from ..loaders.api_loader import APILoader
from ..loaders.base import BaseLoader
from ..loaders.memory_loader import MemoryLoader
from ..models.migration import ConnectionConfig

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """
    Holds the extractor and loader behind each connection id.

    The pipeline never sees credentials or URLs, only connection ids; how a
    connection was authorized is the registry owner's business.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._extractors: Dict[str, BaseExtractor] = {}
        self._loaders: Dict[str, BaseLoader] = {}
        self._configs: Dict[str, ConnectionConfig] = {}

    def register(
        self,
        connection_id: str,
        extractor: Optional[BaseExtractor] = None,
        loader: Optional[BaseLoader] = None,
        config: Optional[ConnectionConfig] = None
    ) -> None:
        """Register connectors for a connection id (replacing earlier ones)."""
        if extractor is None and loader is None:
            raise ValueError(f"Connection {connection_id} needs an extractor or a loader")
        with self._lock:
            if extractor is not None:
                self._extractors[connection_id] = extractor
            if loader is not None:
                self._loaders[connection_id] = loader
            if config is not None:
                self._configs[connection_id] = config
        logger.debug(f"Registered connection {connection_id}")

    def __contains__(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._extractors or connection_id in self._loaders

    def get_extractor(self, connection_id: str) -> BaseExtractor:
        with self._lock:
            extractor = self._extractors.get(connection_id)
        if extractor is None:
            raise KeyError(f"No source connector registered for connection {connection_id}")
        return extractor

    def get_loader(self, connection_id: str) -> BaseLoader:
        with self._lock:
            loader = self._loaders.get(connection_id)
        if loader is None:
            raise KeyError(f"No destination connector registered for connection {connection_id}")
        return loader

    def describer(self, connection_id: str) -> Union[BaseExtractor, BaseLoader]:
        """Connector answering schema lookups: the extractor if there is one, else the loader."""
        with self._lock:
            connector = self._extractors.get(connection_id) or self._loaders.get(connection_id)
        if connector is None:
            raise KeyError(f"Unknown connection {connection_id}")
        return connector

    def config(self, connection_id: str) -> Optional[ConnectionConfig]:
        with self._lock:
            return self._configs.get(connection_id)

    def list_connections(self) -> Dict[str, Dict[str, Any]]:
        """Connection ids with what is registered for them (no secrets)."""
        with self._lock:
            ids = sorted(set(self._extractors) | set(self._loaders))
            return {
                conn_id: {
                    "service": self._configs[conn_id].service if conn_id in self._configs else None,
                    "source": conn_id in self._extractors,
                    "destination": conn_id in self._loaders,
                }
                for conn_id in ids
            }

    def use_dry_run_destination(self, connection_id: str) -> MemoryLoader:
        """Swap a connection's loader for an in-memory one."""
        loader = MemoryLoader(connection_id, dry_run=False)
        with self._lock:
            self._loaders[connection_id] = loader
        logger.info(f"Connection {connection_id} writes to an in-memory destination (dry run)")
        return loader

    @classmethod
    def from_config(cls, connections: Dict[str, Dict[str, Any]]) -> "ConnectionRegistry":
        """
        Build a registry from connection config dicts.

        Args:
            connections: Connection id -> dict with ``service``, ``base_url``,
                ``access_token`` (or ``access_token_env``), ``rate_limit``...
                Service ``memory`` builds in-memory connectors from inline
                ``data`` or a ``data_file`` JSON document.

        Returns:
            ConnectionRegistry with an extractor and a loader per connection
        """
        registry = cls()
        for connection_id, raw in connections.items():
            config = ConnectionConfig.from_dict(connection_id, raw)

            if config.service == "memory":
                data = config.options.get("data")
                if data is None and config.options.get("data_file"):
                    with open(config.options["data_file"]) as f:
                        data = json.load(f)
                schemas = {
                    name: (schema.get("fields", []), schema.get("required", []))
                    for name, schema in config.options.get("schemas", {}).items()
                }
                registry.register(
                    connection_id,
                    extractor=MemoryExtractor(connection_id, data=data or {}, schemas=schemas),
                    loader=MemoryLoader(connection_id, schemas=schemas),
                    config=config,
                )
            else:
                registry.register(
                    connection_id,
                    extractor=APIExtractor(config),
                    loader=APILoader(config),
                    config=config,
                )
            logger.info(f"Configured {config.service} connection {connection_id}")
        return registry
