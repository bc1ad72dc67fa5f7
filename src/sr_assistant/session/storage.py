"""
Durable key/value storage for the session mirror.

Only the last known session lives here, so the process can pick it up
again after a restart. Cosmos DB is the production backend; the in-memory
backend is used when Cosmos is not configured and in tests.
"""

from __future__ import annotations

import copy
import logging
import time
from typing import Any, Protocol

from azure.cosmos import CosmosClient, PartitionKey
from azure.cosmos.exceptions import CosmosResourceNotFoundError

logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    def get(self, key: str) -> dict[str, Any] | None: ...

    def set(self, key: str, value: dict[str, Any]) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryStorage:
    """Process-local storage. Does not survive a restart."""

    def __init__(self) -> None:
        self._items: dict[str, dict[str, Any]] = {}

    def get(self, key: str) -> dict[str, Any] | None:
        value = self._items.get(key)
        return copy.deepcopy(value) if value is not None else None

    def set(self, key: str, value: dict[str, Any]) -> None:
        self._items[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        self._items.pop(key, None)


class CosmosKeyValueStorage:
    """Persist small JSON documents in a Cosmos DB container keyed by id."""

    def __init__(
        self,
        endpoint: str,
        key: str,
        database_name: str,
        container_name: str,
        container: Any = None,
    ):
        if container is not None:
            self._container = container
            return
        self._client = CosmosClient(endpoint, credential=key)
        self._db = self._client.create_database_if_not_exists(id=database_name)
        self._container = self._db.create_container_if_not_exists(
            id=container_name,
            partition_key=PartitionKey(path="/id"),
        )

    def get(self, key: str) -> dict[str, Any] | None:
        try:
            item = self._container.read_item(item=key, partition_key=key)
        except CosmosResourceNotFoundError:
            return None
        return item.get("value")

    def set(self, key: str, value: dict[str, Any]) -> None:
        self._container.upsert_item(body={"id": key, "value": value, "updated_at": time.time()})

    def delete(self, key: str) -> None:
        try:
            self._container.delete_item(item=key, partition_key=key)
        except CosmosResourceNotFoundError:
            logger.debug(f"Storage key already absent: {key}")


def build_storage(config) -> KeyValueStorage:
    """Cosmos when configured, otherwise in-memory (no restart survival)."""
    if config.cosmos_endpoint and config.cosmos_key:
        return CosmosKeyValueStorage(
            endpoint=config.cosmos_endpoint,
            key=config.cosmos_key,
            database_name=config.cosmos_database,
            container_name=config.cosmos_container,
        )
    logger.warning("COSMOSDB_ENDPOINT not set; session will not survive a restart")
    return InMemoryStorage()
