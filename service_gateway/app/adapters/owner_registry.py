"""
In-process registry of owned resources.

Stands in for the persistence layer the gateway does not own. Ownership
guards read the declared owner through ``resolver``.
"""

import asyncio
from typing import Any, Callable, Dict, Optional

from shared.logging import get_logger


class OwnerRegistry:
    """Records keyed by resource id, each carrying an ``owner_id``."""

    def __init__(self, kind: str = "resource"):
        self.kind = kind
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self.logger = get_logger(f"gateway.{kind}_registry")

    async def register(self, resource_id: str, owner_id: str, **attributes: Any) -> Dict[str, Any]:
        record = {**attributes, "id": resource_id, "owner_id": owner_id}
        async with self._lock:
            self._records[resource_id] = record
        self.logger.info("Resource registered", resource_id=resource_id, owner_id=owner_id)
        return dict(record)

    async def get(self, resource_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._records.get(resource_id)
        return dict(record) if record is not None else None

    async def update(self, resource_id: str, **changes: Any) -> Dict[str, Any]:
        """Apply ``changes``; ``id`` and ``owner_id`` are never overwritten."""
        async with self._lock:
            record = self._records.get(resource_id)
            if record is None:
                raise KeyError(resource_id)
            for field, value in changes.items():
                if field not in ("id", "owner_id"):
                    record[field] = value
            return dict(record)

    async def owner_of(self, resource_id: str) -> Optional[str]:
        record = await self.get(resource_id)
        return record["owner_id"] if record is not None else None

    def resolver(self, path_param: str) -> Callable:
        """Ownership resolver reading the resource id from a path parameter."""

        async def resolve_owner_id(principal, request) -> Optional[str]:
            resource_id = request.path_params.get(path_param)
            if resource_id is None:
                return None
            return await self.owner_of(resource_id)

        return resolve_owner_id

    def __len__(self) -> int:
        return len(self._records)
