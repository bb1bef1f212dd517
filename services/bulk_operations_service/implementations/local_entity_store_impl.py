"""In-memory entity store for local backend mode and tests."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

from common_core.status_enums import OperationKind

from services.bulk_operations_service.domain_models import ItemOutcome


class InMemoryEntityStore:
    """Dict-backed entity store with the same per-item semantics as PostgresEntityStore."""

    def __init__(self) -> None:
        self.entities: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def apply_batch(
        self, kind: OperationKind, entities: list[dict[str, Any]]
    ) -> list[ItemOutcome]:
        outcomes: list[ItemOutcome] = []
        async with self._lock:
            for index, entity in enumerate(entities):
                error = self._apply_item(kind, entity)
                outcomes.append(ItemOutcome(index=index, success=error is None, error=error))
        return outcomes

    def _apply_item(self, kind: OperationKind, entity: dict[str, Any]) -> str | None:
        fields = {k: v for k, v in entity.items() if k != "id"}

        if kind is OperationKind.CREATE:
            entity_id = str(entity.get("id") or uuid.uuid4())
            if entity_id in self.entities:
                if self.entities[entity_id] == fields:
                    return None
                return f"entity {entity_id} already exists"
            self.entities[entity_id] = fields
            return None

        entity_id = str(entity["id"])
        if entity_id not in self.entities:
            return f"entity {entity_id} not found"
        if kind is OperationKind.UPDATE:
            self.entities[entity_id] = {**self.entities[entity_id], **fields}
        else:
            del self.entities[entity_id]
        return None
