"""
PostgreSQL entity store.

Applies a whole batch in one transaction with a SAVEPOINT per item: a data
error (duplicate id, missing row) rolls back only that item and becomes a
failed item outcome, while connection-level failures abort the batch and
are reported as retryable.
"""

from __future__ import annotations

import uuid
from typing import Any

from bulkops_service_libs.logging_utils import create_service_logger
from common_core.status_enums import OperationKind
from sqlalchemy import delete
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.bulk_operations_service.domain_models import ItemOutcome
from services.bulk_operations_service.exceptions import TransientApplyError
from services.bulk_operations_service.models_db import Base, Entity

logger = create_service_logger("bulkops.postgres_entity_store")


class PostgresEntityStore:
    """Entity store over SQLAlchemy asyncio + asyncpg."""

    def __init__(self, database_url: str, pool_size: int = 5, max_overflow: int = 10):
        self.engine = create_async_engine(
            database_url,
            echo=False,
            future=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
        self.async_session = async_sessionmaker(
            self.engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    async def initialize(self) -> None:
        """Create the entities table if it does not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Entity store schema ready")

    async def close(self) -> None:
        await self.engine.dispose()

    async def apply_batch(
        self, kind: OperationKind, entities: list[dict[str, Any]]
    ) -> list[ItemOutcome]:
        outcomes: list[ItemOutcome] = []
        try:
            async with self.async_session() as session:
                async with session.begin():
                    for index, entity in enumerate(entities):
                        try:
                            async with session.begin_nested():
                                error = await self._apply_item(session, kind, entity)
                        except IntegrityError as e:
                            error = f"integrity error: {e.orig}"
                        outcomes.append(
                            ItemOutcome(index=index, success=error is None, error=error)
                        )
        except (OperationalError, InterfaceError, ConnectionError, OSError) as e:
            logger.warning(f"Entity store unavailable during {kind.value} batch: {e}")
            raise TransientApplyError(f"Entity store unavailable: {e}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientApplyError(f"Entity store connection lost: {e}") from e
            raise

        failed = sum(1 for o in outcomes if not o.success)
        logger.debug(
            f"Applied {kind.value} batch: {len(outcomes) - failed} ok, {failed} rejected"
        )
        return outcomes

    async def _apply_item(
        self, session: AsyncSession, kind: OperationKind, entity: dict[str, Any]
    ) -> str | None:
        """Apply one entity inside the current savepoint. Returns an error message or None."""
        fields = {k: v for k, v in entity.items() if k != "id"}

        if kind is OperationKind.CREATE:
            entity_id = str(entity.get("id") or uuid.uuid4())
            existing = await session.get(Entity, entity_id)
            if existing is not None:
                # A redelivered batch may replay a create that already committed
                if existing.data == fields:
                    return None
                return f"entity {entity_id} already exists"
            session.add(Entity(id=entity_id, data=fields))
            await session.flush()
            return None

        entity_id = str(entity["id"])
        if kind is OperationKind.UPDATE:
            row = await session.get(Entity, entity_id)
            if row is None:
                return f"entity {entity_id} not found"
            row.data = {**(row.data or {}), **fields}
            await session.flush()
            return None

        result = await session.execute(delete(Entity).where(Entity.id == entity_id))
        if result.rowcount == 0:
            return f"entity {entity_id} not found"
        return None
