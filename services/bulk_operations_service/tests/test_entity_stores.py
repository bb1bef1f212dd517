"""
Tests for entity store item semantics.

InMemoryEntityStore is exercised directly; PostgresEntityStore is checked
for how it classifies driver failures, with the session mocked out.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from common_core.status_enums import OperationKind
from sqlalchemy.exc import OperationalError

from services.bulk_operations_service.exceptions import TransientApplyError
from services.bulk_operations_service.implementations.local_entity_store_impl import (
    InMemoryEntityStore,
)
from services.bulk_operations_service.implementations.postgres_entity_store_impl import (
    PostgresEntityStore,
)
from services.bulk_operations_service.models_db import Entity


class TestInMemoryEntityStore:
    @pytest.mark.asyncio
    async def test_create_assigns_ids_and_rejects_duplicates(self) -> None:
        store = InMemoryEntityStore()

        outcomes = await store.apply_batch(
            OperationKind.CREATE, [{"id": "a", "v": 1}, {"v": 2}, {"id": "a", "v": 3}]
        )

        assert [o.success for o in outcomes] == [True, True, False]
        assert outcomes[2].error == "entity a already exists"
        assert len(store.entities) == 2
        assert store.entities["a"] == {"v": 1}

    @pytest.mark.asyncio
    async def test_replayed_create_with_same_data_succeeds(self) -> None:
        store = InMemoryEntityStore()
        batch = [{"id": "a", "v": 1}, {"id": "b", "v": 2}]
        await store.apply_batch(OperationKind.CREATE, batch)

        outcomes = await store.apply_batch(OperationKind.CREATE, batch)

        assert all(o.success for o in outcomes)
        assert store.entities == {"a": {"v": 1}, "b": {"v": 2}}

    @pytest.mark.asyncio
    async def test_update_merges_fields(self) -> None:
        store = InMemoryEntityStore()
        store.entities["a"] = {"v": 1, "keep": True}

        outcomes = await store.apply_batch(OperationKind.UPDATE, [{"id": "a", "v": 2}])

        assert outcomes[0].success
        assert store.entities["a"] == {"v": 2, "keep": True}

    @pytest.mark.asyncio
    async def test_update_and_delete_report_missing(self) -> None:
        store = InMemoryEntityStore()

        update = await store.apply_batch(OperationKind.UPDATE, [{"id": "x"}])
        delete = await store.apply_batch(OperationKind.DELETE, [{"id": "x"}])

        assert update[0].error == "entity x not found"
        assert delete[0].error == "entity x not found"

    @pytest.mark.asyncio
    async def test_outcomes_keep_item_order(self) -> None:
        store = InMemoryEntityStore()
        store.entities.update({"a": {}, "c": {}})

        outcomes = await store.apply_batch(
            OperationKind.DELETE, [{"id": "a"}, {"id": "b"}, {"id": "c"}]
        )

        assert [(o.index, o.success) for o in outcomes] == [(0, True), (1, False), (2, True)]


class TestPostgresEntityStoreFailures:
    @pytest.mark.asyncio
    async def test_connection_loss_is_transient(self) -> None:
        store = PostgresEntityStore("postgresql+asyncpg://u:p@localhost/db")
        failing = MagicMock()
        failing.__aenter__ = AsyncMock(
            side_effect=OperationalError("SELECT 1", {}, ConnectionError("reset"))
        )
        failing.__aexit__ = AsyncMock(return_value=False)
        store.async_session = MagicMock(return_value=failing)

        with pytest.raises(TransientApplyError):
            await store.apply_batch(OperationKind.CREATE, [{"id": "a"}])

        await store.close()


class TestPostgresEntityStoreCreate:
    def _session(self, existing: Entity | None) -> AsyncMock:
        session = AsyncMock()
        session.get.return_value = existing
        session.add = MagicMock()
        return session

    @pytest.mark.asyncio
    async def test_replayed_create_with_same_data_succeeds(self) -> None:
        store = PostgresEntityStore("postgresql+asyncpg://u:p@localhost/db")
        session = self._session(Entity(id="a", data={"v": 1}))

        error = await store._apply_item(session, OperationKind.CREATE, {"id": "a", "v": 1})

        assert error is None
        session.add.assert_not_called()
        await store.close()

    @pytest.mark.asyncio
    async def test_create_with_different_data_is_rejected(self) -> None:
        store = PostgresEntityStore("postgresql+asyncpg://u:p@localhost/db")
        session = self._session(Entity(id="a", data={"v": 1}))

        error = await store._apply_item(session, OperationKind.CREATE, {"id": "a", "v": 2})

        assert error == "entity a already exists"
        session.add.assert_not_called()
        await store.close()

    @pytest.mark.asyncio
    async def test_create_of_new_id_inserts_row(self) -> None:
        store = PostgresEntityStore("postgresql+asyncpg://u:p@localhost/db")
        session = self._session(None)

        error = await store._apply_item(session, OperationKind.CREATE, {"id": "a", "v": 1})

        assert error is None
        added = session.add.call_args.args[0]
        assert (added.id, added.data) == ("a", {"v": 1})
        session.flush.assert_awaited_once()
        await store.close()
