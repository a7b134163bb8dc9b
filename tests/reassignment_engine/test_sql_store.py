"""Tests for the SQLAlchemy document store (on aiosqlite)."""

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import create_async_engine

from src.reassignment_engine import ReassignmentEngine, StagedOperation
from src.reassignment_engine.models import LogStatus
from src.reassignment_engine.snapshot import read_snapshot, save_snapshot
from src.reassignment_engine.sql_store import SqlDocumentStore, documents


@pytest.fixture
async def sql_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'documents.db'}")
    store = SqlDocumentStore(engine)
    await store.create_schema()
    yield store
    await engine.dispose()


async def stored_version(store, collection, doc_id):
    async with store.engine.connect() as conn:
        result = await conn.execute(
            sa.select(documents.c.version).where(
                documents.c.collection == collection, documents.c.doc_id == doc_id
            )
        )
        return result.scalar_one()


class TestSqlDocumentStore:
    """Tests for transactions on the SQL backend."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, sql_store):
        """Documents round-trip through the table."""
        await sql_store.set("buses", "bus_1", {"capacity": 50, "stops": [{"id": "A"}]})
        assert await sql_store.get("buses", "bus_1") == {"capacity": 50, "stops": [{"id": "A"}]}
        assert await sql_store.get("buses", "bus_9") is None

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, sql_store):
        """Each write bumps the version."""
        await sql_store.set("buses", "bus_1", {"capacity": 50})
        await sql_store.set("buses", "bus_1", {"capacity": 40})
        assert await sql_store.get("buses", "bus_1") == {"capacity": 40}
        assert await stored_version(sql_store, "buses", "bus_1") == 2

    @pytest.mark.asyncio
    async def test_raise_rolls_back(self, sql_store):
        """An exception inside the transaction discards writes."""
        await sql_store.set("buses", "bus_1", {"capacity": 50})

        with pytest.raises(RuntimeError):
            async with sql_store.transaction() as tx:
                await tx.set("buses", "bus_1", {"capacity": 10})
                await tx.set("buses", "bus_2", {"capacity": 40})
                raise RuntimeError("abort")

        assert await sql_store.get("buses", "bus_1") == {"capacity": 50}
        assert await sql_store.get("buses", "bus_2") is None

    @pytest.mark.asyncio
    async def test_query_and_delete(self, sql_store):
        """Filtered query and delete."""
        async with sql_store.transaction() as tx:
            await tx.set("students", "stu_2", {"status": "active"})
            await tx.set("students", "stu_1", {"status": "active"})
            await tx.set("students", "stu_3", {"status": "inactive"})
            await tx.set("buses", "bus_1", {"status": "active"})

        rows = await sql_store.query("students", {"status": "active"})
        assert [doc_id for doc_id, _ in rows] == ["stu_1", "stu_2"]

        async with sql_store.transaction() as tx:
            await tx.delete("students", "stu_1")
        assert [doc_id for doc_id, _ in await sql_store.query("students")] == ["stu_2", "stu_3"]

    @pytest.mark.asyncio
    async def test_ping(self, sql_store):
        """A reachable database pings true."""
        assert await sql_store.ping() is True


class TestEngineOnSql:
    """The full commit and rollback cycle on the SQL backend."""

    @pytest.mark.asyncio
    async def test_commit_and_rollback(self, sql_store, snapshot, actor):
        """Engine commit and rollback on the SQL store."""
        await save_snapshot(sql_store, snapshot)
        engine = ReassignmentEngine(sql_store)

        _, result = await engine.commit_staged([StagedOperation.swap("drv_1", "drv_2")], actor)
        assert result.status == LogStatus.COMMITTED

        loaded = await read_snapshot(sql_store)
        assert loaded.bus("bus_1").assigned_driver_id == "drv_2"
        assert loaded.driver("drv_1").bus_id == "bus_2"

        rollback = await engine.rollback(result.operation_id, actor)
        assert rollback.success is True
        loaded = await read_snapshot(sql_store)
        assert loaded.bus("bus_1").assigned_driver_id == "drv_1"
        assert (await engine.get_log(result.operation_id)).status == LogStatus.ROLLED_BACK
