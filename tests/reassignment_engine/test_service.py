"""Tests for the reassignment engine facade."""

import pytest

from src.reassignment_engine import (
    EngineConfig,
    MemoryDocumentStore,
    ReassignmentEngine,
    StagedOperation,
    preview_changes,
)
from src.reassignment_engine.models import LogStatus, ViolationKind


class TestPreview:
    """Tests for previews."""

    def test_preview_changes_is_pure(self, snapshot):
        """Previewing leaves the snapshot untouched."""
        preview = preview_changes([StagedOperation.swap("drv_1", "drv_2")], snapshot)
        assert preview.can_commit is True
        assert len(preview.net_changes.changes) == 4
        assert snapshot.bus("bus_1").assigned_driver_id == "drv_1"

    def test_preview_reports_capacity(self, snapshot):
        """Preview carries capacity errors."""
        op = StagedOperation.assign_students(["stu_1", "stu_2", "stu_3"], "bus_2")
        preview = preview_changes([op], snapshot)
        assert preview.can_commit is False
        assert preview.report.errors[0].kind == ViolationKind.CAPACITY

    @pytest.mark.asyncio
    async def test_preview_reads_store(self, engine, store):
        """Preview reads the current store contents."""
        await store.set("drivers", "drv_4", {
            **(await store.get("drivers", "drv_4")),
            "bus_id": "bus_4",
            "route_id": "route_3",
            "reserved": False,
        })
        preview = await engine.preview([StagedOperation.assign_driver("drv_4", "bus_4")])
        # bus_4 still lists no driver, so only the bus changes
        assert preview.net_changes.entity_ids() == ["buses/bus_4"]


class TestCommit:
    """Tests for committing through the engine."""

    @pytest.mark.asyncio
    async def test_commit_success(self, engine, actor, store):
        """Committed result with operation id and updated entities."""
        net_changes, result = await engine.commit_staged(
            [StagedOperation.assign_driver("drv_4", "bus_4")], actor
        )
        assert result.success is True
        assert result.status == LogStatus.COMMITTED
        assert result.operation_id.startswith("driver_reassignment_")
        assert result.updated_entity_ids == ["buses/bus_4", "drivers/drv_4"]
        assert (await store.get("drivers", "drv_4"))["reserved"] is False
        assert [r.entity_id for r in net_changes.confirmation_rows] == ["bus_4", "drv_4"]

    @pytest.mark.asyncio
    async def test_capacity_error_blocks_commit(self, engine, actor, store):
        """Capacity errors block the commit."""
        op = StagedOperation.assign_students(["stu_1", "stu_2", "stu_3"], "bus_2")
        _, result = await engine.commit_staged([op], actor)

        assert result.success is False
        assert result.status == LogStatus.FAILED
        assert result.errors[0].kind == ViolationKind.CAPACITY
        assert (await store.get("buses", "bus_2"))["load"]["morning_count"] == 48

    @pytest.mark.asyncio
    async def test_capacity_override(self, engine, actor, store):
        """Override commits despite capacity errors and is logged."""
        op = StagedOperation.assign_students(["stu_1", "stu_2", "stu_3"], "bus_2")
        _, result = await engine.commit_staged([op], actor, allow_capacity_override=True)

        assert result.success is True
        assert (await store.get("buses", "bus_2"))["load"]["morning_count"] == 51
        log = await engine.get_log(result.operation_id)
        assert log.meta["capacity_override"] is True

    @pytest.mark.asyncio
    async def test_override_does_not_cover_compatibility(self, engine, actor):
        """Override does not lift compatibility errors."""
        op = StagedOperation.assign_students(["stu_4"], "bus_3")
        _, result = await engine.commit_staged([op], actor, allow_capacity_override=True)
        assert result.success is False
        assert result.errors[0].kind == ViolationKind.COMPATIBILITY

    @pytest.mark.asyncio
    async def test_conflict_returned_not_raised(self, engine, actor, store, snapshot):
        """A conflict is returned as a failed result."""
        result = engine.compute_net_changes([StagedOperation.swap("drv_1", "drv_2")], snapshot)
        bus_1 = await store.get("buses", "bus_1")
        await store.set("buses", "bus_1", {**bus_1, "assigned_driver_id": "drv_3"})

        commit = await engine.commit(result, actor, snapshot)
        assert commit.success is False
        assert commit.status == LogStatus.FAILED
        assert commit.conflicts[0].entity_id == "bus_1"
        assert commit.conflicts[0].actual == "drv_3"
        assert await engine.logs() == []

    @pytest.mark.asyncio
    async def test_rejected_operation_fails(self, engine, actor):
        """A rejected operation fails the commit."""
        _, result = await engine.commit_staged([StagedOperation.mark_reserved("ghost")], actor)
        assert result.success is False
        assert result.errors[0].kind == ViolationKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_no_op(self, engine, actor):
        """Cancelling operations commit nothing."""
        ops = [
            StagedOperation.assign_driver("drv_1", "bus_4"),
            StagedOperation.assign_driver("drv_1", "bus_1"),
        ]
        net_changes, result = await engine.commit_staged(ops, actor)
        assert result.status == LogStatus.NO_OP
        assert len(net_changes.removed_no_ops) == 2

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_undo_commit(self, engine, actor, store, monkeypatch):
        """A failed audit write keeps the commit."""
        async def broken(*args, **kwargs):
            raise RuntimeError("audit store down")

        monkeypatch.setattr(engine.audit, "record_commit", broken)
        _, result = await engine.commit_staged([StagedOperation.mark_reserved("drv_3")], actor)

        assert result.success is True
        assert result.audit_logged is False
        assert (await store.get("drivers", "drv_3"))["reserved"] is True


class TestConfig:
    """Tests for engine configuration."""

    def test_suggest_threshold_from_config(self, snapshot):
        """The configured threshold is the default."""
        engine = ReassignmentEngine(MemoryDocumentStore(), EngineConfig(suggest_load_threshold=100.0))
        students = [snapshot.student("stu_1"), snapshot.student("stu_2")]
        suggestions = engine.suggest_candidates(students, snapshot.buses, snapshot.bus("bus_1"))
        assert [r.bus.id for r in suggestions] == ["bus_3", "bus_2"]

    def test_explicit_threshold_wins(self, snapshot):
        """An explicit threshold overrides the configured one."""
        engine = ReassignmentEngine(MemoryDocumentStore())
        students = [snapshot.student("stu_1"), snapshot.student("stu_2")]
        suggestions = engine.suggest_candidates(
            students, snapshot.buses, snapshot.bus("bus_1"), threshold=100.0
        )
        assert len(suggestions) == 2

    def test_retention_from_config(self):
        """Retention comes from the config."""
        engine = ReassignmentEngine(MemoryDocumentStore(), EngineConfig(audit_retention_per_type=5))
        assert engine.audit.retention_per_type == 5
