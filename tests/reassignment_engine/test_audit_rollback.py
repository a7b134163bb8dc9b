"""Tests for the audit log and rollback."""

import re

import pytest

from src.reassignment_engine.audit import (
    HEADS_COLLECTION,
    LOGS_COLLECTION,
    AuditLog,
    new_operation_id,
)
from src.reassignment_engine.errors import NotFoundError, PartialRollbackFailure
from src.reassignment_engine.models import (
    LogStatus,
    ReassignmentType,
    RollbackValidation,
    StagedOperation,
)
from src.reassignment_engine.store import MemoryDocumentStore


async def commit_ops(engine, actor, *ops):
    _, result = await engine.commit_staged(list(ops), actor)
    assert result.success, result.message
    return result


class TestOperationId:
    """Tests for operation id format."""

    def test_format(self):
        """Operation ids are type, milliseconds and six hex digits."""
        operation_id = new_operation_id(ReassignmentType.DRIVER)
        assert re.fullmatch(r"driver_reassignment_\d{13}_[0-9a-f]{6}", operation_id)

    def test_retention_must_be_positive(self):
        """At least one log per type must be kept."""
        with pytest.raises(ValueError):
            AuditLog(MemoryDocumentStore(), retention_per_type=0)


class TestAuditLog:
    """Tests for versioned, retained logs."""

    @pytest.mark.asyncio
    async def test_commit_writes_log(self, engine, actor, store):
        """A commit writes a versioned log and moves the head."""
        result = await commit_ops(engine, actor, StagedOperation.swap("drv_1", "drv_2"))
        assert result.audit_logged is True

        log = await engine.get_log(result.operation_id)
        assert log.status == LogStatus.COMMITTED
        assert log.type == ReassignmentType.DRIVER
        assert log.actor_label == "Transport Admin (Admin)"
        assert log.version == 1
        assert [c.doc_path for c in log.changes] == [
            "buses/bus_1", "buses/bus_2", "drivers/drv_1", "drivers/drv_2",
        ]
        assert log.changes[0].before["assigned_driver_id"] == "drv_1"
        assert log.summary.startswith("Driver reassignment (4 changes)")

        head = await store.get(HEADS_COLLECTION, "driver_reassignment")
        assert head["operation_id"] == result.operation_id

    @pytest.mark.asyncio
    async def test_only_latest_log_per_type_kept(self, engine, actor):
        """A newer commit of the same type purges the older log."""
        first = await commit_ops(engine, actor, StagedOperation.swap("drv_1", "drv_2"))
        second = await commit_ops(engine, actor, StagedOperation.mark_reserved("drv_3"))

        assert await engine.get_log(first.operation_id) is None
        latest = await engine.audit.latest(ReassignmentType.DRIVER)
        assert latest.operation_id == second.operation_id
        assert latest.version == 2

    @pytest.mark.asyncio
    async def test_rollback_logs_survive_later_commits(self, engine, actor):
        """Later commits of the same type purge older logs but never rollback logs."""
        first = await commit_ops(engine, actor, StagedOperation.swap("drv_1", "drv_2"))
        rollback = await engine.rollback(first.operation_id, actor)
        assert rollback.success is True

        await commit_ops(engine, actor, StagedOperation.mark_reserved("drv_3"))
        last = await commit_ops(engine, actor, StagedOperation.assign_driver("drv_4", "bus_4"))

        logs = await engine.logs()
        driver_logs = [log for log in logs if log.type == ReassignmentType.DRIVER]
        assert [log.operation_id for log in driver_logs] == [last.operation_id]

        rollback_log = await engine.get_log(rollback.rollback_operation_id)
        assert rollback_log is not None
        assert rollback_log.rollback_of == first.operation_id
        assert [log.operation_id for log in await engine.logs(log_type=ReassignmentType.ROLLBACK)] == [
            rollback.rollback_operation_id
        ]

    @pytest.mark.asyncio
    async def test_types_retained_independently(self, engine, actor):
        """Retention is applied per operation type."""
        driver = await commit_ops(engine, actor, StagedOperation.swap("drv_1", "drv_2"))
        route = await commit_ops(engine, actor, StagedOperation.reassign_route("bus_4", "route_1"))

        logs = await engine.logs()
        assert {log.operation_id for log in logs} == {driver.operation_id, route.operation_id}
        assert [log.operation_id for log in await engine.logs(log_type=ReassignmentType.ROUTE)] == [
            route.operation_id
        ]

    @pytest.mark.asyncio
    async def test_query_by_actor_and_status(self, engine, actor):
        """Logs filter by actor and status."""
        await commit_ops(engine, actor, StagedOperation.swap("drv_1", "drv_2"))
        assert len(await engine.logs(actor_id=actor.id)) == 1
        assert await engine.logs(actor_id="someone_else") == []
        assert await engine.logs(status=LogStatus.ROLLED_BACK) == []

    @pytest.mark.asyncio
    async def test_no_op_commit_writes_nothing(self, engine, actor, store):
        """A no-op commit writes no log."""
        _, result = await engine.commit_staged(
            [StagedOperation.assign_driver("drv_1", "bus_1")], actor
        )
        assert result.status == LogStatus.NO_OP
        assert result.operation_id is None
        assert store.dump().get(LOGS_COLLECTION, {}) == {}


class TestRollback:
    """Tests for rollback validation and execution."""

    @pytest.mark.asyncio
    async def test_rollback_restores_state(self, engine, actor, store):
        """Rollback restores before values and records a rollback log."""
        result = await commit_ops(engine, actor, StagedOperation.swap("drv_1", "drv_2"))

        rollback = await engine.rollback(result.operation_id, actor)
        assert rollback.success is True
        assert sorted(rollback.reverted_docs) == [
            "buses/bus_1", "buses/bus_2", "drivers/drv_1", "drivers/drv_2",
        ]

        assert (await store.get("buses", "bus_1"))["assigned_driver_id"] == "drv_1"
        assert (await store.get("drivers", "drv_2"))["bus_id"] == "bus_2"

        original = await engine.get_log(result.operation_id)
        assert original.status == LogStatus.ROLLED_BACK
        assert original.meta["rollback_operation_id"] == rollback.rollback_operation_id

        rollback_log = await engine.get_log(rollback.rollback_operation_id)
        assert rollback_log.type == ReassignmentType.ROLLBACK
        assert rollback_log.rollback_of == result.operation_id
        bus_1 = next(c for c in rollback_log.changes if c.doc_path == "buses/bus_1")
        assert bus_1.before["assigned_driver_id"] == "drv_2"
        assert bus_1.after["assigned_driver_id"] == "drv_1"

    @pytest.mark.asyncio
    async def test_rollback_reverts_tracked_fields_only(self, engine, actor, store):
        """Untracked edits made after the commit survive the rollback."""
        result = await commit_ops(engine, actor, StagedOperation.swap("drv_1", "drv_2"))
        bus_1 = await store.get("buses", "bus_1")
        await store.set("buses", "bus_1", {**bus_1, "bus_number": "AS-01-9999"})

        rollback = await engine.rollback(result.operation_id, actor)
        assert rollback.success is True

        restored = await store.get("buses", "bus_1")
        assert restored["assigned_driver_id"] == "drv_1"
        assert restored["bus_number"] == "AS-01-9999"
        assert restored["updated_by"] == actor.id

    @pytest.mark.asyncio
    async def test_rollback_of_student_move_restores_loads(self, engine, actor, store):
        """Rolling back a student move restores both bus loads."""
        result = await commit_ops(engine, actor, StagedOperation.assign_students(["stu_1"], "bus_2"))
        assert (await store.get("buses", "bus_2"))["load"]["morning_count"] == 49

        await engine.rollback(result.operation_id, actor)
        assert (await store.get("buses", "bus_2"))["load"]["morning_count"] == 48
        assert (await store.get("students", "stu_1"))["bus_id"] == "bus_1"

    @pytest.mark.asyncio
    async def test_blocked_when_data_changed(self, engine, actor, store):
        """Rollback is blocked when a document changed since the commit."""
        result = await commit_ops(engine, actor, StagedOperation.swap("drv_1", "drv_2"))
        bus_1 = await store.get("buses", "bus_1")
        await store.set("buses", "bus_1", {**bus_1, "assigned_driver_id": "drv_4"})

        validation = await engine.validate_rollback(result.operation_id)
        assert validation.can_rollback is False
        assert validation.conflicts == [
            "buses/bus_1.assigned_driver_id: expected 'drv_2', found 'drv_4'"
        ]

        rollback = await engine.rollback(result.operation_id, actor)
        assert rollback.success is False
        assert (await store.get("buses", "bus_2"))["assigned_driver_id"] == "drv_1"
        assert (await engine.get_log(result.operation_id)).status == LogStatus.COMMITTED

    @pytest.mark.asyncio
    async def test_cannot_roll_back_twice(self, engine, actor):
        """Rolled back and rollback operations cannot be rolled back."""
        result = await commit_ops(engine, actor, StagedOperation.swap("drv_1", "drv_2"))
        first = await engine.rollback(result.operation_id, actor)

        validation = await engine.validate_rollback(result.operation_id)
        assert validation.can_rollback is False
        assert validation.conflicts == ["Operation is rolled_back"]

        rollback_validation = await engine.validate_rollback(first.rollback_operation_id)
        assert rollback_validation.conflicts == ["Rollback operations cannot be rolled back"]

    @pytest.mark.asyncio
    async def test_unknown_operation(self, engine, actor):
        """Unknown operation ids raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await engine.validate_rollback("driver_reassignment_0_000000")
        with pytest.raises(NotFoundError):
            await engine.rollback("driver_reassignment_0_000000", actor)

    @pytest.mark.asyncio
    async def test_partial_failure(self, engine, actor, store, monkeypatch):
        """A document changed between validation and execution stays as-is."""
        result = await commit_ops(engine, actor, StagedOperation.swap("drv_1", "drv_2"))
        log = await engine.get_log(result.operation_id)

        drv_1 = await store.get("drivers", "drv_1")
        await store.set("drivers", "drv_1", {**drv_1, "bus_id": "bus_4"})

        async def passing_validation(operation_id):
            return RollbackValidation(operation_id=operation_id, can_rollback=True, log=log)

        monkeypatch.setattr(engine.rollbacks, "validate", passing_validation)

        with pytest.raises(PartialRollbackFailure) as exc_info:
            await engine.rollbacks.execute(result.operation_id, actor)
        assert exc_info.value.unreverted_docs == ["drivers/drv_1"]
        assert len(exc_info.value.reverted_docs) == 3

        assert (await store.get("drivers", "drv_1"))["bus_id"] == "bus_4"
        assert (await store.get("buses", "bus_1"))["assigned_driver_id"] == "drv_1"
        assert (await engine.get_log(result.operation_id)).status == LogStatus.FAILED
        rollback_log = await engine.get_log(exc_info.value.rollback_operation_id)
        assert rollback_log.status == LogStatus.FAILED
        assert rollback_log.meta["unreverted_docs"] == ["drivers/drv_1"]

    @pytest.mark.asyncio
    async def test_partial_failure_reported_by_engine(self, engine, actor, store, monkeypatch):
        """The engine reports a partial rollback as a failed result."""
        result = await commit_ops(engine, actor, StagedOperation.swap("drv_1", "drv_2"))
        log = await engine.get_log(result.operation_id)
        drv_2 = await store.get("drivers", "drv_2")
        await store.set("drivers", "drv_2", {**drv_2, "reserved": True})

        async def passing_validation(operation_id):
            return RollbackValidation(operation_id=operation_id, can_rollback=True, log=log)

        monkeypatch.setattr(engine.rollbacks, "validate", passing_validation)

        rollback = await engine.rollback(result.operation_id, actor)
        assert rollback.success is False
        assert rollback.unreverted_docs == ["drivers/drv_2"]
        assert rollback.conflicts == ["drivers/drv_2.reserved: expected False, found True"]
