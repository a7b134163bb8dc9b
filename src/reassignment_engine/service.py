"""
Reassignment engine service.

Main entry point for previewing, committing and rolling back staged
reassignments. The pure functions at module level work on a snapshot
only; ReassignmentEngine ties them to a document store.
"""

import logging
from typing import Optional

from pydantic import BaseModel, Field

from . import __engine_version__
from .audit import AuditLog, new_operation_id, summarize
from .capacity import overloaded_buses
from .committer import TransactionalCommitter
from .errors import ConflictError, NotFoundError, PartialRollbackFailure, ReassignmentError
from .models import (
    Actor,
    AutoSplitResult,
    Bus,
    BusLoad,
    CommitResult,
    LogStatus,
    NetChangeResult,
    OverloadInfo,
    PreviewResult,
    RankedBus,
    RankingWeights,
    ReassignmentLog,
    ReassignmentType,
    RollbackResult,
    RollbackValidation,
    RuleViolation,
    Snapshot,
    StagedOperation,
    Student,
    ValidationReport,
    ViolationKind,
)
from .netchange import compute_net_changes
from .ranking import AllocationRanker, auto_split, suggest_candidates
from .reconcile import reconcile
from .rollback import RollbackManager
from .snapshot import read_snapshot
from .store import DocumentStore
from .validation import validate_changes

logger = logging.getLogger(__name__)


class EngineConfig(BaseModel):
    """Tunables of the engine."""

    audit_retention_per_type: int = Field(default=1, ge=1)
    suggest_load_threshold: float = Field(default=90.0, gt=0, le=100)
    overload_ratio: float = Field(default=0.9, gt=0, le=1)
    ranking_weights: RankingWeights = Field(default_factory=RankingWeights)


def preview_changes(staged_ops: list[StagedOperation], snapshot: Snapshot) -> PreviewResult:
    """
    Compute and validate net changes without touching any store.

    Args:
        staged_ops: Operations in staging order
        snapshot: Current state of the affected records

    Returns:
        PreviewResult with net changes and validation report

    Example:
        >>> preview = preview_changes(buffer.operations, snapshot)
        >>> for row in preview.net_changes.confirmation_rows:
        ...     print(row.sl_no, row.entity_label, row.initial, "->", row.final)
    """
    result = compute_net_changes(staged_ops, snapshot)
    return PreviewResult(net_changes=result, report=validate_changes(result, snapshot))


class ReassignmentEngine:
    """
    Facade over the reassignment pipeline.

    Args:
        store: Document store holding buses, drivers, routes, students and logs
        config: Engine tunables (defaults if omitted)
    """

    def __init__(self, store: DocumentStore, config: Optional[EngineConfig] = None):
        self.store = store
        self.config = config or EngineConfig()
        self.ranker = AllocationRanker(self.config.ranking_weights, self.config.overload_ratio)
        self.committer = TransactionalCommitter(store)
        self.audit = AuditLog(store, self.config.audit_retention_per_type)
        self.rollbacks = RollbackManager(store, self.audit)

    # --- Pure steps ---

    def compute_net_changes(
        self, staged_ops: list[StagedOperation], snapshot: Snapshot
    ) -> NetChangeResult:
        return compute_net_changes(staged_ops, snapshot)

    def validate(self, result: NetChangeResult, snapshot: Snapshot) -> ValidationReport:
        return validate_changes(result, snapshot)

    def rank_candidates(
        self, students: list[Student], candidate_buses: list[Bus], source_bus: Bus
    ) -> list[RankedBus]:
        return self.ranker.rank_buses(candidate_buses, students, source_bus)

    def suggest_candidates(
        self,
        students: list[Student],
        buses: list[Bus],
        source_bus: Bus,
        threshold: Optional[float] = None,
    ) -> list[RankedBus]:
        return suggest_candidates(
            students, buses, source_bus,
            threshold=threshold if threshold is not None else self.config.suggest_load_threshold,
            ranker=self.ranker,
        )

    def auto_split(
        self,
        students: list[Student],
        buses: list[Bus],
        source_bus: Bus,
        threshold: Optional[float] = None,
    ) -> AutoSplitResult:
        return auto_split(
            students, buses, source_bus,
            threshold=threshold if threshold is not None else self.config.suggest_load_threshold,
            ranker=self.ranker,
        )

    # --- Store-backed operations ---

    async def preview(self, staged_ops: list[StagedOperation]) -> PreviewResult:
        """Read a fresh snapshot, then compute and validate net changes."""
        snapshot = await read_snapshot(self.store)
        return preview_changes(staged_ops, snapshot)

    async def commit(
        self,
        result: NetChangeResult,
        actor: Actor,
        snapshot: Optional[Snapshot] = None,
        allow_capacity_override: bool = False,
    ) -> CommitResult:
        """
        Commit computed net changes.

        Validation runs first (against `snapshot`, or a fresh one). Conflicts
        are returned, never retried.

        Args:
            result: Output of compute_net_changes
            actor: Who commits
            snapshot: Snapshot the result was computed from
            allow_capacity_override: Commit despite capacity errors

        Returns:
            CommitResult; status is no-op when there is nothing to write
        """
        if not result.has_changes and not result.rejected:
            logger.info("Nothing to commit | no_ops=%d", len(result.removed_no_ops))
            return CommitResult(success=True, status=LogStatus.NO_OP, message="No net changes to commit")

        if snapshot is None:
            snapshot = await read_snapshot(self.store)
        report = validate_changes(result, snapshot)
        try:
            report.raise_for_errors(allow_capacity_override)
        except ReassignmentError as e:
            logger.info(
                "Commit rejected by validation | error=%s violations=%d",
                type(e).__name__, len(e.violations),
            )
            return CommitResult(
                success=False,
                status=LogStatus.FAILED,
                message=e.violations[0].message,
                errors=e.violations,
                warnings=report.warnings,
            )
        if not result.has_changes:
            return CommitResult(
                success=True, status=LogStatus.NO_OP,
                message="No net changes to commit", warnings=report.warnings,
            )

        log_type = result.reassignment_type
        operation_id = new_operation_id(log_type)
        try:
            records = await self.committer.commit(result.changes, actor.id)
        except ConflictError as e:
            return CommitResult(
                success=False,
                status=LogStatus.FAILED,
                message=str(e),
                warnings=report.warnings,
                conflicts=e.mismatches,
            )
        except NotFoundError as e:
            return CommitResult(
                success=False,
                status=LogStatus.FAILED,
                message=str(e),
                errors=[RuleViolation(
                    kind=ViolationKind.NOT_FOUND,
                    message=str(e),
                    collection=e.collection,
                    entity_id=e.entity_id,
                )],
                warnings=report.warnings,
            )

        audit_logged = True
        try:
            await self.audit.record_commit(
                log_type,
                actor,
                records,
                summary=summarize(result),
                meta={
                    "engine_version": __engine_version__,
                    "staged_operation_ids": [op.id for op in result.staged_operations],
                    "removed_no_ops": len(result.removed_no_ops),
                    "capacity_override": allow_capacity_override and bool(report.errors),
                },
                operation_id=operation_id,
            )
        except Exception:
            logger.exception("Audit log write failed after commit | operation=%s", operation_id)
            audit_logged = False

        return CommitResult(
            success=True,
            status=LogStatus.COMMITTED,
            message=f"Committed {len(records)} change(s)",
            operation_id=operation_id,
            updated_entity_ids=result.entity_ids(),
            warnings=report.warnings,
            audit_logged=audit_logged,
        )

    async def commit_staged(
        self,
        staged_ops: list[StagedOperation],
        actor: Actor,
        allow_capacity_override: bool = False,
    ) -> tuple[NetChangeResult, CommitResult]:
        """Preview and commit in one call, against one snapshot."""
        snapshot = await read_snapshot(self.store)
        result = compute_net_changes(staged_ops, snapshot)
        return result, await self.commit(result, actor, snapshot, allow_capacity_override)

    async def validate_rollback(self, operation_id: str) -> RollbackValidation:
        return await self.rollbacks.validate(operation_id)

    async def rollback(self, operation_id: str, actor: Actor) -> RollbackResult:
        """
        Roll back a committed operation.

        A partial rollback is reported as an unsuccessful result listing
        reverted and unreverted documents.
        """
        try:
            return await self.rollbacks.execute(operation_id, actor)
        except PartialRollbackFailure as e:
            return RollbackResult(
                success=False,
                message=str(e),
                operation_id=operation_id,
                rollback_operation_id=e.rollback_operation_id,
                reverted_docs=e.reverted_docs,
                unreverted_docs=e.unreverted_docs,
                conflicts=e.conflicts,
            )

    async def reconcile(self, bus_ids: Optional[list[str]] = None) -> dict[str, BusLoad]:
        return await reconcile(self.store, bus_ids)

    async def overloaded(self, bus_ids: Optional[list[str]] = None) -> list[OverloadInfo]:
        """Buses whose stored load exceeds capacity on a served shift."""
        snapshot = await read_snapshot(self.store, bus_ids=bus_ids, driver_ids=[], student_ids=[])
        return overloaded_buses(snapshot.buses)

    async def logs(
        self,
        log_type: Optional[ReassignmentType] = None,
        status: Optional[LogStatus] = None,
        actor_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ReassignmentLog]:
        return await self.audit.query(log_type, status, actor_id, limit, offset)

    async def get_log(self, operation_id: str) -> Optional[ReassignmentLog]:
        return await self.audit.get(operation_id)
