"""
Rollback of committed reassignments.

A rollback restores the `before` values of a committed log. It only
touches documents that still hold the log's `after` values: validation
blocks the whole rollback if any document changed since, and a document
that changes between validation and execution is left as-is and
reported.
"""

import logging
from typing import Optional

from .audit import AuditLog, LOGS_COLLECTION, new_operation_id
from .errors import NotFoundError, PartialRollbackFailure
from .models import (
    Actor,
    ChangeRecord,
    LogStatus,
    NetChange,
    ReassignmentLog,
    ReassignmentType,
    RollbackResult,
    RollbackValidation,
    utc_now,
)
from .store import Document, DocumentStore

logger = logging.getLogger(__name__)


def after_conflicts(diff: NetChange, document: Optional[Document]) -> list[str]:
    """Tracked fields of a stored document that no longer hold the recorded `after` value."""
    if document is None:
        return [f"{diff.collection}/{diff.entity_id}: document no longer exists"]
    return [m.describe() for m in diff.mismatches(document, expected="after")]


class RollbackManager:
    """
    Validates and executes rollbacks.

    Args:
        store: Document store holding the entities and the logs
        audit: Audit log the rollback is recorded in
    """

    def __init__(self, store: DocumentStore, audit: AuditLog):
        self.store = store
        self.audit = audit

    async def _load(self, operation_id: str) -> ReassignmentLog:
        log = await self.audit.get(operation_id)
        if log is None:
            raise NotFoundError(LOGS_COLLECTION, operation_id, f"Operation {operation_id} not found")
        return log

    async def validate(self, operation_id: str) -> RollbackValidation:
        """
        Check whether an operation can be rolled back.

        Raises:
            NotFoundError: If no log exists for the operation
        """
        log = await self._load(operation_id)

        if log.type == ReassignmentType.ROLLBACK:
            return RollbackValidation(
                operation_id=operation_id,
                can_rollback=False,
                conflicts=["Rollback operations cannot be rolled back"],
                log=log,
            )
        if log.status != LogStatus.COMMITTED:
            return RollbackValidation(
                operation_id=operation_id,
                can_rollback=False,
                conflicts=[f"Operation is {log.status.value}"],
                log=log,
            )

        conflicts: list[str] = []
        async with self.store.transaction() as tx:
            for change in log.changes:
                document = await tx.get(change.collection, change.doc_id)
                conflicts.extend(after_conflicts(change.to_diff(), document))

        return RollbackValidation(
            operation_id=operation_id,
            can_rollback=not conflicts,
            conflicts=conflicts,
            log=log,
        )

    async def execute(self, operation_id: str, actor: Actor) -> RollbackResult:
        """
        Roll back an operation in one transaction.

        Changes are reverted in reverse order. A rollback log is written
        with before/after swapped and the original log is marked
        rolled_back (or failed when some documents could not be reverted).

        Returns:
            RollbackResult; success is False when validation blocks it

        Raises:
            NotFoundError: If no log exists for the operation
            PartialRollbackFailure: If some documents were reverted and
                others were left as-is (the reverted ones stay committed)
        """
        validation = await self.validate(operation_id)
        if not validation.can_rollback:
            logger.warning(
                "Rollback blocked | operation=%s conflicts=%d",
                operation_id, len(validation.conflicts),
            )
            return RollbackResult(
                success=False,
                message="Rollback blocked: data changed since the operation was committed",
                operation_id=operation_id,
                conflicts=validation.conflicts,
            )

        log = validation.log
        rollback_id = new_operation_id(ReassignmentType.ROLLBACK)
        reverted: list[str] = []
        unreverted: list[str] = []
        conflicts: list[str] = []
        rollback_changes: list[ChangeRecord] = []
        updated_at = utc_now().isoformat()

        async with self.store.transaction() as tx:
            for change in reversed(log.changes):
                diff = change.to_diff()
                document = await tx.get(change.collection, change.doc_id)
                problems = after_conflicts(diff, document)
                if problems:
                    unreverted.append(change.doc_path)
                    conflicts.extend(problems)
                    continue

                restored = diff.revert(document)
                restored["updated_by"] = actor.id
                restored["updated_at"] = updated_at
                await tx.set(change.collection, change.doc_id, restored)
                reverted.append(change.doc_path)
                rollback_changes.append(diff.inverted().to_record())

            complete = not unreverted
            await self.audit.append(tx, ReassignmentLog(
                operation_id=rollback_id,
                type=ReassignmentType.ROLLBACK,
                actor_id=actor.id,
                actor_label=actor.display_label,
                status=LogStatus.COMMITTED if complete else LogStatus.FAILED,
                summary=f"Rollback of {operation_id} ({len(reverted)}/{len(log.changes)} documents)",
                changes=rollback_changes,
                meta={
                    "original_type": log.type.value,
                    "reverted_docs": reverted,
                    "unreverted_docs": unreverted,
                },
                rollback_of=operation_id,
            ))
            await self.audit.set_status(
                tx,
                operation_id,
                LogStatus.ROLLED_BACK if complete else LogStatus.FAILED,
                meta={"rollback_operation_id": rollback_id},
            )

        if not complete:
            logger.error(
                "Rollback partially failed | operation=%s reverted=%d unreverted=%d",
                operation_id, len(reverted), len(unreverted),
            )
            raise PartialRollbackFailure(operation_id, rollback_id, reverted, unreverted, conflicts)

        logger.info(
            "Rollback complete | operation=%s rollback=%s docs=%d",
            operation_id, rollback_id, len(reverted),
        )
        return RollbackResult(
            success=True,
            message=f"Rolled back {len(reverted)} document(s)",
            operation_id=operation_id,
            rollback_operation_id=rollback_id,
            reverted_docs=reverted,
            conflicts=conflicts,
        )
