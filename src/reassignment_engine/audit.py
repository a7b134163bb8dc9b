"""
Reassignment audit log.

Logs are append-only documents in the `reassignment_logs` collection.
Each operation type has a head pointer in `reassignment_log_heads`
holding the latest log id and version; a new log gets version
head + 1 and moves the pointer in the same transaction. Older logs of
the same type beyond the retention limit are purged with it. Rollback
logs are never purged.
"""

import logging
import time
from typing import Optional
from uuid import uuid4

from .models import (
    Actor,
    ChangeRecord,
    LogHead,
    LogStatus,
    NetChangeResult,
    ReassignmentLog,
    ReassignmentType,
)
from .store import DocumentStore, StoreTransaction

logger = logging.getLogger(__name__)

LOGS_COLLECTION = "reassignment_logs"
HEADS_COLLECTION = "reassignment_log_heads"

_TYPE_TITLES = {
    ReassignmentType.DRIVER: "Driver reassignment",
    ReassignmentType.STUDENT: "Student reassignment",
    ReassignmentType.ROUTE: "Route reassignment",
    ReassignmentType.ROLLBACK: "Rollback",
}


def new_operation_id(log_type: ReassignmentType) -> str:
    """Operation id such as "driver_reassignment_1718000000000_a1b2c3"."""
    return f"{log_type.value}_{int(time.time() * 1000)}_{uuid4().hex[:6]}"


def summarize(result: NetChangeResult) -> str:
    """One-line description of a committed change set."""
    title = _TYPE_TITLES.get(result.reassignment_type, "Reassignment")
    parts = [f"{row.entity_label}: {row.initial} → {row.final}" for row in result.confirmation_rows]
    if not parts:
        return f"{title}: no changes"
    return f"{title} ({len(parts)} change{'s' if len(parts) != 1 else ''}): " + "; ".join(parts)


class AuditLog:
    """
    Versioned audit log on a document store.

    Args:
        store: Document store shared with the committer
        retention_per_type: Non-rollback logs kept per operation type
    """

    def __init__(self, store: DocumentStore, retention_per_type: int = 1):
        if retention_per_type < 1:
            raise ValueError("retention_per_type must be at least 1")
        self.store = store
        self.retention_per_type = retention_per_type

    async def append(self, tx: StoreTransaction, log: ReassignmentLog) -> ReassignmentLog:
        """
        Write a log inside an open transaction.

        Assigns the next version for the log's type, moves the head pointer
        and purges superseded logs of the same type.

        Returns:
            The log as written (with its version)
        """
        head_doc = await tx.get(HEADS_COLLECTION, log.type.value)
        version = LogHead.model_validate(head_doc).version + 1 if head_doc else 1
        log = log.model_copy(update={"version": version})

        await tx.set(LOGS_COLLECTION, log.operation_id, log.model_dump(mode="json"))
        await tx.set(
            HEADS_COLLECTION,
            log.type.value,
            LogHead(type=log.type, operation_id=log.operation_id, version=version).model_dump(mode="json"),
        )

        if log.type != ReassignmentType.ROLLBACK:
            await self._purge(tx, log.type)
        return log

    async def _purge(self, tx: StoreTransaction, log_type: ReassignmentType) -> None:
        rows = await tx.query(LOGS_COLLECTION, where={"type": log_type.value})
        rows.sort(key=lambda row: row[1].get("version", 0), reverse=True)
        for doc_id, _ in rows[self.retention_per_type:]:
            await tx.delete(LOGS_COLLECTION, doc_id)
            logger.debug("Purged superseded log | operation=%s type=%s", doc_id, log_type.value)

    async def record_commit(
        self,
        log_type: ReassignmentType,
        actor: Actor,
        changes: list[ChangeRecord],
        summary: str = "",
        meta: Optional[dict] = None,
        operation_id: Optional[str] = None,
    ) -> ReassignmentLog:
        """
        Record a committed operation in its own transaction.

        Args:
            log_type: Operation type of the commit
            actor: Who committed
            changes: Written before/after records
            summary: Human-readable description
            meta: Extra context (staged operation ids, counts)
            operation_id: Id to use (generated if omitted)

        Returns:
            The stored log
        """
        log = ReassignmentLog(
            operation_id=operation_id or new_operation_id(log_type),
            type=log_type,
            actor_id=actor.id,
            actor_label=actor.display_label,
            status=LogStatus.COMMITTED,
            summary=summary,
            changes=changes,
            meta=meta or {},
        )
        async with self.store.transaction() as tx:
            log = await self.append(tx, log)
        logger.info(
            "Audit log written | operation=%s type=%s version=%d changes=%d",
            log.operation_id, log.type.value, log.version, len(changes),
        )
        return log

    async def set_status(
        self,
        tx: StoreTransaction,
        operation_id: str,
        status: LogStatus,
        meta: Optional[dict] = None,
    ) -> None:
        """Update a log's status (and merge meta) inside an open transaction."""
        document = await tx.get(LOGS_COLLECTION, operation_id)
        if document is None:
            return
        document["status"] = status.value
        if meta:
            document["meta"] = {**document.get("meta", {}), **meta}
        await tx.set(LOGS_COLLECTION, operation_id, document)

    async def get(self, operation_id: str) -> Optional[ReassignmentLog]:
        document = await self.store.get(LOGS_COLLECTION, operation_id)
        return ReassignmentLog.model_validate(document) if document else None

    async def latest(self, log_type: ReassignmentType) -> Optional[ReassignmentLog]:
        """Most recent log of a type, via its head pointer."""
        head_doc = await self.store.get(HEADS_COLLECTION, log_type.value)
        if head_doc is None:
            return None
        return await self.get(LogHead.model_validate(head_doc).operation_id)

    async def query(
        self,
        log_type: Optional[ReassignmentType] = None,
        status: Optional[LogStatus] = None,
        actor_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ReassignmentLog]:
        """
        List logs, newest first.

        Args:
            log_type: Filter by operation type
            status: Filter by status
            actor_id: Filter by actor
            limit: Page size
            offset: Page start

        Returns:
            Matching logs ordered by creation time, descending
        """
        where = {}
        if log_type:
            where["type"] = log_type.value
        if status:
            where["status"] = status.value
        if actor_id:
            where["actor_id"] = actor_id

        rows = await self.store.query(LOGS_COLLECTION, where=where or None)
        logs = [ReassignmentLog.model_validate(document) for _, document in rows]
        logs.sort(key=lambda log: (log.created_at, log.operation_id), reverse=True)
        return logs[offset:offset + limit]
