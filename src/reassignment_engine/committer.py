"""
Transactional committer.

Writes a set of net changes in exactly one store transaction, guarded by
an optimistic-concurrency check: every touched document must still hold
the `before` values the diff was computed from.
"""

import logging
from typing import Optional

from .errors import ConflictError, NotFoundError
from .models import ChangeRecord, FieldMismatch, NetChange, utc_now
from .store import DocumentStore

logger = logging.getLogger(__name__)


class TransactionalCommitter:
    """
    Commits net changes atomically.

    Args:
        store: Document store to write to
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def commit(
        self,
        changes: list[NetChange],
        actor_id: Optional[str] = None,
    ) -> list[ChangeRecord]:
        """
        Apply changes if nothing moved underneath them.

        Args:
            changes: Diffs produced by the net-change computer
            actor_id: Recorded as updated_by on every written document

        Returns:
            ChangeRecords of the written documents, in input order

        Raises:
            NotFoundError: If a touched document no longer exists
            ConflictError: If any tracked field differs from `before`;
                the transaction is aborted and nothing is written
        """
        if not changes:
            return []

        async with self.store.transaction() as tx:
            current = {}
            mismatches: list[FieldMismatch] = []
            for diff in changes:
                document = await tx.get(diff.collection, diff.entity_id)
                if document is None:
                    raise NotFoundError(diff.collection, diff.entity_id)
                mismatches.extend(diff.mismatches(document, expected="before"))
                current[(diff.collection, diff.entity_id)] = document

            if mismatches:
                logger.warning(
                    "Commit aborted on conflict | docs=%d first=%s",
                    len({(m.collection, m.entity_id) for m in mismatches}),
                    mismatches[0].describe(),
                )
                raise ConflictError(mismatches)

            updated_at = utc_now().isoformat()
            records = []
            for diff in changes:
                document = diff.apply(current[(diff.collection, diff.entity_id)])
                document["updated_by"] = actor_id
                document["updated_at"] = updated_at
                await tx.set(diff.collection, diff.entity_id, document)
                records.append(diff.to_record())

        logger.info("Changes committed | docs=%d actor=%s", len(records), actor_id)
        return records
