"""
Document store interface.

The engine reads and writes JSON documents addressed by
(collection, doc_id). Every write happens inside a transaction: either
all writes of a transaction become visible or none do.

Implementations:
    MemoryDocumentStore  - in-process store (tests, single worker)
    SqlDocumentStore     - SQLAlchemy async store (see sql_store.py)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from copy import deepcopy
from typing import Any, AsyncIterator, Optional

logger = logging.getLogger(__name__)

Document = dict[str, Any]


class StoreTransaction(ABC):
    """Reads and buffered writes of one transaction."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """
        Read a document.

        Writes made earlier in the same transaction are visible.

        Returns:
            A copy of the document, or None if it does not exist
        """

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        """Create or replace a document."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document (no error if missing)."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        where: Optional[dict[str, Any]] = None,
    ) -> list[tuple[str, Document]]:
        """
        List documents of a collection, ordered by doc_id.

        Args:
            collection: Collection name
            where: Optional field equality filter

        Returns:
            List of (doc_id, document) pairs
        """


class DocumentStore(ABC):
    """A transactional document store."""

    @abstractmethod
    def transaction(self) -> Any:
        """
        Open a transaction.

        Usage:
            async with store.transaction() as tx:
                doc = await tx.get("buses", "bus_1")
                await tx.set("buses", "bus_1", {...})

        Raising inside the block discards every buffered write.
        """

    @abstractmethod
    async def ping(self) -> bool:
        """Check that the backend is reachable."""

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        async with self.transaction() as tx:
            return await tx.get(collection, doc_id)

    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        async with self.transaction() as tx:
            await tx.set(collection, doc_id, data)

    async def query(
        self,
        collection: str,
        where: Optional[dict[str, Any]] = None,
    ) -> list[tuple[str, Document]]:
        async with self.transaction() as tx:
            return await tx.query(collection, where)


def matches(document: Document, where: Optional[dict[str, Any]]) -> bool:
    if not where:
        return True
    return all(document.get(field) == value for field, value in where.items())


class _MemoryTransaction(StoreTransaction):
    """Overlay of pending writes on top of the committed documents."""

    _DELETED = object()

    def __init__(self, committed: dict[str, dict[str, Document]]):
        self._committed = committed
        self._pending: dict[tuple[str, str], Any] = {}

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        key = (collection, doc_id)
        if key in self._pending:
            pending = self._pending[key]
            return None if pending is self._DELETED else deepcopy(pending)
        document = self._committed.get(collection, {}).get(doc_id)
        return deepcopy(document) if document is not None else None

    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        self._pending[(collection, doc_id)] = deepcopy(data)

    async def delete(self, collection: str, doc_id: str) -> None:
        self._pending[(collection, doc_id)] = self._DELETED

    async def query(
        self,
        collection: str,
        where: Optional[dict[str, Any]] = None,
    ) -> list[tuple[str, Document]]:
        doc_ids = set(self._committed.get(collection, {}))
        doc_ids.update(d for (c, d) in self._pending if c == collection)

        results = []
        for doc_id in sorted(doc_ids):
            document = await self.get(collection, doc_id)
            if document is not None and matches(document, where):
                results.append((doc_id, document))
        return results

    def apply(self) -> int:
        for (collection, doc_id), data in self._pending.items():
            documents = self._committed.setdefault(collection, {})
            if data is self._DELETED:
                documents.pop(doc_id, None)
            else:
                documents[doc_id] = data
        return len(self._pending)


class MemoryDocumentStore(DocumentStore):
    """
    In-process document store.

    Transactions are serialised by a lock, so a transaction always sees a
    consistent state and its writes land together on exit.
    """

    def __init__(self, documents: Optional[dict[str, dict[str, Document]]] = None):
        self._documents: dict[str, dict[str, Document]] = deepcopy(documents or {})
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        async with self._lock:
            tx = _MemoryTransaction(self._documents)
            yield tx
            written = tx.apply()
            if written:
                logger.debug("Memory transaction committed | writes=%d", written)

    async def ping(self) -> bool:
        return True

    def dump(self) -> dict[str, dict[str, Document]]:
        """Copy of every committed document."""
        return deepcopy(self._documents)
