"""
SQLAlchemy-backed document store.

Documents live in one table keyed by (collection, doc_id). Each
transaction is one AsyncSession transaction; rows read inside it are
locked with SELECT ... FOR UPDATE where the dialect supports it, and the
version column is bumped on every write.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .models import utc_now
from .store import Document, DocumentStore, StoreTransaction, matches

logger = logging.getLogger(__name__)

metadata = sa.MetaData()

documents = sa.Table(
    "documents",
    metadata,
    sa.Column("collection", sa.String(64), primary_key=True),
    sa.Column("doc_id", sa.String(255), primary_key=True),
    sa.Column("data", sa.JSON().with_variant(JSONB(), "postgresql"), nullable=False),
    sa.Column("version", sa.Integer, nullable=False, default=1),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
)


class _SqlTransaction(StoreTransaction):
    def __init__(self, session: AsyncSession):
        self._session = session

    def _key(self, collection: str, doc_id: str):
        return sa.and_(documents.c.collection == collection, documents.c.doc_id == doc_id)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        result = await self._session.execute(
            sa.select(documents.c.data)
            .where(self._key(collection, doc_id))
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        result = await self._session.execute(
            sa.update(documents)
            .where(self._key(collection, doc_id))
            .values(data=data, version=documents.c.version + 1, updated_at=utc_now())
        )
        if result.rowcount == 0:
            await self._session.execute(
                sa.insert(documents).values(
                    collection=collection,
                    doc_id=doc_id,
                    data=data,
                    version=1,
                    updated_at=utc_now(),
                )
            )

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._session.execute(
            sa.delete(documents).where(self._key(collection, doc_id))
        )

    async def query(
        self,
        collection: str,
        where: Optional[dict[str, Any]] = None,
    ) -> list[tuple[str, Document]]:
        result = await self._session.execute(
            sa.select(documents.c.doc_id, documents.c.data)
            .where(documents.c.collection == collection)
            .order_by(documents.c.doc_id)
        )
        return [(row.doc_id, row.data) for row in result if matches(row.data, where)]


class SqlDocumentStore(DocumentStore):
    """
    Document store on a SQLAlchemy async engine.

    Args:
        engine: Async engine (asyncpg in production, aiosqlite in tests)
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        async with self._session_factory() as session:
            async with session.begin():
                yield _SqlTransaction(session)

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(sa.text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError):
            logger.warning("Document store unreachable", exc_info=True)
            return False

    async def create_schema(self) -> None:
        """Create the documents table if missing (dev and tests; production uses alembic)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
