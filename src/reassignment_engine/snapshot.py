"""
Snapshot reader.

Converts between stored documents and transport records, and reads a
consistent Snapshot in a single transaction.
"""

import logging
from typing import Optional

from pydantic import BaseModel

from .errors import NotFoundError
from .models import Bus, Collection, Driver, Route, Snapshot, Student
from .store import Document, DocumentStore, StoreTransaction

logger = logging.getLogger(__name__)

RECORD_TYPES: dict[Collection, type[BaseModel]] = {
    Collection.BUSES: Bus,
    Collection.DRIVERS: Driver,
    Collection.ROUTES: Route,
    Collection.STUDENTS: Student,
}


def to_record(collection: Collection, doc_id: str, document: Document) -> BaseModel:
    """Build a record from a stored document; the doc id becomes `id`."""
    return RECORD_TYPES[collection].model_validate({**document, "id": doc_id})


def to_document(record: BaseModel) -> Document:
    """Plain JSON document for a record, without its id."""
    return record.model_dump(mode="json", exclude={"id"})


async def _read_collection(
    tx: StoreTransaction,
    collection: Collection,
    ids: Optional[list[str]],
) -> list:
    if ids is None:
        rows = await tx.query(collection.value)
    else:
        rows = []
        for doc_id in sorted(set(ids)):
            document = await tx.get(collection.value, doc_id)
            if document is not None:
                rows.append((doc_id, document))
    return [to_record(collection, doc_id, document) for doc_id, document in rows]


async def read_snapshot(
    store: DocumentStore,
    bus_ids: Optional[list[str]] = None,
    driver_ids: Optional[list[str]] = None,
    student_ids: Optional[list[str]] = None,
) -> Snapshot:
    """
    Read the records a reassignment session needs.

    Omitted id lists read the whole collection. Routes are always read in
    full so aliases can be resolved. Missing ids are skipped; the
    net-change computer rejects operations that target them and leaves
    other documents outside the snapshot unchanged.

    Args:
        store: Document store
        bus_ids: Buses to read
        driver_ids: Drivers to read
        student_ids: Students to read

    Returns:
        Snapshot taken inside one transaction
    """
    async with store.transaction() as tx:
        snapshot = Snapshot(
            buses=await _read_collection(tx, Collection.BUSES, bus_ids),
            drivers=await _read_collection(tx, Collection.DRIVERS, driver_ids),
            routes=await _read_collection(tx, Collection.ROUTES, None),
            students=await _read_collection(tx, Collection.STUDENTS, student_ids),
        )
    logger.debug(
        "Read snapshot | buses=%d drivers=%d routes=%d students=%d",
        len(snapshot.buses), len(snapshot.drivers), len(snapshot.routes), len(snapshot.students),
    )
    return snapshot


async def read_entity(store: DocumentStore, collection: Collection, doc_id: str) -> Document:
    """
    Read one document.

    Raises:
        NotFoundError: If the document does not exist
    """
    document = await store.get(collection.value, doc_id)
    if document is None:
        raise NotFoundError(collection.value, doc_id)
    return document


async def save_snapshot(store: DocumentStore, snapshot: Snapshot) -> None:
    """Write every record of a snapshot (seeding and imports)."""
    async with store.transaction() as tx:
        for collection, records in (
            (Collection.ROUTES, snapshot.routes),
            (Collection.BUSES, snapshot.buses),
            (Collection.DRIVERS, snapshot.drivers),
            (Collection.STUDENTS, snapshot.students),
        ):
            for record in records:
                await tx.set(collection.value, record.id, to_document(record))
