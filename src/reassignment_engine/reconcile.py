"""
Load counter reconciliation.

Recomputes each bus's per-shift counters from its active students and
overwrites the counters that drifted. Idempotent: a second run writes
nothing.
"""

import logging
from typing import Optional

from .capacity import check_overload
from .models import BusLoad, BusShift, Collection, StudentShift, StudentStatus, utc_now
from .store import DocumentStore

logger = logging.getLogger(__name__)


async def reconcile(
    store: DocumentStore,
    bus_ids: Optional[list[str]] = None,
) -> dict[str, BusLoad]:
    """
    Recount bus loads from active students.

    Students reference their bus by document id or by bus number; both are
    counted.

    Args:
        store: Document store
        bus_ids: Buses to reconcile (all buses if omitted)

    Returns:
        Mapping of bus id to its reconciled load
    """
    async with store.transaction() as tx:
        buses = await tx.query(Collection.BUSES.value)
        if bus_ids is not None:
            wanted = set(bus_ids)
            buses = [(bus_id, doc) for bus_id, doc in buses if bus_id in wanted]

        by_number = {doc.get("bus_number"): bus_id for bus_id, doc in buses if doc.get("bus_number")}
        counts = {bus_id: {StudentShift.MORNING: 0, StudentShift.EVENING: 0} for bus_id, _ in buses}

        students = await tx.query(
            Collection.STUDENTS.value, where={"status": StudentStatus.ACTIVE.value}
        )
        for _, student in students:
            reference = student.get("bus_id")
            bus_id = reference if reference in counts else by_number.get(reference)
            if bus_id is None:
                continue
            shift = StudentShift(student.get("shift") or StudentShift.MORNING.value)
            counts[bus_id][shift] += 1

        loads: dict[str, BusLoad] = {}
        updated = 0
        for bus_id, document in buses:
            load = BusLoad(
                morning_count=counts[bus_id][StudentShift.MORNING],
                evening_count=counts[bus_id][StudentShift.EVENING],
            )
            loads[bus_id] = load
            stored = BusLoad.model_validate(document.get("load") or {})
            if stored != load:
                await tx.set(Collection.BUSES.value, bus_id, {
                    **document,
                    "load": load.model_dump(mode="json"),
                    "updated_at": utc_now().isoformat(),
                })
                updated += 1
                logger.info(
                    "Bus load corrected | bus=%s morning=%d->%d evening=%d->%d",
                    bus_id, stored.morning_count, load.morning_count,
                    stored.evening_count, load.evening_count,
                )

            capacity = document.get("capacity") or 0
            if capacity > 0:
                shift = BusShift(document.get("shift") or BusShift.BOTH.value)
                overload = check_overload(bus_id, capacity, shift, load)
                if overload is not None:
                    logger.warning(
                        "Bus over capacity after reconcile | bus=%s shift=%s count=%d capacity=%d",
                        bus_id, overload.reason, overload.count, capacity,
                    )

    logger.info("Reconciled bus loads | buses=%d updated=%d", len(loads), updated)
    return loads
