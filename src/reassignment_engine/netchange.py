"""
Net-change computer.

Collapses an ordered list of staged operations into the minimal set of
document changes against a snapshot. Pure: the same operations and
snapshot always produce the same result.
"""

import logging
from typing import Optional

from .errors import NotFoundError
from .models import (
    Bus,
    BusDiff,
    BusState,
    Collection,
    ConfirmationRow,
    DriverDiff,
    DriverState,
    DuplicateOperation,
    EntityKind,
    NetChangeResult,
    OperationType,
    RejectedOperation,
    RemovedNoOp,
    ReassignmentType,
    RouteImpact,
    Snapshot,
    StagedOperation,
    StudentDiff,
    StudentState,
    ViolationKind,
    natural_key,
)
from .operations import WorkingState, apply_operation, same_route

logger = logging.getLogger(__name__)

RESERVED_POOL = "Reserved Pool"
_COLLECTION_ORDER = {
    Collection.BUSES.value: 0,
    Collection.DRIVERS.value: 1,
    Collection.STUDENTS.value: 2,
}


def entity_keys(op: StagedOperation) -> list[str]:
    """
    Collapse keys of an operation.

    Swaps have no key of their own; they are never collapsed.
    """
    if op.type == OperationType.ROUTE_REASSIGN:
        return [f"bus-route:{op.target_ids[0]}"]
    if op.type == OperationType.SWAP:
        return []
    if op.entity == EntityKind.STUDENT:
        return [f"student:{sid}" for sid in op.target_ids]
    return [f"driver:{op.target_ids[0]}"]


def collapse_operations(
    staged_ops: list[StagedOperation],
) -> tuple[list[StagedOperation], list[DuplicateOperation]]:
    """
    Keep only the last operation per entity key.

    Student assigns are split into one operation per student first. A swap
    is kept in place and clears the keys of both its drivers, so operations
    on either side of it never supersede each other.

    Returns:
        Tuple of (collapsed operations in staged order, superseded operations)
    """
    expanded: list[StagedOperation] = []
    for op in staged_ops:
        if op.entity == EntityKind.STUDENT and len(op.target_ids) > 1:
            expanded.extend(op.model_copy(update={"target_ids": [sid]}) for sid in op.target_ids)
        else:
            expanded.append(op)

    kept: list[Optional[StagedOperation]] = []
    last_index: dict[str, int] = {}
    duplicates: list[DuplicateOperation] = []

    for op in expanded:
        if op.type == OperationType.SWAP:
            for driver_id in op.target_ids:
                last_index.pop(f"driver:{driver_id}", None)
            kept.append(op)
            continue

        key = entity_keys(op)[0]
        if key in last_index:
            superseded = kept[last_index[key]]
            kept[last_index[key]] = None
            duplicates.append(DuplicateOperation(
                entity_key=key,
                superseded_operation_id=superseded.id,
                kept_operation_id=op.id,
            ))
        last_index[key] = len(kept)
        kept.append(op)

    return [op for op in kept if op is not None], duplicates


# --- State extraction ---

def _snapshot_entity(snapshot: Snapshot, collection: str, entity_id: str):
    if collection == Collection.BUSES.value:
        return snapshot.bus(entity_id)
    if collection == Collection.DRIVERS.value:
        return snapshot.driver(entity_id)
    return snapshot.student(entity_id)


def _bus_states(snapshot: Snapshot, state: WorkingState, bus: Bus) -> tuple[BusState, BusState]:
    before = BusState(
        assigned_driver_id=bus.assigned_driver_id,
        route_id=bus.route_id,
        stops=bus.stops,
        load=bus.load,
    )
    after = BusState(
        assigned_driver_id=state.bus_driver.get(bus.id),
        route_id=state.bus_route.get(bus.id),
        stops=state.bus_stops.get(bus.id, bus.stops),
        load=state.bus_load.get(bus.id, bus.load),
    )
    return before, after


def _driver_states(
    snapshot: Snapshot, state: WorkingState, driver_id: str
) -> tuple[DriverState, DriverState]:
    driver = snapshot.driver(driver_id)
    before = DriverState(bus_id=driver.bus_id, route_id=driver.route_id, reserved=driver.reserved)

    final_bus = state.driver_bus.get(driver_id)
    final_route = state.bus_route.get(final_bus) if final_bus else None
    if final_bus == driver.bus_id and same_route(snapshot, driver.route_id, final_route):
        final_route = driver.route_id
    after = DriverState(bus_id=final_bus, route_id=final_route, reserved=final_bus is None)
    return before, after


def _student_states(
    snapshot: Snapshot, state: WorkingState, student_id: str
) -> tuple[StudentState, StudentState]:
    student = snapshot.student(student_id)
    before = StudentState(bus_id=student.bus_id, route_id=student.route_id, stop_id=student.stop_id)
    after = StudentState(
        bus_id=state.student_bus.get(student_id),
        route_id=state.student_route.get(student_id),
        stop_id=state.student_stop.get(student_id),
    )
    return before, after


def _no_op_reason(snapshot: Snapshot, collection: str, entity_id: str, op_type: OperationType) -> str:
    if collection == Collection.DRIVERS.value:
        label = f"Driver {snapshot.driver(entity_id).label}"
    elif collection == Collection.BUSES.value:
        label = snapshot.bus(entity_id).label
    else:
        label = f"Student {entity_id}"

    if op_type == OperationType.ROUTE_REASSIGN:
        return f"{label}: no net change (same route)"
    return f"{label}: no net change (returned to original assignment)"


# --- Confirmation rows ---

def _bus_label(snapshot: Snapshot, bus_id: Optional[str]) -> str:
    if not bus_id:
        return RESERVED_POOL
    bus = snapshot.bus(bus_id)
    return bus.label if bus else bus_id


def _operator_text(snapshot: Snapshot, driver_id: Optional[str]) -> str:
    if not driver_id:
        return "No operator (Vacant)"
    driver = snapshot.driver(driver_id)
    return f"Operated by {driver.label if driver else driver_id}"


def _route_name(snapshot: Snapshot, route_id: Optional[str]) -> str:
    route = snapshot.route(route_id)
    if route is not None:
        return route.label
    return route_id or "No route"


def _impact_text(impacts: dict[str, RouteImpact], route_id: Optional[str], name: str) -> str:
    impact = impacts.get(route_id or "")
    if impact is None or impact.change == 0:
        return "None"
    sign = "+" if impact.change > 0 else ""
    noun = "bus" if abs(impact.change) == 1 else "buses"
    return (
        f"{name}: {sign}{impact.change} {noun} "
        f"(was {impact.previous_bus_count} → will be {impact.new_bus_count})"
    )


def _bus_row(
    snapshot: Snapshot,
    state: WorkingState,
    diff: BusDiff,
    impacts: dict[str, RouteImpact],
) -> tuple[str, ConfirmationRow]:
    bus = snapshot.bus(diff.entity_id)
    before, after = diff.before, diff.after
    initial: list[str] = []
    final: list[str] = []
    impact: list[str] = []
    info: list[str] = []

    if before.assigned_driver_id != after.assigned_driver_id:
        initial.append(_operator_text(snapshot, before.assigned_driver_id))
        final.append(_operator_text(snapshot, after.assigned_driver_id))
        previous_driver = snapshot.driver(before.assigned_driver_id)
        next_driver = snapshot.driver(after.assigned_driver_id)
        if previous_driver:
            destination = _bus_label(snapshot, state.driver_bus.get(previous_driver.id))
            impact.append(f"{bus.label} → {destination}")
            info.append(f"{previous_driver.name or previous_driver.id} moves to {destination}")
        if next_driver:
            origin = _bus_label(snapshot, next_driver.bus_id)
            impact.append(f"{origin} → {bus.label}")
    if not same_route(snapshot, before.route_id, after.route_id):
        old_name = _route_name(snapshot, before.route_id)
        new_name = _route_name(snapshot, after.route_id)
        initial.append(f"Route: {old_name}")
        final.append(f"Route: {new_name}")
        impact.append(_impact_text(impacts, snapshot.canonical_route_id(after.route_id), new_name))
        info.append(f"{bus.label} will serve {len(after.stops)} stops on {new_name}")
    if before.load != after.load:
        initial.append(f"Load M/E: {before.load.morning_count}/{before.load.evening_count}")
        final.append(f"Load M/E: {after.load.morning_count}/{after.load.evening_count}")

    new_driver = snapshot.driver(after.assigned_driver_id)
    sort_code = new_driver.employee_code if new_driver and new_driver.employee_code else bus.bus_number
    row = ConfirmationRow(
        sl_no=0,
        collection=diff.collection,
        entity_id=diff.entity_id,
        entity_label=bus.label,
        initial="; ".join(initial) or "-",
        final="; ".join(final) or "-",
        impact="; ".join(impact),
        info=". ".join(info),
    )
    return sort_code, row


def _driver_row(snapshot: Snapshot, diff: DriverDiff) -> tuple[str, ConfirmationRow]:
    driver = snapshot.driver(diff.entity_id)
    return driver.employee_code or driver.id, ConfirmationRow(
        sl_no=0,
        collection=diff.collection,
        entity_id=diff.entity_id,
        entity_label=driver.label,
        initial=_bus_label(snapshot, diff.before.bus_id),
        final=_bus_label(snapshot, diff.after.bus_id),
        impact=f"{_bus_label(snapshot, diff.before.bus_id)} → {_bus_label(snapshot, diff.after.bus_id)}",
    )


def _student_row(snapshot: Snapshot, diff: StudentDiff) -> tuple[str, ConfirmationRow]:
    student = snapshot.student(diff.entity_id)
    info = ""
    if diff.before.stop_id != diff.after.stop_id:
        info = f"Stop changes from {diff.before.stop_id} to {diff.after.stop_id}"
    return student.id, ConfirmationRow(
        sl_no=0,
        collection=diff.collection,
        entity_id=diff.entity_id,
        entity_label=student.name or student.id,
        initial=_bus_label(snapshot, diff.before.bus_id),
        final=_bus_label(snapshot, diff.after.bus_id),
        impact=f"{student.shift.value} shift",
        info=info,
    )


def compute_route_impacts(snapshot: Snapshot, state: WorkingState) -> list[RouteImpact]:
    """Bus count per route before and after, for routes whose count changes."""
    previous: dict[str, int] = {}
    current: dict[str, int] = {}
    for bus in snapshot.buses:
        before = snapshot.canonical_route_id(bus.route_id)
        after = snapshot.canonical_route_id(state.bus_route.get(bus.id))
        if before:
            previous[before] = previous.get(before, 0) + 1
        if after:
            current[after] = current.get(after, 0) + 1

    impacts = []
    for route_id in sorted(set(previous) | set(current)):
        if previous.get(route_id, 0) == current.get(route_id, 0):
            continue
        impacts.append(RouteImpact(
            route_id=route_id,
            route_name=_route_name(snapshot, route_id),
            previous_bus_count=previous.get(route_id, 0),
            new_bus_count=current.get(route_id, 0),
        ))
    return impacts


def compute_net_changes(
    staged_ops: list[StagedOperation],
    snapshot: Snapshot,
) -> NetChangeResult:
    """
    Compute the minimal set of document changes for a staged session.

    Args:
        staged_ops: Operations in staging order
        snapshot: Current state of the affected records

    Returns:
        NetChangeResult with typed diffs, no-ops, duplicates, rejected
        operations, route impacts and review rows

    Example:
        >>> result = compute_net_changes([
        ...     StagedOperation.assign_driver("drv_a", "bus_2"),
        ...     StagedOperation.assign_driver("drv_a", "bus_1"),
        ... ], snapshot)
        >>> result.has_changes
        False
    """
    collapsed, duplicates = collapse_operations(staged_ops)
    logger.debug(
        "Collapsed staged operations | staged=%d collapsed=%d duplicates=%d",
        len(staged_ops), len(collapsed), len(duplicates),
    )

    state = WorkingState.from_snapshot(snapshot)
    rejected: list[RejectedOperation] = []
    for op in collapsed:
        try:
            state = apply_operation(state, op, snapshot)
        except NotFoundError as e:
            rejected.append(RejectedOperation(
                operation_id=op.id,
                kind=ViolationKind.NOT_FOUND,
                reason=str(e),
                collection=e.collection,
                entity_id=e.entity_id,
            ))

    changes = []
    removed: list[RemovedNoOp] = []
    outside: list[str] = []
    paths = sorted(
        state.touched,
        key=lambda p: (_COLLECTION_ORDER[p.split("/", 1)[0]], p.split("/", 1)[1]),
    )
    for path in paths:
        collection, entity_id = path.split("/", 1)
        if _snapshot_entity(snapshot, collection, entity_id) is None:
            # previous bus or evicted driver that was not read, or a dangling reference
            outside.append(path)
            continue

        if collection == Collection.BUSES.value:
            before, after = _bus_states(snapshot, state, snapshot.bus(entity_id))
            diff = BusDiff(entity_id=entity_id, label=snapshot.bus(entity_id).label,
                           before=before, after=after)
        elif collection == Collection.DRIVERS.value:
            before, after = _driver_states(snapshot, state, entity_id)
            diff = DriverDiff(entity_id=entity_id, label=snapshot.driver(entity_id).label,
                              before=before, after=after)
        else:
            before, after = _student_states(snapshot, state, entity_id)
            diff = StudentDiff(entity_id=entity_id, label=snapshot.student(entity_id).name,
                               before=before, after=after)

        if before == after:
            removed.append(RemovedNoOp(
                collection=collection,
                entity_id=entity_id,
                reason=_no_op_reason(snapshot, collection, entity_id, state.touched[path]),
            ))
        else:
            changes.append(diff)

    route_impacts = compute_route_impacts(snapshot, state)
    impacts_by_route = {impact.route_id: impact for impact in route_impacts}

    keyed_rows = []
    for diff in changes:
        if isinstance(diff, BusDiff):
            code, row = _bus_row(snapshot, state, diff, impacts_by_route)
        elif isinstance(diff, DriverDiff):
            code, row = _driver_row(snapshot, diff)
        else:
            code, row = _student_row(snapshot, diff)
        keyed_rows.append(((natural_key(code), _COLLECTION_ORDER[diff.collection], diff.entity_id), row))
    keyed_rows.sort(key=lambda pair: pair[0])
    rows = [row.model_copy(update={"sl_no": n}) for n, (_, row) in enumerate(keyed_rows, start=1)]

    types = {op.reassignment_type for op in staged_ops}
    operation_types = [t for t in ReassignmentType if t in types]

    if outside:
        logger.warning("Skipped documents outside snapshot | paths=%s", ",".join(outside))
    logger.info(
        "Computed net changes | staged=%d changes=%d no_ops=%d rejected=%d",
        len(staged_ops), len(changes), len(removed), len(rejected),
    )

    return NetChangeResult(
        changes=changes,
        confirmation_rows=rows,
        removed_no_ops=removed,
        duplicates=duplicates,
        rejected=rejected,
        outside_snapshot=outside,
        route_impacts=route_impacts,
        operation_types=operation_types,
        staged_operations=list(staged_ops),
    )
