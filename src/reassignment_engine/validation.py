"""
Validation of computed net changes.

Checks a NetChangeResult against the snapshot it was computed from and
reports typed errors (which block a commit) and warnings (which do not).
Nothing here touches the store.
"""

import logging
from typing import Optional

from .capacity import capacity_excess, is_shift_compatible, stops_include
from .models import (
    BusDiff,
    Collection,
    DriverDiff,
    NetChangeResult,
    RuleViolation,
    Snapshot,
    Stop,
    StudentDiff,
    ValidationReport,
    ViolationKind,
)

logger = logging.getLogger(__name__)


def validate_rejected(result: NetChangeResult) -> list[RuleViolation]:
    """Operations that could not be replayed are errors."""
    return [
        RuleViolation(
            kind=r.kind,
            message=r.reason,
            collection=r.collection,
            entity_id=r.entity_id,
            operation_id=r.operation_id,
        )
        for r in result.rejected
    ]


def validate_duplicates(result: NetChangeResult) -> list[RuleViolation]:
    """Superseded operations are reported as warnings."""
    return [
        RuleViolation(
            kind=ViolationKind.VALIDATION,
            message=f"Operation {d.superseded_operation_id} superseded by {d.kept_operation_id}",
            operation_id=d.superseded_operation_id,
            details={"entity_key": d.entity_key},
        )
        for d in result.duplicates
    ]


def validate_single_type(result: NetChangeResult) -> Optional[RuleViolation]:
    """A commit carries one reassignment type so it maps onto one audit log."""
    if len(result.operation_types) <= 1:
        return None
    names = ", ".join(t.value for t in result.operation_types)
    return RuleViolation(
        kind=ViolationKind.VALIDATION,
        message=f"Cannot commit mixed operation types together: {names}",
        details={"types": [t.value for t in result.operation_types]},
    )


def validate_capacity(result: NetChangeResult, snapshot: Snapshot) -> list[RuleViolation]:
    """
    Per-shift seat limits.

    Only shifts whose count increases are checked, so unloading an already
    overloaded bus is always allowed.
    """
    errors = []
    for diff in result.changes:
        if not isinstance(diff, BusDiff):
            continue
        bus = snapshot.bus(diff.entity_id)
        for shift, count in capacity_excess(bus.capacity, bus.shift, diff.before.load, diff.after.load):
            errors.append(RuleViolation(
                kind=ViolationKind.CAPACITY,
                message=(
                    f"{bus.label} exceeds capacity for {shift.value} shift: "
                    f"{count}/{bus.capacity}"
                ),
                collection=Collection.BUSES.value,
                entity_id=bus.id,
                details={"shift": shift.value, "count": count, "capacity": bus.capacity},
            ))
    return errors


def _final_stops(result: NetChangeResult, snapshot: Snapshot, bus_id: str) -> list[Stop]:
    for diff in result.changes:
        if isinstance(diff, BusDiff) and diff.entity_id == bus_id:
            return diff.after.stops
    return snapshot.bus(bus_id).stops


def validate_student_placements(result: NetChangeResult, snapshot: Snapshot) -> list[RuleViolation]:
    """Moved students must ride a shift-compatible bus that serves their stop."""
    errors = []
    for diff in result.changes:
        if not isinstance(diff, StudentDiff) or diff.after.bus_id is None:
            continue
        student = snapshot.student(diff.entity_id)
        bus = snapshot.bus(diff.after.bus_id)
        if bus is None:
            errors.append(RuleViolation(
                kind=ViolationKind.NOT_FOUND,
                message=f"Bus {diff.after.bus_id} not found",
                collection=Collection.BUSES.value,
                entity_id=diff.after.bus_id,
            ))
            continue

        if diff.before.bus_id != diff.after.bus_id and not is_shift_compatible(student.shift, bus.shift):
            errors.append(RuleViolation(
                kind=ViolationKind.COMPATIBILITY,
                message=(
                    f"Student {student.id} ({student.shift.value}) cannot ride "
                    f"{bus.label} ({bus.shift.value})"
                ),
                collection=Collection.STUDENTS.value,
                entity_id=student.id,
                details={"student_shift": student.shift.value, "bus_shift": bus.shift.value},
            ))

        stop_id = diff.after.stop_id
        if stop_id and not stops_include(_final_stops(result, snapshot, bus.id), stop_id):
            errors.append(RuleViolation(
                kind=ViolationKind.COMPATIBILITY,
                message=f"{bus.label} does not serve stop {stop_id} of student {student.id}",
                collection=Collection.STUDENTS.value,
                entity_id=student.id,
                details={"stop_id": stop_id, "bus_id": bus.id},
            ))
    return errors


def validate_routes(result: NetChangeResult, snapshot: Snapshot) -> tuple[list[RuleViolation], list[RuleViolation]]:
    """
    Route existence (errors) and stranded riders (warnings).

    A student left on a rerouted bus whose stop the new route does not
    serve is a warning.
    """
    errors, warnings = [], []
    moved = {d.entity_id for d in result.changes if isinstance(d, StudentDiff)}

    for diff in result.changes:
        if not isinstance(diff, BusDiff) or diff.before.route_id == diff.after.route_id:
            continue
        if diff.after.route_id and snapshot.route(diff.after.route_id) is None:
            errors.append(RuleViolation(
                kind=ViolationKind.NOT_FOUND,
                message=f"Route {diff.after.route_id} not found",
                collection=Collection.ROUTES.value,
                entity_id=diff.after.route_id,
            ))
            continue
        for student in snapshot.students:
            if student.bus_id != diff.entity_id or student.id in moved or not student.is_active:
                continue
            if not stops_include(diff.after.stops, student.stop_id):
                warnings.append(RuleViolation(
                    kind=ViolationKind.COMPATIBILITY,
                    message=(
                        f"Student {student.id} stop {student.stop_id} is not served "
                        f"after rerouting {diff.label or diff.entity_id}"
                    ),
                    collection=Collection.STUDENTS.value,
                    entity_id=student.id,
                ))
    return errors, warnings


def validate_driver_uniqueness(result: NetChangeResult, snapshot: Snapshot) -> list[RuleViolation]:
    """After the change every bus has at most one driver."""
    final = {d.id: d.bus_id for d in snapshot.drivers}
    for diff in result.changes:
        if isinstance(diff, DriverDiff):
            final[diff.entity_id] = diff.after.bus_id

    by_bus: dict[str, list[str]] = {}
    for driver_id, bus_id in final.items():
        if bus_id:
            by_bus.setdefault(bus_id, []).append(driver_id)

    touched = {d.entity_id for d in result.changes if isinstance(d, (BusDiff, DriverDiff))}
    errors = []
    for bus_id in sorted(by_bus):
        drivers = sorted(by_bus[bus_id])
        if len(drivers) > 1 and (bus_id in touched or touched.intersection(drivers)):
            errors.append(RuleViolation(
                kind=ViolationKind.VALIDATION,
                message=f"Bus {bus_id} would have multiple drivers: {', '.join(drivers)}",
                collection=Collection.BUSES.value,
                entity_id=bus_id,
                details={"drivers": drivers},
            ))
    return errors


def validate_changes(result: NetChangeResult, snapshot: Snapshot) -> ValidationReport:
    """
    Validate a net-change result without side effects.

    Args:
        result: Output of compute_net_changes
        snapshot: The snapshot the result was computed from

    Returns:
        ValidationReport with errors and warnings

    Example:
        >>> report = validate_changes(result, snapshot)
        >>> if not report.valid:
        ...     for err in report.errors:
        ...         print(f"{err.kind.value}: {err.message}")
    """
    errors: list[RuleViolation] = []
    warnings: list[RuleViolation] = []

    errors.extend(validate_rejected(result))
    warnings.extend(validate_duplicates(result))

    mixed = validate_single_type(result)
    if mixed:
        errors.append(mixed)

    errors.extend(validate_capacity(result, snapshot))
    errors.extend(validate_student_placements(result, snapshot))

    route_errors, route_warnings = validate_routes(result, snapshot)
    errors.extend(route_errors)
    warnings.extend(route_warnings)

    errors.extend(validate_driver_uniqueness(result, snapshot))

    logger.info(
        "Validated net changes | changes=%d errors=%d warnings=%d",
        len(result.changes), len(errors), len(warnings),
    )
    return ValidationReport(errors=errors, warnings=warnings)
