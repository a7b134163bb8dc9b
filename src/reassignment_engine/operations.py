"""
Staged operation handlers.

Each operation is implemented as a pure function that takes the current
working state and returns a new one. The input state is never mutated;
an operation that references an unknown entity raises NotFoundError
before anything is copied.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import NotFoundError
from .models import (
    BusLoad,
    Collection,
    EntityKind,
    OperationType,
    Snapshot,
    StagedOperation,
    Stop,
)


class WorkingState(BaseModel):
    """
    Assignment maps replayed by the net-change computer.

    `touched` maps a document path ("drivers/drv_1") to the last operation
    type that touched it; only touched documents are diffed.
    """

    model_config = ConfigDict(frozen=True)

    driver_bus: dict[str, Optional[str]] = Field(default_factory=dict)
    bus_driver: dict[str, Optional[str]] = Field(default_factory=dict)
    bus_route: dict[str, Optional[str]] = Field(default_factory=dict)
    bus_stops: dict[str, list[Stop]] = Field(default_factory=dict)
    bus_load: dict[str, BusLoad] = Field(default_factory=dict)
    student_bus: dict[str, Optional[str]] = Field(default_factory=dict)
    student_route: dict[str, Optional[str]] = Field(default_factory=dict)
    student_stop: dict[str, Optional[str]] = Field(default_factory=dict)
    touched: dict[str, OperationType] = Field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "WorkingState":
        """Initial maps as stored."""
        return cls(
            driver_bus={d.id: d.bus_id for d in snapshot.drivers},
            bus_driver={b.id: b.assigned_driver_id for b in snapshot.buses},
            bus_route={b.id: b.route_id for b in snapshot.buses},
            bus_stops={b.id: list(b.stops) for b in snapshot.buses},
            bus_load={b.id: b.load for b in snapshot.buses},
            student_bus={s.id: s.bus_id for s in snapshot.students},
            student_route={s.id: s.route_id for s in snapshot.students},
            student_stop={s.id: s.stop_id for s in snapshot.students},
        )


def _touch(
    touched: dict[str, OperationType],
    op_type: OperationType,
    collection: Collection,
    *entity_ids: Optional[str],
) -> None:
    for entity_id in entity_ids:
        if entity_id:
            touched[f"{collection.value}/{entity_id}"] = op_type


def same_route(snapshot: Snapshot, a: Optional[str], b: Optional[str]) -> bool:
    """Compare two route references after alias resolution."""
    return snapshot.canonical_route_id(a) == snapshot.canonical_route_id(b)


def _require_driver(snapshot: Snapshot, driver_id: str) -> None:
    if snapshot.driver(driver_id) is None:
        raise NotFoundError(Collection.DRIVERS.value, driver_id, f"Driver {driver_id} not found")


def _require_bus(snapshot: Snapshot, bus_id: Optional[str]) -> None:
    if snapshot.bus(bus_id) is None:
        raise NotFoundError(Collection.BUSES.value, bus_id or "", f"Bus {bus_id} not found")


# --- Operation Handlers ---

def apply_assign_driver(
    state: WorkingState,
    op: StagedOperation,
    snapshot: Snapshot,
) -> WorkingState:
    """
    Put a driver on a bus.

    The driver's previous bus becomes driverless and the bus's current
    occupant (if another driver) is moved to reserve.
    """
    driver_id = op.target_ids[0]
    _require_driver(snapshot, driver_id)
    _require_bus(snapshot, op.bus_id)

    driver_bus = dict(state.driver_bus)
    bus_driver = dict(state.bus_driver)
    touched = dict(state.touched)

    previous_bus = driver_bus.get(driver_id)
    occupant = bus_driver.get(op.bus_id)

    if occupant and occupant != driver_id:
        driver_bus[occupant] = None
    if previous_bus and previous_bus != op.bus_id:
        bus_driver[previous_bus] = None

    bus_driver[op.bus_id] = driver_id
    driver_bus[driver_id] = op.bus_id

    _touch(touched, op.type, Collection.DRIVERS, driver_id, occupant)
    _touch(touched, op.type, Collection.BUSES, op.bus_id, previous_bus)

    return state.model_copy(
        update={"driver_bus": driver_bus, "bus_driver": bus_driver, "touched": touched}
    )


def apply_assign_students(
    state: WorkingState,
    op: StagedOperation,
    snapshot: Snapshot,
) -> WorkingState:
    """
    Move students onto a bus.

    Active students shift the per-shift load of the source and target bus.
    The stop is kept unless the operation names a new one.
    """
    _require_bus(snapshot, op.bus_id)
    students = []
    for student_id in op.target_ids:
        student = snapshot.student(student_id)
        if student is None:
            raise NotFoundError(
                Collection.STUDENTS.value, student_id, f"Student {student_id} not found"
            )
        students.append(student)

    bus_load = dict(state.bus_load)
    student_bus = dict(state.student_bus)
    student_route = dict(state.student_route)
    student_stop = dict(state.student_stop)
    touched = dict(state.touched)

    target_route = state.bus_route.get(op.bus_id)
    for student in students:
        previous_bus = student_bus.get(student.id)
        if previous_bus != op.bus_id:
            if student.is_active:
                if previous_bus in bus_load:
                    bus_load[previous_bus] = bus_load[previous_bus].shifted(student.shift, -1)
                bus_load[op.bus_id] = bus_load[op.bus_id].shifted(student.shift, 1)
            student_bus[student.id] = op.bus_id
            if not same_route(snapshot, student_route.get(student.id), target_route):
                student_route[student.id] = target_route
        if op.stop_id:
            student_stop[student.id] = op.stop_id

        _touch(touched, op.type, Collection.STUDENTS, student.id)
        _touch(touched, op.type, Collection.BUSES, op.bus_id, previous_bus)

    return state.model_copy(
        update={
            "bus_load": bus_load,
            "student_bus": student_bus,
            "student_route": student_route,
            "student_stop": student_stop,
            "touched": touched,
        }
    )


def apply_assign(
    state: WorkingState,
    op: StagedOperation,
    snapshot: Snapshot,
) -> WorkingState:
    """Apply an assign operation (driver or students)."""
    if op.entity == EntityKind.STUDENT:
        return apply_assign_students(state, op, snapshot)
    return apply_assign_driver(state, op, snapshot)


def apply_swap(
    state: WorkingState,
    op: StagedOperation,
    snapshot: Snapshot,
) -> WorkingState:
    """Exchange the buses of two drivers (either may be reserved)."""
    driver_a, driver_b = op.target_ids
    _require_driver(snapshot, driver_a)
    _require_driver(snapshot, driver_b)

    driver_bus = dict(state.driver_bus)
    bus_driver = dict(state.bus_driver)
    touched = dict(state.touched)

    bus_a = driver_bus.get(driver_a)
    bus_b = driver_bus.get(driver_b)

    driver_bus[driver_a] = bus_b
    driver_bus[driver_b] = bus_a
    if bus_a:
        bus_driver[bus_a] = driver_b
    if bus_b:
        bus_driver[bus_b] = driver_a

    _touch(touched, op.type, Collection.DRIVERS, driver_a, driver_b)
    _touch(touched, op.type, Collection.BUSES, bus_a, bus_b)

    return state.model_copy(
        update={"driver_bus": driver_bus, "bus_driver": bus_driver, "touched": touched}
    )


def apply_mark_reserved(
    state: WorkingState,
    op: StagedOperation,
    snapshot: Snapshot,
) -> WorkingState:
    """Move a driver to reserve, leaving their bus without a driver."""
    driver_id = op.target_ids[0]
    _require_driver(snapshot, driver_id)

    driver_bus = dict(state.driver_bus)
    bus_driver = dict(state.bus_driver)
    touched = dict(state.touched)

    previous_bus = driver_bus.get(driver_id)
    if previous_bus and bus_driver.get(previous_bus) == driver_id:
        bus_driver[previous_bus] = None
    driver_bus[driver_id] = None

    _touch(touched, op.type, Collection.DRIVERS, driver_id)
    _touch(touched, op.type, Collection.BUSES, previous_bus)

    return state.model_copy(
        update={"driver_bus": driver_bus, "bus_driver": bus_driver, "touched": touched}
    )


def apply_route_reassign(
    state: WorkingState,
    op: StagedOperation,
    snapshot: Snapshot,
) -> WorkingState:
    """
    Move a bus to another route.

    The bus takes the route's stops. A reference to the route the bus
    already serves (by id or alias) leaves the stored value untouched.
    """
    bus_id = op.target_ids[0]
    _require_bus(snapshot, bus_id)
    route = snapshot.route(op.route_id)
    if route is None:
        raise NotFoundError(Collection.ROUTES.value, op.route_id, f"Route {op.route_id} not found")

    bus_route = dict(state.bus_route)
    bus_stops = dict(state.bus_stops)
    touched = dict(state.touched)

    if not same_route(snapshot, bus_route.get(bus_id), route.id):
        bus_route[bus_id] = route.id
        bus_stops[bus_id] = list(route.stops)

    _touch(touched, op.type, Collection.BUSES, bus_id)
    _touch(touched, op.type, Collection.DRIVERS, state.bus_driver.get(bus_id))

    return state.model_copy(
        update={"bus_route": bus_route, "bus_stops": bus_stops, "touched": touched}
    )


# --- Operation Dispatcher ---

OPERATION_HANDLERS = {
    OperationType.ASSIGN: apply_assign,
    OperationType.SWAP: apply_swap,
    OperationType.MARK_RESERVED: apply_mark_reserved,
    OperationType.ROUTE_REASSIGN: apply_route_reassign,
}


def apply_operation(
    state: WorkingState,
    op: StagedOperation,
    snapshot: Snapshot,
) -> WorkingState:
    """
    Apply a single staged operation.

    Args:
        state: Current working state
        op: Operation to replay
        snapshot: Snapshot the operation is resolved against

    Returns:
        New working state

    Raises:
        NotFoundError: If the operation references an unknown entity
        ValueError: If operation is not supported
    """
    handler = OPERATION_HANDLERS.get(op.type)
    if handler is None:
        raise ValueError(f"Unsupported operation: {op.type}")

    return handler(state, op, snapshot)
