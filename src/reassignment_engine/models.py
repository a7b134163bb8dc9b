"""
Pydantic models for the reassignment engine.

Covers the transport records read from the document store, staged operator
operations, the typed per-collection diffs produced by the net-change
computer, and the audit log records written on commit and rollback.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Optional, Union
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    TypeAdapter,
    computed_field,
    model_validator,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def natural_key(value: str) -> tuple:
    """Sort key that orders embedded numbers numerically ("DB-2" < "DB-10")."""
    parts = re.split(r"(\d+)", value or "")
    return tuple(int(p) if p.isdigit() else p.lower() for p in parts)


# --- Enums ---

class BusShift(str, Enum):
    """Shift mode a bus operates in."""

    MORNING = "Morning"
    EVENING = "Evening"
    BOTH = "Both"


class StudentShift(str, Enum):
    """Shift a student travels in."""

    MORNING = "Morning"
    EVENING = "Evening"


class StudentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class OperationType(str, Enum):
    """Staged operation types an operator can contribute."""

    ASSIGN = "assign"
    SWAP = "swap"
    MARK_RESERVED = "markReserved"
    ROUTE_REASSIGN = "routeReassign"


class EntityKind(str, Enum):
    """What an assign operation moves onto a bus."""

    DRIVER = "driver"
    STUDENT = "student"


class Collection(str, Enum):
    """Document store collections touched by the engine."""

    BUSES = "buses"
    DRIVERS = "drivers"
    STUDENTS = "students"
    ROUTES = "routes"


class ReassignmentType(str, Enum):
    """Audit log operation types."""

    DRIVER = "driver_reassignment"
    STUDENT = "student_reassignment"
    ROUTE = "route_reassignment"
    ROLLBACK = "rollback"


class LogStatus(str, Enum):
    """Audit log lifecycle states."""

    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    NO_OP = "no-op"


class ViolationKind(str, Enum):
    """Kinds of rule violations reported by the validator."""

    VALIDATION = "validation"
    CAPACITY = "capacity"
    COMPATIBILITY = "compatibility"
    NOT_FOUND = "not_found"


# --- Transport records ---

class Stop(BaseModel):
    """A stop on a route, in travel order."""

    id: str = Field(..., description="Stop identifier")
    name: str = Field(default="", description="Display name")
    sequence: int = Field(default=0, ge=0, description="Position along the route")


class Route(BaseModel):
    """
    A route with its ordered stops.

    Routes are addressed by document id; some records refer to them by a
    human-readable alias (e.g. "Route-1") instead.
    """

    id: str
    alias: Optional[str] = Field(default=None, description="Human-readable route id")
    name: str = ""
    stops: list[Stop] = Field(default_factory=list)

    @property
    def label(self) -> str:
        return self.name or self.alias or self.id


class BusLoad(BaseModel):
    """Per-shift occupancy counters of a bus."""

    morning_count: int = Field(default=0, ge=0)
    evening_count: int = Field(default=0, ge=0)

    def count_for(self, shift: StudentShift) -> int:
        if shift == StudentShift.MORNING:
            return self.morning_count
        return self.evening_count

    def shifted(self, shift: StudentShift, delta: int) -> "BusLoad":
        """Return a new load with the given shift counter moved by delta (floored at 0)."""
        if shift == StudentShift.MORNING:
            return BusLoad(
                morning_count=max(0, self.morning_count + delta),
                evening_count=self.evening_count,
            )
        return BusLoad(
            morning_count=self.morning_count,
            evening_count=max(0, self.evening_count + delta),
        )


class Bus(BaseModel):
    """A bus with its capacity, per-shift load and current route."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "bus_1",
                "bus_number": "AS-01-PC-9094",
                "capacity": 50,
                "load": {"morning_count": 42, "evening_count": 30},
                "shift": "Both",
                "assigned_driver_id": "drv_1",
                "route_id": "route_1",
                "stops": [
                    {"id": "stop_a", "name": "Main Gate", "sequence": 0},
                    {"id": "stop_b", "name": "Library", "sequence": 1},
                ],
            }
        }
    )

    id: str
    bus_number: str = ""
    capacity: int = Field(..., gt=0, description="Seats per shift")
    load: BusLoad = Field(default_factory=BusLoad)
    shift: BusShift = BusShift.BOTH
    assigned_driver_id: Optional[str] = None
    route_id: Optional[str] = None
    stops: list[Stop] = Field(default_factory=list)

    @property
    def label(self) -> str:
        """Label such as "Bus-1 (AS-01-PC-9094)"."""
        number = re.sub(r"[^0-9]", "", self.id) or "?"
        return f"Bus-{number} ({self.bus_number or 'N/A'})"

    def has_stop(self, stop_id: str) -> bool:
        return any(s.id.lower() == stop_id.lower() for s in self.stops)

    def stop_position(self, stop_id: str) -> Optional[int]:
        for index, stop in enumerate(self.stops):
            if stop.id.lower() == stop_id.lower():
                return index
        return None


class Driver(BaseModel):
    """
    A driver and the bus they operate.

    A driver is reserved exactly when no bus is assigned; the flag is
    derived from bus_id on construction.
    """

    id: str
    name: str = ""
    employee_code: str = ""
    bus_id: Optional[str] = None
    route_id: Optional[str] = None
    reserved: bool = True

    @model_validator(mode="after")
    def derive_reserved(self) -> "Driver":
        self.reserved = self.bus_id is None
        return self

    @property
    def label(self) -> str:
        if self.employee_code:
            return f"{self.name or self.id} ({self.employee_code})"
        return self.name or self.id


class Student(BaseModel):
    """A student's bus placement."""

    id: str
    name: str = ""
    bus_id: Optional[str] = None
    route_id: Optional[str] = None
    stop_id: str
    shift: StudentShift = StudentShift.MORNING
    status: StudentStatus = StudentStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == StudentStatus.ACTIVE


class Snapshot(BaseModel):
    """Current state of the records relevant to one reassignment session."""

    buses: list[Bus] = Field(default_factory=list)
    drivers: list[Driver] = Field(default_factory=list)
    routes: list[Route] = Field(default_factory=list)
    students: list[Student] = Field(default_factory=list)

    _buses: dict[str, Bus] = PrivateAttr(default_factory=dict)
    _drivers: dict[str, Driver] = PrivateAttr(default_factory=dict)
    _routes: dict[str, Route] = PrivateAttr(default_factory=dict)
    _students: dict[str, Student] = PrivateAttr(default_factory=dict)
    _route_aliases: dict[str, str] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._buses = {b.id: b for b in self.buses}
        self._drivers = {d.id: d for d in self.drivers}
        self._routes = {r.id: r for r in self.routes}
        self._students = {s.id: s for s in self.students}
        self._route_aliases = {r.alias: r.id for r in self.routes if r.alias}

    def bus(self, bus_id: Optional[str]) -> Optional[Bus]:
        return self._buses.get(bus_id) if bus_id else None

    def driver(self, driver_id: Optional[str]) -> Optional[Driver]:
        return self._drivers.get(driver_id) if driver_id else None

    def student(self, student_id: Optional[str]) -> Optional[Student]:
        return self._students.get(student_id) if student_id else None

    def route(self, route_id: Optional[str]) -> Optional[Route]:
        canonical = self.canonical_route_id(route_id)
        return self._routes.get(canonical) if canonical else None

    def canonical_route_id(self, route_id: Optional[str]) -> Optional[str]:
        """
        Resolve a route reference to its document id.

        Only ids and aliases declared by the snapshot's routes are resolved;
        anything else is returned unchanged.
        """
        if not route_id:
            return None
        if route_id in self._routes:
            return route_id
        return self._route_aliases.get(route_id, route_id)


# --- Staged operations ---

class StagedOperation(BaseModel):
    """
    A proposed, not-yet-committed change contributed by an operator.

    Shapes by type:
        assign (driver):   target_ids=[driver_id], bus_id
        assign (student):  target_ids=[student_id, ...], bus_id, optional stop_id
        swap:              target_ids=[driver_a, driver_b]
        markReserved:      target_ids=[driver_id]
        routeReassign:     target_ids=[bus_id], route_id
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    type: OperationType
    entity: EntityKind = EntityKind.DRIVER
    target_ids: list[str] = Field(..., min_length=1)
    bus_id: Optional[str] = None
    route_id: Optional[str] = None
    stop_id: Optional[str] = None
    staged_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def check_shape(self) -> "StagedOperation":
        """Reject malformed operations at construction."""
        if self.type == OperationType.ASSIGN:
            if not self.bus_id:
                raise ValueError("assign requires bus_id")
            if self.entity == EntityKind.DRIVER and len(self.target_ids) != 1:
                raise ValueError("driver assign takes exactly one driver")
        elif self.type == OperationType.SWAP:
            if len(self.target_ids) != 2 or self.target_ids[0] == self.target_ids[1]:
                raise ValueError("swap requires two distinct drivers")
        elif self.type == OperationType.MARK_RESERVED:
            if len(self.target_ids) != 1:
                raise ValueError("markReserved takes exactly one driver")
        elif self.type == OperationType.ROUTE_REASSIGN:
            if len(self.target_ids) != 1 or not self.route_id:
                raise ValueError("routeReassign requires one bus and a route_id")
        if self.entity == EntityKind.STUDENT and self.type != OperationType.ASSIGN:
            raise ValueError("students can only be staged with assign")
        return self

    @property
    def reassignment_type(self) -> ReassignmentType:
        if self.type == OperationType.ROUTE_REASSIGN:
            return ReassignmentType.ROUTE
        if self.entity == EntityKind.STUDENT:
            return ReassignmentType.STUDENT
        return ReassignmentType.DRIVER

    @classmethod
    def assign_driver(cls, driver_id: str, bus_id: str, **kwargs: Any) -> "StagedOperation":
        return cls(type=OperationType.ASSIGN, target_ids=[driver_id], bus_id=bus_id, **kwargs)

    @classmethod
    def swap(cls, driver_a: str, driver_b: str, **kwargs: Any) -> "StagedOperation":
        return cls(type=OperationType.SWAP, target_ids=[driver_a, driver_b], **kwargs)

    @classmethod
    def mark_reserved(cls, driver_id: str, **kwargs: Any) -> "StagedOperation":
        return cls(type=OperationType.MARK_RESERVED, target_ids=[driver_id], **kwargs)

    @classmethod
    def assign_students(
        cls,
        student_ids: list[str],
        bus_id: str,
        stop_id: Optional[str] = None,
        **kwargs: Any,
    ) -> "StagedOperation":
        return cls(
            type=OperationType.ASSIGN,
            entity=EntityKind.STUDENT,
            target_ids=list(student_ids),
            bus_id=bus_id,
            stop_id=stop_id,
            **kwargs,
        )

    @classmethod
    def reassign_route(cls, bus_id: str, route_id: str, **kwargs: Any) -> "StagedOperation":
        return cls(
            type=OperationType.ROUTE_REASSIGN,
            target_ids=[bus_id],
            route_id=route_id,
            **kwargs,
        )


class StagingBuffer(BaseModel):
    """
    Ordered list of staged operations for one operator session.

    Discarding the buffer has no persisted effect.
    """

    session_id: str = Field(default_factory=lambda: uuid4().hex)
    actor_id: Optional[str] = None
    operations: list[StagedOperation] = Field(default_factory=list)

    def stage(self, operation: StagedOperation) -> "StagingBuffer":
        """Append an operation (fluent interface)."""
        self.operations.append(operation)
        return self

    def remove(self, operation_id: str) -> bool:
        before = len(self.operations)
        self.operations = [op for op in self.operations if op.id != operation_id]
        return len(self.operations) != before

    def discard(self) -> None:
        self.operations = []

    def __len__(self) -> int:
        return len(self.operations)


# --- Typed states and diffs ---

class BusState(BaseModel):
    """Tracked fields of a bus document."""

    model_config = ConfigDict(frozen=True)

    assigned_driver_id: Optional[str] = None
    route_id: Optional[str] = None
    stops: list[Stop] = Field(default_factory=list)
    load: BusLoad = Field(default_factory=BusLoad)


class DriverState(BaseModel):
    """Tracked fields of a driver document."""

    model_config = ConfigDict(frozen=True)

    bus_id: Optional[str] = None
    route_id: Optional[str] = None
    reserved: bool = True


class StudentState(BaseModel):
    """Tracked fields of a student document."""

    model_config = ConfigDict(frozen=True)

    bus_id: Optional[str] = None
    route_id: Optional[str] = None
    stop_id: Optional[str] = None


class FieldMismatch(BaseModel):
    """A tracked field whose stored value differs from the expected one."""

    collection: str
    entity_id: str
    field: str
    expected: Any = None
    actual: Any = None

    def describe(self) -> str:
        return (
            f"{self.collection}/{self.entity_id}.{self.field}: "
            f"expected {self.expected!r}, found {self.actual!r}"
        )


class ChangeRecord(BaseModel):
    """Persisted before/after of one document, as plain JSON values."""

    collection: str
    doc_id: str
    before: dict[str, Any]
    after: dict[str, Any]

    @property
    def doc_path(self) -> str:
        return f"{self.collection}/{self.doc_id}"

    def to_diff(self) -> "NetChange":
        """Rebuild the typed diff this record was written from."""
        return _NET_CHANGE_ADAPTER.validate_python({
            "collection": self.collection,
            "entity_id": self.doc_id,
            "before": self.before,
            "after": self.after,
        })


class _EntityDiff(BaseModel):
    """
    Base for per-collection diffs.

    apply() and revert() merge the tracked fields into a stored document;
    mismatches() compares a stored document with the expected state.
    """

    state_type: ClassVar[type[BaseModel]]

    entity_id: str
    label: str = ""

    def _state_of(self, document: dict[str, Any]) -> dict[str, Any]:
        fields = self.state_type.model_fields
        return self.state_type.model_validate(
            {k: document[k] for k in fields if document.get(k) is not None}
        ).model_dump(mode="json")

    def apply(self, document: dict[str, Any]) -> dict[str, Any]:
        return {**document, **self.after.model_dump(mode="json")}

    def revert(self, document: dict[str, Any]) -> dict[str, Any]:
        return {**document, **self.before.model_dump(mode="json")}

    def inverted(self):
        """The diff that undoes this one."""
        return self.model_copy(update={"before": self.after, "after": self.before})

    def mismatches(
        self,
        document: dict[str, Any],
        expected: Literal["before", "after"] = "before",
    ) -> list[FieldMismatch]:
        want = getattr(self, expected).model_dump(mode="json")
        have = self._state_of(document)
        return [
            FieldMismatch(
                collection=self.collection,
                entity_id=self.entity_id,
                field=name,
                expected=want[name],
                actual=have.get(name),
            )
            for name in want
            if want[name] != have.get(name)
        ]

    def changed_fields(self) -> list[str]:
        before = self.before.model_dump(mode="json")
        after = self.after.model_dump(mode="json")
        return [name for name in after if before[name] != after[name]]

    def to_record(self) -> ChangeRecord:
        return ChangeRecord(
            collection=self.collection,
            doc_id=self.entity_id,
            before=self.before.model_dump(mode="json"),
            after=self.after.model_dump(mode="json"),
        )


class BusDiff(_EntityDiff):
    state_type: ClassVar[type[BaseModel]] = BusState

    collection: Literal["buses"] = "buses"
    before: BusState
    after: BusState


class DriverDiff(_EntityDiff):
    state_type: ClassVar[type[BaseModel]] = DriverState

    collection: Literal["drivers"] = "drivers"
    before: DriverState
    after: DriverState


class StudentDiff(_EntityDiff):
    state_type: ClassVar[type[BaseModel]] = StudentState

    collection: Literal["students"] = "students"
    before: StudentState
    after: StudentState


NetChange = Annotated[
    Union[BusDiff, DriverDiff, StudentDiff],
    Field(discriminator="collection"),
]
_NET_CHANGE_ADAPTER = TypeAdapter(NetChange)


# --- Net-change computation results ---

class RemovedNoOp(BaseModel):
    """An entity whose staged operations cancel out."""

    collection: str
    entity_id: str
    reason: str


class DuplicateOperation(BaseModel):
    """A staged operation superseded by a later one on the same entity."""

    entity_key: str
    superseded_operation_id: str
    kept_operation_id: str


class RejectedOperation(BaseModel):
    """A staged operation that could not be replayed against the snapshot."""

    operation_id: str
    kind: ViolationKind
    reason: str
    collection: Optional[str] = None
    entity_id: Optional[str] = None


class RouteImpact(BaseModel):
    """How many buses a route gains or loses."""

    route_id: str
    route_name: str
    previous_bus_count: int
    new_bus_count: int

    @computed_field
    @property
    def change(self) -> int:
        return self.new_bus_count - self.previous_bus_count


class ConfirmationRow(BaseModel):
    """One line of the operator review table shown before commit."""

    sl_no: int
    collection: str
    entity_id: str
    entity_label: str
    initial: str
    final: str
    impact: str = ""
    info: str = ""
    status: Literal["pending", "error"] = "pending"


class NetChangeResult(BaseModel):
    """Output of the net-change computer."""

    changes: list[NetChange] = Field(default_factory=list)
    confirmation_rows: list[ConfirmationRow] = Field(default_factory=list)
    removed_no_ops: list[RemovedNoOp] = Field(default_factory=list)
    duplicates: list[DuplicateOperation] = Field(default_factory=list)
    rejected: list[RejectedOperation] = Field(default_factory=list)
    outside_snapshot: list[str] = Field(
        default_factory=list,
        description="Touched document paths absent from the snapshot; left unchanged",
    )
    route_impacts: list[RouteImpact] = Field(default_factory=list)
    operation_types: list[ReassignmentType] = Field(default_factory=list)
    staged_operations: list[StagedOperation] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return len(self.changes) > 0

    @property
    def reassignment_type(self) -> Optional[ReassignmentType]:
        """The single operation type of this session, or None if mixed/empty."""
        if len(self.operation_types) == 1:
            return self.operation_types[0]
        return None

    def changes_for(self, collection: Collection) -> list[NetChange]:
        return [c for c in self.changes if c.collection == collection.value]

    def entity_ids(self) -> list[str]:
        return [f"{c.collection}/{c.entity_id}" for c in self.changes]


# --- Validation ---

class RuleViolation(BaseModel):
    """A typed validation error or warning."""

    kind: ViolationKind
    message: str
    collection: Optional[str] = None
    entity_id: Optional[str] = None
    operation_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class ValidationReport(BaseModel):
    """Validator output. Errors block a commit; warnings do not."""

    errors: list[RuleViolation] = Field(default_factory=list)
    warnings: list[RuleViolation] = Field(default_factory=list)

    @computed_field
    @property
    def valid(self) -> bool:
        return len(self.errors) == 0

    def errors_of(self, kind: ViolationKind) -> list[RuleViolation]:
        return [e for e in self.errors if e.kind == kind]

    def blocking_errors(self, allow_capacity_override: bool = False) -> list[RuleViolation]:
        """Errors that prevent a commit (capacity errors may be overridden)."""
        if not allow_capacity_override:
            return list(self.errors)
        return [e for e in self.errors if e.kind != ViolationKind.CAPACITY]

    def raise_for_errors(self, allow_capacity_override: bool = False) -> None:
        """
        Raise if any blocking error was reported.

        Raises:
            ValidationError, CapacityError, CompatibilityError or
            NotFoundError matching the first blocking error; every
            blocking error is attached as `violations`
        """
        errors = self.blocking_errors(allow_capacity_override)
        if errors:
            from .errors import exception_for
            raise exception_for(errors)


class OverloadInfo(BaseModel):
    """Why a bus is over capacity."""

    bus_id: str
    reason: Literal["morning", "evening", "both"]
    count: int
    capacity: int
    shift: BusShift


# --- Ranking ---

class RankingWeights(BaseModel):
    """Weights of the candidate scoring factors."""

    seat_availability: float = Field(default=0.5, ge=0)
    stop_proximity: float = Field(default=0.3, ge=0)
    shift_match: float = Field(default=0.15, ge=0)
    load_reduction: float = Field(default=0.05, ge=0)


class RankedBus(BaseModel):
    """A candidate bus with its weighted score and factor breakdown."""

    bus: Bus
    score: float
    seat_score: float
    stop_proximity_score: float
    shift_match_score: float
    load_reduction_score: float
    available_seats: int
    new_load_pct: float
    reason: str = ""


class SplitAssignment(BaseModel):
    """Students placed on one bus by auto-split."""

    bus_id: str
    bus_number: str = ""
    student_ids: list[str] = Field(default_factory=list)
    morning_added: int = 0
    evening_added: int = 0
    final_morning_pct: float = 0.0
    final_evening_pct: float = 0.0


class SplitMetrics(BaseModel):
    """Effect of an auto-split plan on the source bus and its candidates."""

    students_moved: int = 0
    buses_affected: int = 0
    average_load_after: float = Field(default=0.0, description="Mean peak-shift load, percent")
    overloaded_buses_after: int = Field(default=0, description="Buses at or above the overload ratio")


class UnassignedStudent(BaseModel):
    student_id: str
    reason: str


class AutoSplitResult(BaseModel):
    """Greedy multi-bus distribution of students."""

    assignments: list[SplitAssignment] = Field(default_factory=list)
    unassigned: list[UnassignedStudent] = Field(default_factory=list)
    metrics: SplitMetrics = Field(default_factory=SplitMetrics)

    @property
    def complete(self) -> bool:
        return not self.unassigned

    def to_staged_operations(self) -> list[StagedOperation]:
        """One student assign operation per receiving bus."""
        return [
            StagedOperation.assign_students(a.student_ids, a.bus_id)
            for a in self.assignments
            if a.student_ids
        ]


# --- Audit log ---

class Actor(BaseModel):
    """Who performs a commit or rollback."""

    id: str
    name: Optional[str] = None
    role: str = "admin"
    label: Optional[str] = None

    @property
    def display_label(self) -> str:
        if self.label:
            return self.label
        if self.name:
            suffix = "(Moderator)" if self.role == "moderator" else "(Admin)"
            return f"{self.name} {suffix}"
        return f"Admin ({self.id[:8]}...)"


class ReassignmentLog(BaseModel):
    """Audit record of a committed operation or a rollback."""

    operation_id: str
    type: ReassignmentType
    actor_id: str
    actor_label: str
    status: LogStatus
    summary: str = ""
    changes: list[ChangeRecord] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)
    rollback_of: Optional[str] = None
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utc_now)


class LogHead(BaseModel):
    """Latest-log pointer for one operation type."""

    type: ReassignmentType
    operation_id: str
    version: int


# --- Engine results ---

class PreviewResult(BaseModel):
    """Net changes of a staged session and their validation report."""

    net_changes: NetChangeResult
    report: ValidationReport

    @computed_field
    @property
    def can_commit(self) -> bool:
        return self.report.valid and self.net_changes.has_changes


class CommitResult(BaseModel):
    """Outcome of committing a net-change set."""

    success: bool
    status: LogStatus
    message: str = ""
    operation_id: Optional[str] = None
    updated_entity_ids: list[str] = Field(default_factory=list)
    errors: list[RuleViolation] = Field(default_factory=list)
    warnings: list[RuleViolation] = Field(default_factory=list)
    conflicts: list[FieldMismatch] = Field(default_factory=list)
    audit_logged: bool = False


class RollbackValidation(BaseModel):
    operation_id: str
    can_rollback: bool
    conflicts: list[str] = Field(default_factory=list)
    log: Optional[ReassignmentLog] = None


class RollbackResult(BaseModel):
    """Outcome of a rollback attempt."""

    success: bool
    message: str
    operation_id: str
    rollback_operation_id: Optional[str] = None
    reverted_docs: list[str] = Field(default_factory=list)
    unreverted_docs: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
