"""
Campus Transport Reassignment Engine

Collapses staged driver, student and route operations into minimal net
changes, validates them against per-shift capacity and compatibility
rules, commits them with optimistic concurrency and keeps a rollback log.
"""

__version__ = "0.1.0"
__engine_version__ = "REASSIGN-0.1.0"

from .errors import (
    CapacityError,
    CompatibilityError,
    ConflictError,
    NotFoundError,
    PartialRollbackFailure,
    ReassignmentError,
    ValidationError,
)
from .models import (
    Actor,
    Bus,
    BusLoad,
    BusShift,
    CommitResult,
    Driver,
    NetChangeResult,
    PreviewResult,
    Route,
    Snapshot,
    StagedOperation,
    StagingBuffer,
    Stop,
    Student,
    StudentShift,
    ValidationReport,
)
from .netchange import compute_net_changes
from .ranking import AllocationRanker
from .service import EngineConfig, ReassignmentEngine, preview_changes
from .sql_store import SqlDocumentStore
from .store import DocumentStore, MemoryDocumentStore
from .validation import validate_changes

__all__ = [
    "__version__",
    "__engine_version__",
    "Actor",
    "AllocationRanker",
    "Bus",
    "BusLoad",
    "BusShift",
    "CapacityError",
    "CommitResult",
    "CompatibilityError",
    "ConflictError",
    "DocumentStore",
    "Driver",
    "EngineConfig",
    "MemoryDocumentStore",
    "NetChangeResult",
    "NotFoundError",
    "PartialRollbackFailure",
    "PreviewResult",
    "ReassignmentEngine",
    "ReassignmentError",
    "Route",
    "Snapshot",
    "SqlDocumentStore",
    "StagedOperation",
    "StagingBuffer",
    "Stop",
    "Student",
    "StudentShift",
    "ValidationError",
    "ValidationReport",
    "compute_net_changes",
    "preview_changes",
    "validate_changes",
]
