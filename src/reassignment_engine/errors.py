"""
Exception taxonomy of the reassignment engine.

The validator reports problems as RuleViolation values;
ValidationReport.raise_for_errors turns the blocking ones into the
exceptions below. The committer raises inside its transaction so nothing
is written.
"""

from typing import Optional

from .models import FieldMismatch, RuleViolation, ViolationKind


class ReassignmentError(Exception):
    """
    Base class for engine errors.

    Attributes:
        violations: Reported violations behind the error (may be empty)
    """

    violations: list[RuleViolation] = []


class ValidationError(ReassignmentError):
    """Malformed, duplicate or mixed staged operations."""


class CapacityError(ReassignmentError):
    """A per-shift seat limit would be exceeded."""


class CompatibilityError(ReassignmentError):
    """Shift or stop mismatch between a student and a bus."""


class NotFoundError(ReassignmentError):
    """An entity disappeared between staging and commit."""

    def __init__(self, collection: str, entity_id: str, message: Optional[str] = None):
        self.collection = collection
        self.entity_id = entity_id
        super().__init__(message or f"{collection}/{entity_id} not found")


class ConflictError(ReassignmentError):
    """
    Optimistic-concurrency precondition failed.

    Carries every tracked field whose stored value no longer matches the
    value recorded when the diff was computed.
    """

    def __init__(self, mismatches: list[FieldMismatch]):
        if not mismatches:
            raise ValueError("ConflictError requires at least one mismatch")
        self.mismatches = mismatches
        first = mismatches[0]
        super().__init__(
            f"Conflict: {first.describe()}. Data changed externally."
            + (f" ({len(mismatches) - 1} more)" if len(mismatches) > 1 else "")
        )

    @property
    def collection(self) -> str:
        return self.mismatches[0].collection

    @property
    def entity_id(self) -> str:
        return self.mismatches[0].entity_id

    @property
    def expected(self):
        return self.mismatches[0].expected

    @property
    def actual(self):
        return self.mismatches[0].actual


class PartialRollbackFailure(ReassignmentError):
    """Some documents were reverted, others conflicted and were left as-is."""

    def __init__(
        self,
        operation_id: str,
        rollback_operation_id: str,
        reverted_docs: list[str],
        unreverted_docs: list[str],
        conflicts: Optional[list[str]] = None,
    ):
        self.operation_id = operation_id
        self.rollback_operation_id = rollback_operation_id
        self.reverted_docs = reverted_docs
        self.unreverted_docs = unreverted_docs
        self.conflicts = conflicts or []
        super().__init__(
            f"Rollback of {operation_id} partially failed: "
            f"{len(reverted_docs)} reverted, {len(unreverted_docs)} not reverted"
        )


_EXCEPTIONS = {
    ViolationKind.VALIDATION: ValidationError,
    ViolationKind.CAPACITY: CapacityError,
    ViolationKind.COMPATIBILITY: CompatibilityError,
}


def exception_for(violations: list[RuleViolation]) -> ReassignmentError:
    """
    Map reported violations onto the exception type of the first one.

    All violations are attached to the exception.
    """
    first = violations[0]
    if first.kind == ViolationKind.NOT_FOUND:
        error = NotFoundError(
            first.collection or "unknown",
            first.entity_id or "unknown",
            first.message,
        )
    else:
        error = _EXCEPTIONS[first.kind](first.message)
    error.violations = list(violations)
    return error
