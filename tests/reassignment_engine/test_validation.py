"""Tests for net-change validation."""

import pytest

from src.reassignment_engine.errors import (
    CapacityError,
    CompatibilityError,
    NotFoundError,
    ValidationError,
)
from src.reassignment_engine.models import (
    BusLoad,
    Snapshot,
    StagedOperation,
    ViolationKind,
)
from src.reassignment_engine.netchange import compute_net_changes
from src.reassignment_engine.validation import validate_changes


def validate(ops, snapshot):
    return validate_changes(compute_net_changes(ops, snapshot), snapshot)


class TestCapacity:
    """Per-shift capacity checks."""

    def test_overload_rejected(self, snapshot):
        """Three Morning students onto a bus at 48/50 reach 51/50."""
        op = StagedOperation.assign_students(["stu_1", "stu_2", "stu_3"], "bus_2")
        report = validate([op], snapshot)

        assert report.valid is False
        assert len(report.errors) == 1
        error = report.errors[0]
        assert error.kind == ViolationKind.CAPACITY
        assert error.entity_id == "bus_2"
        assert error.message == "Bus-2 (AS-01-1002) exceeds capacity for Morning shift: 51/50"
        assert error.details == {"shift": "Morning", "count": 51, "capacity": 50}

    def test_exactly_full_allowed(self, snapshot):
        """Filling a bus exactly is allowed."""
        op = StagedOperation.assign_students(["stu_1", "stu_2"], "bus_2")
        assert validate([op], snapshot).valid is True

    def test_unloading_overloaded_bus_allowed(self, snapshot):
        """Moving students off an overloaded bus is allowed."""
        buses = [
            b.model_copy(update={"load": BusLoad(morning_count=60, evening_count=5)})
            if b.id == "bus_1" else b
            for b in snapshot.buses
        ]
        overloaded = Snapshot(
            buses=buses,
            drivers=snapshot.drivers,
            routes=snapshot.routes,
            students=snapshot.students,
        )
        op = StagedOperation.assign_students(["stu_1"], "bus_4", stop_id="A")
        report = validate([op], overloaded)
        assert report.errors_of(ViolationKind.CAPACITY) == []


class TestStudentPlacement:
    """Shift compatibility and stop coverage."""

    def test_evening_student_on_morning_bus(self, snapshot):
        """An evening student cannot ride a Morning bus."""
        op = StagedOperation.assign_students(["stu_4"], "bus_3")
        report = validate([op], snapshot)
        errors = report.errors_of(ViolationKind.COMPATIBILITY)
        assert len(errors) == 1
        assert errors[0].entity_id == "stu_4"
        assert errors[0].details == {"student_shift": "Evening", "bus_shift": "Morning"}

    def test_stop_not_served(self, snapshot):
        """The target bus must serve the student's stop."""
        op = StagedOperation.assign_students(["stu_1"], "bus_4")
        report = validate([op], snapshot)
        errors = report.errors_of(ViolationKind.COMPATIBILITY)
        assert len(errors) == 1
        assert "does not serve stop C" in errors[0].message

    def test_new_stop_served(self, snapshot):
        """A new stop on the target route is accepted."""
        op = StagedOperation.assign_students(["stu_1"], "bus_4", stop_id="A")
        assert validate([op], snapshot).valid is True


class TestRoutes:
    """Route reassignment checks."""

    def test_stranded_students_are_warnings(self, snapshot):
        """Riders whose stop is dropped are warned about."""
        report = validate([StagedOperation.reassign_route("bus_1", "route_3")], snapshot)
        assert report.valid is True
        stranded = sorted(w.entity_id for w in report.warnings)
        assert stranded == ["stu_1", "stu_2", "stu_3"]

    def test_route_reassign_without_riders(self, snapshot):
        """Rerouting a bus without riders is clean."""
        report = validate([StagedOperation.reassign_route("bus_4", "route_1")], snapshot)
        assert report.valid is True
        assert report.warnings == []


class TestSessionRules:
    """Rules over the whole staged session."""

    def test_mixed_types_blocked(self, snapshot):
        """Mixed operation types are an error."""
        ops = [
            StagedOperation.assign_driver("drv_4", "bus_4"),
            StagedOperation.assign_students(["stu_1"], "bus_2"),
        ]
        report = validate(ops, snapshot)
        errors = report.errors_of(ViolationKind.VALIDATION)
        assert len(errors) == 1
        assert errors[0].details["types"] == ["driver_reassignment", "student_reassignment"]

    def test_duplicates_are_warnings(self, snapshot):
        """Superseded operations are warnings."""
        ops = [
            StagedOperation.assign_driver("drv_4", "bus_4"),
            StagedOperation.assign_driver("drv_4", "bus_4"),
        ]
        report = validate(ops, snapshot)
        assert report.valid is True
        assert len(report.warnings) == 1
        assert report.warnings[0].details == {"entity_key": "driver:drv_4"}

    def test_rejected_operation_is_error(self, snapshot):
        """Rejected operations are errors."""
        report = validate([StagedOperation.mark_reserved("drv_missing")], snapshot)
        errors = report.errors_of(ViolationKind.NOT_FOUND)
        assert len(errors) == 1
        assert errors[0].entity_id == "drv_missing"

    def test_driver_swap_is_valid(self, snapshot):
        """A plain swap is valid."""
        report = validate([StagedOperation.swap("drv_1", "drv_2")], snapshot)
        assert report.valid is True
        assert report.warnings == []

    def test_empty_session_is_valid(self, snapshot):
        """An empty session is valid."""
        assert validate([], snapshot).valid is True


class TestRaiseForErrors:
    """Blocking errors raised as engine exceptions."""

    def test_capacity_error(self, snapshot):
        """Scenario 1 raises CapacityError carrying the violation."""
        op = StagedOperation.assign_students(["stu_1", "stu_2", "stu_3"], "bus_2")
        report = validate([op], snapshot)

        with pytest.raises(CapacityError) as exc_info:
            report.raise_for_errors()
        assert str(exc_info.value) == "Bus-2 (AS-01-1002) exceeds capacity for Morning shift: 51/50"
        assert exc_info.value.violations == report.errors

    def test_capacity_override_does_not_raise(self, snapshot):
        """Overriding capacity leaves no blocking error."""
        op = StagedOperation.assign_students(["stu_1", "stu_2", "stu_3"], "bus_2")
        validate([op], snapshot).raise_for_errors(allow_capacity_override=True)

    def test_compatibility_error(self, snapshot):
        """A shift mismatch raises CompatibilityError."""
        report = validate([StagedOperation.assign_students(["stu_4"], "bus_3")], snapshot)
        with pytest.raises(CompatibilityError):
            report.raise_for_errors(allow_capacity_override=True)

    def test_mixed_types_validation_error(self, snapshot):
        """Mixed operation types raise ValidationError."""
        ops = [
            StagedOperation.assign_driver("drv_4", "bus_4"),
            StagedOperation.assign_students(["stu_1"], "bus_2"),
        ]
        with pytest.raises(ValidationError):
            validate(ops, snapshot).raise_for_errors()

    def test_rejected_operation_not_found(self, snapshot):
        """An unknown driver raises NotFoundError with its collection."""
        report = validate([StagedOperation.mark_reserved("drv_missing")], snapshot)
        with pytest.raises(NotFoundError) as exc_info:
            report.raise_for_errors()
        assert exc_info.value.collection == "drivers"
        assert exc_info.value.entity_id == "drv_missing"

    def test_valid_report_does_not_raise(self, snapshot):
        """A valid report raises nothing."""
        validate([StagedOperation.swap("drv_1", "drv_2")], snapshot).raise_for_errors()
