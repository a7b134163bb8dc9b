"""
Per-shift capacity and compatibility rules.

A bus serving both shifts carries two independent loads: morning and
evening students never ride at the same time, so each count is checked
against capacity on its own.

Overload rules:
    shift=Morning: overloaded if morning_count > capacity
    shift=Evening: overloaded if evening_count > capacity
    shift=Both:    overloaded if morning_count > capacity OR evening_count > capacity
"""

from typing import Optional

from .models import Bus, BusLoad, BusShift, OverloadInfo, Stop, StudentShift


def served_shifts(bus_shift: BusShift) -> tuple[StudentShift, ...]:
    """Student shifts a bus in the given mode carries."""
    if bus_shift == BusShift.MORNING:
        return (StudentShift.MORNING,)
    if bus_shift == BusShift.EVENING:
        return (StudentShift.EVENING,)
    return (StudentShift.MORNING, StudentShift.EVENING)


def is_shift_compatible(student_shift: StudentShift, bus_shift: BusShift) -> bool:
    """
    Check whether a student may ride a bus.

    Morning students ride Morning or Both buses; Evening students ride
    Both buses only.
    """
    if student_shift == StudentShift.MORNING:
        return bus_shift in (BusShift.MORNING, BusShift.BOTH)
    return bus_shift == BusShift.BOTH


def stops_include(stops: list[Stop], stop_id: str) -> bool:
    """Case-insensitive stop membership."""
    wanted = stop_id.lower()
    return any(stop.id.lower() == wanted for stop in stops)


def check_overload(
    bus_id: str,
    capacity: int,
    bus_shift: BusShift,
    load: BusLoad,
) -> Optional[OverloadInfo]:
    """
    Determine whether a load exceeds capacity on any served shift.

    Args:
        bus_id: Bus identifier (for reporting)
        capacity: Seats per shift
        bus_shift: Shift mode of the bus
        load: Per-shift counts

    Returns:
        OverloadInfo if overloaded, None otherwise

    Raises:
        ValueError: If capacity is not positive
    """
    if capacity <= 0:
        raise ValueError("capacity must be positive")

    morning_over = (
        StudentShift.MORNING in served_shifts(bus_shift)
        and load.morning_count > capacity
    )
    evening_over = (
        StudentShift.EVENING in served_shifts(bus_shift)
        and load.evening_count > capacity
    )

    if morning_over and evening_over:
        return OverloadInfo(
            bus_id=bus_id,
            reason="both",
            count=max(load.morning_count, load.evening_count),
            capacity=capacity,
            shift=bus_shift,
        )
    if morning_over:
        return OverloadInfo(
            bus_id=bus_id, reason="morning", count=load.morning_count,
            capacity=capacity, shift=bus_shift,
        )
    if evening_over:
        return OverloadInfo(
            bus_id=bus_id, reason="evening", count=load.evening_count,
            capacity=capacity, shift=bus_shift,
        )
    return None


def overloaded_buses(buses: list[Bus]) -> list[OverloadInfo]:
    """Buses whose stored load exceeds capacity on a served shift, in input order."""
    overloaded = []
    for bus in buses:
        info = check_overload(bus.id, bus.capacity, bus.shift, bus.load)
        if info is not None:
            overloaded.append(info)
    return overloaded


def capacity_excess(
    capacity: int,
    bus_shift: BusShift,
    before: BusLoad,
    after: BusLoad,
) -> list[tuple[StudentShift, int]]:
    """
    Served shifts whose count grows past capacity.

    A shift that was already over capacity and does not grow is not
    reported, so students can always be moved off an overloaded bus.

    Returns:
        List of (shift, new_count) pairs
    """
    excess = []
    for shift in served_shifts(bus_shift):
        new_count = after.count_for(shift)
        if new_count > capacity and new_count > before.count_for(shift):
            excess.append((shift, new_count))
    return excess


def available_seats(bus: Bus, shift: StudentShift) -> int:
    """Free seats for one shift (negative when overloaded)."""
    return bus.capacity - bus.load.count_for(shift)


def shift_load_pct(bus: Bus, shift: StudentShift, added: int = 0) -> float:
    """Load of one shift as a percentage of capacity."""
    return (bus.load.count_for(shift) + added) / bus.capacity * 100


def peak_load_ratio(bus: Bus, morning_delta: int = 0, evening_delta: int = 0) -> float:
    """Highest served-shift load as a fraction of capacity."""
    counts = {
        StudentShift.MORNING: bus.load.morning_count + morning_delta,
        StudentShift.EVENING: bus.load.evening_count + evening_delta,
    }
    return max(counts[s] for s in served_shifts(bus.shift)) / bus.capacity
