"""
Candidate bus ranking.

Scores candidate buses for a group of students leaving a source bus:

    score = 0.5 * seat availability
          + 0.3 * stop proximity
          + 0.15 * shift match
          + 0.05 * load reduction

Each factor is in [0, 1]. Ranking is deterministic: ties are broken by
bus number, then id.
"""

import logging
import math
from typing import Optional

from .capacity import (
    available_seats,
    is_shift_compatible,
    peak_load_ratio,
    served_shifts,
    shift_load_pct,
)
from .models import (
    AutoSplitResult,
    Bus,
    BusShift,
    RankedBus,
    RankingWeights,
    SplitAssignment,
    SplitMetrics,
    Student,
    StudentShift,
    UnassignedStudent,
    natural_key,
)

logger = logging.getLogger(__name__)

DEFAULT_OVERLOAD_RATIO = 0.9
DEFAULT_LOAD_THRESHOLD = 90.0


def shift_demand(students: list[Student]) -> dict[StudentShift, int]:
    """Number of students per shift."""
    demand = {StudentShift.MORNING: 0, StudentShift.EVENING: 0}
    for student in students:
        demand[student.shift] += 1
    return demand


def _tie_break(ranked: RankedBus) -> tuple:
    return (-ranked.score, natural_key(ranked.bus.bus_number), ranked.bus.id)


class AllocationRanker:
    """
    Weighted scorer for candidate buses.

    Args:
        weights: Factor weights (defaults 0.5 / 0.3 / 0.15 / 0.05)
        overload_ratio: Load fraction above which a bus counts as overloaded
    """

    def __init__(
        self,
        weights: Optional[RankingWeights] = None,
        overload_ratio: float = DEFAULT_OVERLOAD_RATIO,
    ):
        self.weights = weights or RankingWeights()
        self.overload_ratio = overload_ratio

    def rank_buses(
        self,
        candidates: list[Bus],
        students: list[Student],
        source_bus: Bus,
    ) -> list[RankedBus]:
        """
        Rank candidate buses, best first.

        Args:
            candidates: Buses the students could move to
            students: Students leaving the source bus
            source_bus: The bus being relieved

        Returns:
            RankedBus list sorted by descending score
        """
        ranked = [self.score_bus(bus, students, source_bus) for bus in candidates]
        ranked.sort(key=_tie_break)
        return ranked

    def score_bus(self, bus: Bus, students: list[Student], source_bus: Bus) -> RankedBus:
        demand = shift_demand(students)
        needed_shifts = [s for s, n in demand.items() if n > 0] or list(served_shifts(bus.shift))

        seats = min(available_seats(bus, shift) for shift in needed_shifts)
        fits = all(available_seats(bus, s) >= demand[s] for s in needed_shifts)
        seat_score = seats / bus.capacity if fits and seats > 0 else 0.0

        proximity = self.stop_proximity(bus, students, source_bus)
        shift_match = self.shift_match(bus, students, source_bus)
        load_reduction = self.load_reduction(bus, demand, source_bus)

        score = (
            self.weights.seat_availability * seat_score
            + self.weights.stop_proximity * proximity
            + self.weights.shift_match * shift_match
            + self.weights.load_reduction * load_reduction
        )

        current_pct = peak_load_ratio(bus) * 100
        new_pct = peak_load_ratio(
            bus, demand[StudentShift.MORNING], demand[StudentShift.EVENING]
        ) * 100

        return RankedBus(
            bus=bus,
            score=score,
            seat_score=seat_score,
            stop_proximity_score=proximity,
            shift_match_score=shift_match,
            load_reduction_score=load_reduction,
            available_seats=seats,
            new_load_pct=new_pct,
            reason=(
                f"Score: {score * 100:.0f}/100 | Load: {current_pct:.0f}% → {new_pct:.0f}% "
                f"| Free: {seats} seats"
            ),
        )

    @staticmethod
    def stop_proximity(bus: Bus, students: list[Student], source_bus: Bus) -> float:
        """
        Mean of 1 / (1 + |position difference|) over the students' stops.

        Zero as soon as the candidate misses one of the stops.
        """
        total = 0.0
        count = 0
        for stop_id in dict.fromkeys(s.stop_id for s in students):
            candidate_index = bus.stop_position(stop_id)
            if candidate_index is None:
                return 0.0
            source_index = source_bus.stop_position(stop_id)
            if source_index is not None:
                total += 1 / (1 + abs(candidate_index - source_index))
                count += 1
        return total / count if count else 0.0

    @staticmethod
    def shift_match(bus: Bus, students: list[Student], source_bus: Bus) -> float:
        if bus.shift == source_bus.shift:
            return 1.0
        if BusShift.BOTH in (bus.shift, source_bus.shift):
            return 0.75
        if students:
            matching = [s for s in students if is_shift_compatible(s.shift, bus.shift)]
            return len(matching) / len(students)
        return 0.25

    def load_reduction(
        self,
        bus: Bus,
        demand: dict[StudentShift, int],
        source_bus: Bus,
    ) -> float:
        """
        How much moving the students relieves the source bus.

        Zero when the target itself would cross the overload ratio.
        """
        morning, evening = demand[StudentShift.MORNING], demand[StudentShift.EVENING]

        target_new = peak_load_ratio(bus, morning, evening)
        if target_new > self.overload_ratio:
            return 0.0

        source_now = peak_load_ratio(source_bus)
        source_new = peak_load_ratio(source_bus, -morning, -evening)
        source_overload = max(0.0, source_now - self.overload_ratio)
        new_overload = max(0.0, source_new - self.overload_ratio)

        score = (source_overload - new_overload) * 10
        if source_overload > 0 and source_new <= self.overload_ratio:
            score += 0.5
        score -= max(0.0, target_new - 0.7) * 2

        return max(0.0, min(1.0, score))

    def find_optimal_split(
        self,
        candidates: list[Bus],
        students: list[Student],
        source_bus: Bus,
        max_load_pct: float = 100.0,
    ) -> AutoSplitResult:
        """
        Greedily distribute students over the ranked candidates.

        A bus takes a student when it serves the student's stop, carries the
        student's shift and still has a seat for that shift below
        max_load_pct of capacity.

        Returns:
            AutoSplitResult with per-bus assignments and unassigned students
        """
        remaining = list(students)
        assignments: list[SplitAssignment] = []

        for ranked in self.rank_buses(candidates, students, source_bus):
            if not remaining:
                break
            bus = ranked.bus
            limit = math.floor(bus.capacity * max_load_pct / 100)
            free = {
                shift: min(available_seats(bus, shift), limit - bus.load.count_for(shift))
                for shift in StudentShift
            }

            taken: list[Student] = []
            for student in remaining:
                if not bus.has_stop(student.stop_id):
                    continue
                if not is_shift_compatible(student.shift, bus.shift):
                    continue
                if free[student.shift] <= 0:
                    continue
                free[student.shift] -= 1
                taken.append(student)

            if not taken:
                continue

            taken_ids = {s.id for s in taken}
            remaining = [s for s in remaining if s.id not in taken_ids]
            added = shift_demand(taken)
            assignments.append(SplitAssignment(
                bus_id=bus.id,
                bus_number=bus.bus_number,
                student_ids=[s.id for s in taken],
                morning_added=added[StudentShift.MORNING],
                evening_added=added[StudentShift.EVENING],
                final_morning_pct=shift_load_pct(bus, StudentShift.MORNING, added[StudentShift.MORNING]),
                final_evening_pct=shift_load_pct(bus, StudentShift.EVENING, added[StudentShift.EVENING]),
            ))

        unassigned = [
            UnassignedStudent(student_id=s.id, reason=self._unassigned_reason(candidates, s))
            for s in remaining
        ]
        if unassigned:
            logger.warning(
                "Auto-split left students unassigned | source=%s count=%d",
                source_bus.id, len(unassigned),
            )
        return AutoSplitResult(
            assignments=assignments,
            unassigned=unassigned,
            metrics=self.calculate_metrics(assignments, candidates, source_bus),
        )

    def calculate_metrics(
        self,
        assignments: list[SplitAssignment],
        candidates: list[Bus],
        source_bus: Bus,
    ) -> SplitMetrics:
        """
        Summarize the loads a split plan leaves behind.

        The source bus loses every placed student and each receiving bus
        gains its own. Loads are the peak served shift of each bus.
        """
        deltas: dict[str, list[int]] = {}
        for a in assignments:
            deltas[a.bus_id] = [a.morning_added, a.evening_added]
            source = deltas.setdefault(source_bus.id, [0, 0])
            source[0] -= a.morning_added
            source[1] -= a.evening_added

        buses = [source_bus] + [b for b in candidates if b.id != source_bus.id]
        ratios = [peak_load_ratio(bus, *deltas.get(bus.id, (0, 0))) for bus in buses]

        return SplitMetrics(
            students_moved=sum(len(a.student_ids) for a in assignments),
            buses_affected=len(deltas),
            average_load_after=sum(ratios) / len(ratios) * 100,
            overloaded_buses_after=sum(1 for r in ratios if r >= self.overload_ratio),
        )

    @staticmethod
    def _unassigned_reason(candidates: list[Bus], student: Student) -> str:
        with_stop = [b for b in candidates if b.has_stop(student.stop_id)]
        if not with_stop:
            return f'No bus serves stop "{student.stop_id}"'
        if not any(is_shift_compatible(student.shift, b.shift) for b in with_stop):
            found = ", ".join(f"{b.bus_number or b.id}:{b.shift.value}" for b in with_stop)
            return (
                f'Buses cover this stop but none match shift "{student.shift.value}" '
                f"(found: {found})"
            )
        return "No seats left on compatible buses"


def suggest_candidates(
    students: list[Student],
    buses: list[Bus],
    source_bus: Bus,
    threshold: float = DEFAULT_LOAD_THRESHOLD,
    ranker: Optional[AllocationRanker] = None,
) -> list[RankedBus]:
    """
    Buses that can take the whole group, best first.

    A candidate serves every stop of the group, carries every shift in it,
    has enough free seats per shift and stays at or below `threshold`
    percent load on each shift.

    Args:
        students: Students to move together
        buses: All buses to consider
        source_bus: Current bus (excluded)
        threshold: Maximum per-shift load percentage after the move
        ranker: Ranker to order the survivors (default weights if omitted)

    Returns:
        Ranked candidates
    """
    demand = shift_demand(students)
    required_stops = list(dict.fromkeys(s.stop_id for s in students))

    candidates = []
    for bus in buses:
        if bus.id == source_bus.id:
            continue
        if not all(bus.has_stop(stop_id) for stop_id in required_stops):
            continue
        if any(n > 0 and not is_shift_compatible(shift, bus.shift) for shift, n in demand.items()):
            continue
        if any(n > 0 and available_seats(bus, shift) < n for shift, n in demand.items()):
            continue
        if any(shift_load_pct(bus, shift, n) > threshold for shift, n in demand.items()):
            continue
        candidates.append(bus)

    logger.info(
        "Auto-suggest | source=%s students=%d candidates=%d threshold=%s",
        source_bus.id, len(students), len(candidates), threshold,
    )
    return (ranker or AllocationRanker()).rank_buses(candidates, students, source_bus)


def auto_split(
    students: list[Student],
    buses: list[Bus],
    source_bus: Bus,
    threshold: float = DEFAULT_LOAD_THRESHOLD,
    ranker: Optional[AllocationRanker] = None,
) -> AutoSplitResult:
    """
    Spread students over several buses when no single bus can take them.

    Every bus except the source is a candidate; see
    AllocationRanker.find_optimal_split for the placement rules.
    """
    candidates = [b for b in buses if b.id != source_bus.id]
    return (ranker or AllocationRanker()).find_optimal_split(
        candidates, students, source_bus, max_load_pct=threshold
    )
