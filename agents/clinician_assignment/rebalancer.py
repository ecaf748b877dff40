"""
Batch Rebalancer using Google OR-Tools.

Periodically re-optimizes every waiting, non-emergency assignment as a
minimum-cost bipartite matching:

- Rows    = waiting visits (assigned or not)
- Columns = clinician "slots"; slot k of a clinician is the k-th place in
            its waiting queue, so it is scored with load = base + k
- Cost    = the same cost model the greedy path uses
- Solver  = OR-Tools linear sum assignment (exact, min-cost perfect
            matching on a square matrix padded with zero-cost dummy rows)

Only diffs are applied. A visit whose optimal clinician is unchanged is not
touched; exact ties are broken in favour of the current clinician, so a
move only happens when it strictly lowers the total cost. Emergency visits
are never revisited.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
from ortools.graph.python import linear_sum_assignment

from .config import AssignmentConfig
from .cost_model import LoadSnapshot, compute_cost
from .exceptions import InfeasibleBatch
from .models import (
    AssignmentPath,
    AssignmentResult,
    Clinician,
    CostBreakdown,
    Visit,
    VisitStatus,
)
from .store import ClinicStore

logger = logging.getLogger(__name__)

# Costs are in seconds; the integer solver works in milliseconds.
COST_SCALE = 1000


class RebalanceStatus(Enum):
    """Outcome of one rebalance cycle."""
    OPTIMAL = "optimal"
    NO_CHANGE = "no_change"
    INFEASIBLE = "infeasible"


@dataclass
class BatchSnapshot:
    """Consistent view taken under the store lock before solving."""
    visits: List[Visit]
    assigned_before: Dict[int, Optional[str]]
    clinicians: List[Clinician]
    base_loads: Dict[str, int]
    average_load: float
    snapshot: LoadSnapshot


@dataclass
class PlannedMove:
    visit_id: int
    from_clinician_id: Optional[str]
    to_clinician_id: str
    cost_breakdown: CostBreakdown


@dataclass
class RebalanceResult:
    """Result of the batch optimization."""
    status: RebalanceStatus
    results: List[AssignmentResult] = field(default_factory=list)
    visits_considered: int = 0
    total_cost_before: Optional[float] = None
    total_cost_after: Optional[float] = None
    solver_time_seconds: float = 0.0
    skipped_stale: int = 0
    message: str = ""


class BatchRebalancer:
    """
    Global re-optimizer of waiting assignments.

    Formulated as a Linear Sum Assignment problem:
    - x[i,j] = 1 if visit i takes clinician slot j
    - each visit takes exactly one slot, each slot holds at most one visit
    - minimize sum(cost[i,j] * x[i,j])
    """

    def __init__(self, config: AssignmentConfig):
        self.config = config

    def take_snapshot(self, store: ClinicStore) -> BatchSnapshot:
        with store.lock:
            visits = sorted(
                store.waiting_visits(include_emergency=False),
                key=lambda v: (v.arrived_at, v.visit_id),
            )
            clinicians = store.active_clinicians()
            snapshot = store.load_snapshot(clinicians)
            assigned_before = {v.visit_id: v.assigned_clinician_id for v in visits}

        base_loads = {c.clinician_id: snapshot.load_of(c.clinician_id) for c in clinicians}
        for visit in visits:
            if visit.assigned_clinician_id in base_loads:
                base_loads[visit.assigned_clinician_id] -= 1

        average = 0.0
        if clinicians:
            average = (sum(base_loads.values()) + len(visits)) / len(clinicians)

        return BatchSnapshot(
            visits=visits,
            assigned_before=assigned_before,
            clinicians=clinicians,
            base_loads=base_loads,
            average_load=average,
            snapshot=snapshot,
        )

    def slots_per_clinician(self, num_visits: int, num_clinicians: int) -> int:
        """Configured capacity, raised so that every visit can get a slot."""
        if num_clinicians == 0:
            return 0
        return max(self.config.max_parallel_waiting, math.ceil(num_visits / num_clinicians))

    def slot_cost(
        self,
        batch: BatchSnapshot,
        visit: Visit,
        clinician: Clinician,
        position: int,
    ) -> CostBreakdown:
        """Cost of ``visit`` taking queue position ``position`` with ``clinician``."""
        load = batch.base_loads[clinician.clinician_id] + position
        snapshot = LoadSnapshot(
            loads={clinician.clinician_id: load},
            average_load=batch.average_load,
            now=batch.snapshot.now,
            service_times=batch.snapshot.service_times,
        )
        return compute_cost(visit.required_specialty, clinician, snapshot, self.config)

    def build_cost_matrix(
        self, batch: BatchSnapshot
    ) -> Tuple[np.ndarray, List[Tuple[Clinician, int]]]:
        """
        Build the visit x slot cost matrix (seconds).

        Returns:
            Tuple of (costs array, slot list of (clinician, position)).
        """
        per_clinician = self.slots_per_clinician(len(batch.visits), len(batch.clinicians))
        slots = [
            (clinician, position)
            for clinician in batch.clinicians
            for position in range(per_clinician)
        ]
        costs = np.zeros((len(batch.visits), len(slots)), dtype=float)
        for i, visit in enumerate(batch.visits):
            for j, (clinician, position) in enumerate(slots):
                costs[i, j] = self.slot_cost(batch, visit, clinician, position).total
        return costs, slots

    def current_total_cost(self, batch: BatchSnapshot) -> Optional[float]:
        """
        Cost of the present mapping under the same slot model.

        None when some waiting visit has no active clinician to compare with.
        """
        active = {c.clinician_id: c for c in batch.clinicians}
        positions: Dict[str, int] = {}
        total = 0.0
        for visit in batch.visits:
            clinician_id = batch.assigned_before[visit.visit_id]
            if clinician_id not in active:
                return None
            position = positions.get(clinician_id, 0)
            positions[clinician_id] = position + 1
            total += self.slot_cost(batch, visit, active[clinician_id], position).total
        return total

    def solve(self, batch: BatchSnapshot) -> Tuple[List[PlannedMove], float]:
        """
        Solve the matching and return the moves that differ from today.

        Raises:
            InfeasibleBatch: if there are visits but no matching exists.
        """
        num_visits = len(batch.visits)
        if not batch.clinicians:
            raise InfeasibleBatch(
                f"{num_visits} waiting visits but no active clinician to match them with"
            )

        costs, slots = self.build_cost_matrix(batch)
        num_slots = len(slots)

        # A sub-unit bonus for staying put: the summed bonus never exceeds
        # one scaled unit, so it only decides between exact ties.
        tie_scale = num_visits + 1
        left, right, arc_costs = [], [], []
        for i, visit in enumerate(batch.visits):
            current = batch.assigned_before[visit.visit_id]
            for j, (clinician, _) in enumerate(slots):
                stay = 0 if clinician.clinician_id == current else 1
                left.append(i)
                right.append(j)
                arc_costs.append(int(round(costs[i, j] * COST_SCALE)) * tie_scale + stay)
        for i in range(num_visits, num_slots):
            for j in range(num_slots):
                left.append(i)
                right.append(j)
                arc_costs.append(0)

        assignment = linear_sum_assignment.SimpleLinearSumAssignment()
        assignment.add_arcs_with_cost(left, right, arc_costs)
        status = assignment.solve()
        if status != assignment.OPTIMAL:
            raise InfeasibleBatch(f"Assignment solver returned status {status}")

        moves = []
        total = 0.0
        for i, visit in enumerate(batch.visits):
            j = assignment.right_mate(i)
            clinician, position = slots[j]
            total += costs[i, j]
            current = batch.assigned_before[visit.visit_id]
            if clinician.clinician_id != current:
                moves.append(PlannedMove(
                    visit_id=visit.visit_id,
                    from_clinician_id=current,
                    to_clinician_id=clinician.clinician_id,
                    cost_breakdown=self.slot_cost(batch, visit, clinician, position),
                ))
        return moves, total

    def apply(
        self, store: ClinicStore, batch: BatchSnapshot, moves: List[PlannedMove]
    ) -> Tuple[List[AssignmentResult], int]:
        """
        Apply planned moves under the store lock.

        A move is skipped when the visit changed since the snapshot (no longer
        waiting or repointed by a concurrent assignment) or its target
        clinician is no longer active.
        """
        results = []
        skipped = 0
        with store.lock:
            decided_at = store.now()
            for move in moves:
                visit = store.visits.get(move.visit_id)
                target = store.clinicians.get(move.to_clinician_id)
                if (
                    visit is None
                    or visit.status != VisitStatus.WAITING
                    or visit.assigned_clinician_id != move.from_clinician_id
                    or target is None
                    or not target.is_active
                ):
                    logger.warning(f"Skipping stale rebalance move for visit {move.visit_id}")
                    skipped += 1
                    continue

                if move.from_clinician_id is None:
                    store.ledger.increment(move.to_clinician_id)
                else:
                    store.ledger.reassign(move.from_clinician_id, move.to_clinician_id)
                visit.assigned_clinician_id = move.to_clinician_id

                results.append(AssignmentResult(
                    visit_id=visit.visit_id,
                    clinician_id=move.to_clinician_id,
                    cost_breakdown=move.cost_breakdown,
                    decided_at=decided_at,
                    path=AssignmentPath.REBALANCE,
                    previous_clinician_id=move.from_clinician_id,
                ))
                logger.info(
                    f"Rebalanced visit {visit.visit_id}: "
                    f"{move.from_clinician_id} -> {move.to_clinician_id}"
                )
        return results, skipped

    def run(self, store: ClinicStore) -> RebalanceResult:
        """
        Main rebalancing entry point.

        Never clears a valid assignment on failure: an infeasible batch is
        reported and every prior assignment is left as it was.
        """
        solve_start = time.time()
        batch = self.take_snapshot(store)

        if not batch.visits:
            return RebalanceResult(
                status=RebalanceStatus.NO_CHANGE,
                message="No waiting visits to rebalance",
            )

        logger.info(
            f"Rebalancing {len(batch.visits)} waiting visits across "
            f"{len(batch.clinicians)} active clinicians"
        )
        cost_before = self.current_total_cost(batch)

        try:
            moves, cost_after = self.solve(batch)
        except InfeasibleBatch as e:
            logger.warning(f"Rebalance infeasible, keeping prior assignments: {e}")
            return RebalanceResult(
                status=RebalanceStatus.INFEASIBLE,
                visits_considered=len(batch.visits),
                total_cost_before=cost_before,
                solver_time_seconds=round(time.time() - solve_start, 3),
                message=str(e),
            )

        results, skipped = self.apply(store, batch, moves)
        solve_time = time.time() - solve_start

        logger.info(
            f"Rebalance complete: {len(results)} moved, {skipped} stale, "
            f"cost {cost_before} -> {round(cost_after, 3)}"
        )

        return RebalanceResult(
            status=RebalanceStatus.OPTIMAL if results else RebalanceStatus.NO_CHANGE,
            results=results,
            visits_considered=len(batch.visits),
            total_cost_before=cost_before,
            total_cost_after=round(cost_after, 3),
            solver_time_seconds=round(solve_time, 3),
            skipped_stale=skipped,
            message=f"{len(results)} visits reassigned",
        )
