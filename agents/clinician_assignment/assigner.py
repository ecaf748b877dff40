"""
Real-time assignment procedures.

Two distinct decision procedures run the instant triage completes:

* GreedyAssigner: scores every active clinician with the cost model and
  takes the cheapest, ties broken by lowest clinician id.
* EmergencyFastPath: speed over specialty precision. Restricts to the
  clinicians at or below the average load and prefers the least-loaded
  specialty match there, else the least-loaded candidate.

Both only choose; the engine commits the choice under the store lock.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .config import AssignmentConfig
from .cost_model import (
    LoadSnapshot,
    compute_cost,
    is_malformed_requirement,
    specialty_matches,
)
from .exceptions import NoAvailableClinician
from .models import Clinician, CostBreakdown

logger = logging.getLogger(__name__)

MALFORMED_REQUIREMENT = "malformed_requirement"


@dataclass
class Choice:
    """A clinician picked by one of the procedures, before it is committed."""
    clinician: Clinician
    cost_breakdown: CostBreakdown
    warnings: List[str] = field(default_factory=list)


def _requirement_warnings(required_specialty: Optional[str], visit_id: Optional[int]) -> List[str]:
    if is_malformed_requirement(required_specialty):
        logger.warning(
            f"Visit {visit_id} has no required specialty; treating it as matching any clinician"
        )
        return [MALFORMED_REQUIREMENT]
    return []


class GreedyAssigner:
    """Minimum-cost choice among active clinicians."""

    def __init__(self, config: AssignmentConfig):
        self.config = config

    def choose(
        self,
        required_specialty: Optional[str],
        clinicians: Sequence[Clinician],
        snapshot: LoadSnapshot,
        visit_id: Optional[int] = None,
    ) -> Choice:
        """
        Pick the cheapest active clinician.

        Raises:
            NoAvailableClinician: if no clinician is active.
        """
        candidates = [c for c in clinicians if c.is_active]
        if not candidates:
            raise NoAvailableClinician(visit_id)

        warnings = _requirement_warnings(required_specialty, visit_id)

        scored = []
        for clinician in candidates:
            breakdown = compute_cost(required_specialty, clinician, snapshot, self.config)
            logger.debug(f"Visit {visit_id} -> {clinician.clinician_id}: {breakdown.as_dict()}")
            scored.append((breakdown.total, clinician.sort_key, clinician, breakdown))

        scored.sort(key=lambda item: (item[0], item[1]))
        _, _, best, breakdown = scored[0]
        return Choice(clinician=best, cost_breakdown=breakdown, warnings=warnings)


class EmergencyFastPath:
    """Least-loaded choice for Emergency-priority visits."""

    def __init__(self, config: AssignmentConfig):
        self.config = config

    def candidates(self, clinicians: Sequence[Clinician], snapshot: LoadSnapshot) -> List[Clinician]:
        """Active clinicians at or below the average load (all active if none are)."""
        active = [c for c in clinicians if c.is_active]
        if not active:
            return []
        avg = sum(snapshot.load_of(c.clinician_id) for c in active) / len(active)
        less_busy = [c for c in active if snapshot.load_of(c.clinician_id) <= avg]
        return less_busy or active

    def choose(
        self,
        required_specialty: Optional[str],
        clinicians: Sequence[Clinician],
        snapshot: LoadSnapshot,
        visit_id: Optional[int] = None,
    ) -> Choice:
        """
        Pick a clinician for an emergency without consulting the cost model.

        Raises:
            NoAvailableClinician: if no clinician is active.
        """
        candidates = self.candidates(clinicians, snapshot)
        if not candidates:
            raise NoAvailableClinician(visit_id)

        warnings = _requirement_warnings(required_specialty, visit_id)

        def by_load(clinician: Clinician):
            return (snapshot.load_of(clinician.clinician_id), clinician.sort_key)

        matches = [c for c in candidates if specialty_matches(required_specialty, c.specialty)]
        if matches:
            best = min(matches, key=by_load)
        else:
            best = min(candidates, key=by_load)
            logger.info(
                f"Emergency visit {visit_id}: no {required_specialty} specialist among "
                f"least-busy clinicians, falling back to {best.clinician_id}"
            )

        # Reported for audit only; the choice above does not depend on it.
        breakdown = compute_cost(required_specialty, best, snapshot, self.config)
        return Choice(clinician=best, cost_breakdown=breakdown, warnings=warnings)
