"""
Cost Model for patient-to-clinician assignment.

Scores a (required specialty, clinician) pair against an immutable load
snapshot. All four terms and their total are returned together so every
decision can be audited after the fact:

    cost = mismatch + estimated_wait + load_penalty + shift_penalty

The function is pure: it reads nothing but its arguments, so identical
inputs always yield an identical breakdown.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping, Optional

from .config import AssignmentConfig
from .models import Clinician, CostBreakdown


@dataclass(frozen=True)
class LoadSnapshot:
    """Point-in-time view of clinician loads used for one decision."""
    loads: Mapping[str, int]
    average_load: float
    now: datetime
    service_times: Mapping[str, float] = field(default_factory=dict)

    def load_of(self, clinician_id: str) -> int:
        return self.loads.get(clinician_id, 0)

    def with_load(self, clinician_id: str, load: int) -> "LoadSnapshot":
        """Copy of this snapshot with one clinician's load replaced."""
        loads = dict(self.loads)
        loads[clinician_id] = load
        return LoadSnapshot(
            loads=loads,
            average_load=self.average_load,
            now=self.now,
            service_times=self.service_times,
        )


def normalize_specialty(specialty: Optional[str]) -> str:
    return (specialty or "").strip().lower()


def is_malformed_requirement(required_specialty: Optional[str]) -> bool:
    """A missing or blank requirement matches any specialty."""
    return normalize_specialty(required_specialty) == ""


def specialty_matches(required_specialty: Optional[str], clinician_specialty: str) -> bool:
    """Case-insensitive exact match; a malformed requirement matches anything."""
    if is_malformed_requirement(required_specialty):
        return True
    return normalize_specialty(required_specialty) == normalize_specialty(clinician_specialty)


def average_load(loads: Iterable[int]) -> float:
    values = list(loads)
    if not values:
        return 0.0
    return sum(values) / len(values)


def compute_cost(
    required_specialty: Optional[str],
    clinician: Clinician,
    snapshot: LoadSnapshot,
    config: AssignmentConfig,
) -> CostBreakdown:
    """
    Score one candidate clinician for one requirement.

    Args:
        required_specialty: Specialty set at triage (may be blank).
        clinician: Candidate clinician.
        snapshot: Loads, service times and clock for this decision.
        config: Cost model tunables.

    Returns:
        CostBreakdown with mismatch, wait, load, shift and total seconds.
    """
    mismatch = 0.0
    if not specialty_matches(required_specialty, clinician.specialty):
        mismatch = float(config.mismatch_penalty_seconds)

    load = snapshot.load_of(clinician.clinician_id)
    service_time = snapshot.service_times.get(
        clinician.clinician_id, config.default_service_time_seconds
    )
    wait = float(load * service_time)

    load_penalty = max(0.0, load - snapshot.average_load) * config.load_penalty_weight_seconds

    shift = 0.0
    if clinician.shift_ends_at is not None:
        remaining = (clinician.shift_ends_at - snapshot.now).total_seconds()
        if remaining < config.shift_penalty_threshold_seconds:
            shift = float(config.shift_penalty_seconds)

    return CostBreakdown(
        mismatch=mismatch,
        wait=wait,
        load=float(load_penalty),
        shift=shift,
        total=mismatch + wait + float(load_penalty) + shift,
    )
