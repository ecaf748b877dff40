"""
Domain types for the Clinician Assignment Agent.

Patients and visits come from the intake collaborator, clinicians from the
roster collaborator. Current caseload is not stored on the clinician: it
lives in the load ledger, which is the only writer of that number.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

_TRAILING_NUMBER = re.compile(r"^(.*?)(\d+)$")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps without an offset are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def clinician_sort_key(clinician_id: str) -> Tuple[str, int, str]:
    """Orders ``d_2`` before ``d_10``."""
    match = _TRAILING_NUMBER.match(clinician_id)
    if match is None:
        return (clinician_id, -1, clinician_id)
    return (match.group(1), int(match.group(2)), clinician_id)


class Priority(str, Enum):
    """Triage priority, fixed at triage time."""
    NORMAL = "Normal"
    PRIORITY = "Priority"
    EMERGENCY = "Emergency"


class VisitStatus(str, Enum):
    """Lifecycle states of a clinic visit."""
    CHECKED_IN = "checked_in"
    TRIAGE = "triage"
    WAITING = "waiting"
    IN_CONSULTATION = "in_consultation"
    COMPLETED = "completed"


class Availability(str, Enum):
    """Roster availability of a clinician."""
    ACTIVE = "active"
    BREAK = "break"
    OFFLINE = "offline"


class AssignmentPath(str, Enum):
    """Which decision procedure produced an assignment."""
    GREEDY = "greedy"
    EMERGENCY = "emergency"
    REBALANCE = "rebalance"


@dataclass(frozen=True)
class Patient:
    """A registered patient; immutable after check-in."""
    patient_id: int
    name: str
    phone: Optional[str] = None


@dataclass
class Diagnosis:
    """Discharge record submitted when a consultation ends."""
    notes: str
    discharge_summary: str
    recorded_at: datetime
    clinician_name: str


@dataclass
class Visit:
    """One clinic encounter, owned by the store."""
    visit_id: int
    patient_id: int
    arrived_at: datetime
    status: VisitStatus = VisitStatus.CHECKED_IN
    priority: Priority = Priority.NORMAL
    presenting_complaint: str = ""
    required_specialty: Optional[str] = None
    assigned_clinician_id: Optional[str] = None
    triage_completed_at: Optional[datetime] = None
    consult_started_at: Optional[datetime] = None
    consult_ended_at: Optional[datetime] = None
    transcript: List[Dict[str, Any]] = field(default_factory=list)
    clinical_summary: Dict[str, Any] = field(default_factory=dict)
    diagnosis: Optional[Diagnosis] = None

    @property
    def is_assigned(self) -> bool:
        return self.assigned_clinician_id is not None

    @property
    def is_emergency(self) -> bool:
        return self.priority == Priority.EMERGENCY


@dataclass
class Clinician:
    """A clinician from the roster."""
    clinician_id: str
    name: str
    specialty: str
    availability: Availability = Availability.ACTIVE
    average_service_time_seconds: Optional[float] = None
    shift_ends_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.availability == Availability.ACTIVE

    @property
    def sort_key(self) -> Tuple[str, int, str]:
        return clinician_sort_key(self.clinician_id)


@dataclass(frozen=True)
class CostBreakdown:
    """Every term of the cost model, in seconds."""
    mismatch: float
    wait: float
    load: float
    shift: float
    total: float

    def as_dict(self) -> Dict[str, float]:
        return {
            "mismatch": self.mismatch,
            "wait": self.wait,
            "load": self.load,
            "shift": self.shift,
            "total": self.total,
        }


@dataclass
class AssignmentResult:
    """
    Outcome of one assignment decision.

    ``clinician_id`` is None when no clinician could be chosen; ``error``
    then names the signal (e.g. ``NoAvailableClinician``).
    """
    visit_id: int
    clinician_id: Optional[str]
    cost_breakdown: Optional[CostBreakdown]
    decided_at: datetime
    path: AssignmentPath
    latency_ms: float = 0.0
    previous_clinician_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class TriageCompletion:
    """Event emitted by the intake collaborator when triage finishes."""
    visit_id: int
    required_specialty: Optional[str]
    priority: Priority
    arrival_timestamp: Optional[datetime] = None
    presenting_complaint: str = ""
    transcript: List[Dict[str, Any]] = field(default_factory=list)
    clinical_summary: Dict[str, Any] = field(default_factory=dict)
