"""
Clinic Store.

Explicit handle over the shared mutable state of the clinic: patients,
visits, the clinician roster and the load ledger. Engine operations take
the store's re-entrant lock around every read-choose-commit sequence, so
two concurrent assignments can never observe the same pre-increment load.

The clock is injected; the shared simulation clock of the platform is an
external collaborator.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from .cost_model import LoadSnapshot
from .exceptions import ClinicianNotFound, PatientNotFound, VisitNotFound
from .load_ledger import ClinicianLoadLedger
from .models import (
    as_utc,
    Availability,
    Clinician,
    Patient,
    Priority,
    Visit,
    VisitStatus,
)
from .visit_state import transition

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ClinicStore:
    """In-memory store of patients, visits and clinicians."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock: Clock = clock or utc_now
        self.lock = threading.RLock()
        self.ledger = ClinicianLoadLedger()
        self.patients: Dict[int, Patient] = {}
        self.visits: Dict[int, Visit] = {}
        self.clinicians: Dict[str, Clinician] = {}
        self._service_history: Dict[str, List[float]] = {}
        self._next_patient_id = 101
        self._next_visit_id = 1

    def now(self) -> datetime:
        return self.clock()

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    def add_clinician(
        self,
        clinician_id: str,
        name: str,
        specialty: str,
        availability: Availability = Availability.ACTIVE,
        average_service_time_seconds: Optional[float] = None,
        shift_ends_at: Optional[datetime] = None,
    ) -> Clinician:
        clinician = Clinician(
            clinician_id=clinician_id,
            name=name,
            specialty=specialty,
            availability=availability,
            average_service_time_seconds=average_service_time_seconds,
            shift_ends_at=as_utc(shift_ends_at),
        )
        with self.lock:
            self.clinicians[clinician_id] = clinician
            self.ledger.register(clinician_id)
        logger.info(f"Clinician {clinician_id} ({specialty}) added as {availability.value}")
        return clinician

    def next_clinician_id(self) -> str:
        """First unused ``d_N`` id, skipping ids that were given explicitly."""
        with self.lock:
            n = len(self.clinicians) + 1
            while f"d_{n}" in self.clinicians:
                n += 1
            return f"d_{n}"

    def load_roster(self, entries: Iterable[Dict]) -> List[Clinician]:
        """
        Load a roster query result.

        Each entry carries ``clinician_id``, ``name``, ``specialty``,
        ``availability`` and optionally ``average_service_time_seconds``
        and ``shift_ends_at``. Known clinicians are updated in place;
        their caseload is untouched.
        """
        loaded = []
        with self.lock:
            for entry in entries:
                availability = Availability(entry.get("availability", "active"))
                existing = self.clinicians.get(entry["clinician_id"])
                if existing is not None:
                    existing.name = entry.get("name", existing.name)
                    existing.specialty = entry.get("specialty", existing.specialty)
                    existing.availability = availability
                    existing.average_service_time_seconds = entry.get(
                        "average_service_time_seconds", existing.average_service_time_seconds
                    )
                    existing.shift_ends_at = as_utc(entry.get("shift_ends_at", existing.shift_ends_at))
                    loaded.append(existing)
                    continue
                loaded.append(self.add_clinician(
                    clinician_id=entry["clinician_id"],
                    name=entry.get("name", entry["clinician_id"]),
                    specialty=entry["specialty"],
                    availability=availability,
                    average_service_time_seconds=entry.get("average_service_time_seconds"),
                    shift_ends_at=entry.get("shift_ends_at"),
                ))
        return loaded

    def set_availability(self, clinician_id: str, availability: Availability) -> Clinician:
        with self.lock:
            clinician = self.get_clinician(clinician_id)
            clinician.availability = availability
        logger.info(f"Clinician {clinician_id} is now {availability.value}")
        return clinician

    def get_clinician(self, clinician_id: str) -> Clinician:
        clinician = self.clinicians.get(clinician_id)
        if clinician is None:
            raise ClinicianNotFound(f"Clinician {clinician_id} not found")
        return clinician

    def active_clinicians(self) -> List[Clinician]:
        """Active clinicians ordered by id."""
        with self.lock:
            return sorted(
                (c for c in self.clinicians.values() if c.is_active),
                key=lambda c: c.sort_key,
            )

    # ------------------------------------------------------------------
    # Patients and visits
    # ------------------------------------------------------------------

    def create_patient(self, name: str, phone: Optional[str] = None) -> Patient:
        with self.lock:
            patient = Patient(patient_id=self._next_patient_id, name=name, phone=phone)
            self._next_patient_id += 1
            self.patients[patient.patient_id] = patient
        return patient

    def get_patient(self, patient_id: int) -> Patient:
        patient = self.patients.get(patient_id)
        if patient is None:
            raise PatientNotFound(f"Patient {patient_id} not found")
        return patient

    def begin_visit(self, patient_id: int, arrived_at: Optional[datetime] = None) -> Visit:
        """Check a patient in and move the new visit straight into triage."""
        with self.lock:
            self.get_patient(patient_id)
            visit = Visit(
                visit_id=self._next_visit_id,
                patient_id=patient_id,
                arrived_at=as_utc(arrived_at) or self.now(),
                presenting_complaint="In Triage...",
            )
            self._next_visit_id += 1
            self.visits[visit.visit_id] = visit
            transition(visit, VisitStatus.TRIAGE, self.now())
        logger.info(f"Visit {visit.visit_id} started for patient {patient_id}")
        return visit

    def get_visit(self, visit_id: int) -> Visit:
        visit = self.visits.get(visit_id)
        if visit is None:
            raise VisitNotFound(f"Visit {visit_id} not found")
        return visit

    def list_visits(self, status: Optional[VisitStatus] = None) -> List[Visit]:
        with self.lock:
            visits = list(self.visits.values())
        if status is not None:
            visits = [v for v in visits if v.status == status]
        return sorted(visits, key=lambda v: v.visit_id)

    def waiting_visits(self, include_emergency: bool = True) -> List[Visit]:
        return [
            v for v in self.list_visits(VisitStatus.WAITING)
            if include_emergency or v.priority != Priority.EMERGENCY
        ]

    def consulting_visit_of(self, clinician_id: str) -> Optional[Visit]:
        for visit in self.list_visits(VisitStatus.IN_CONSULTATION):
            if visit.assigned_clinician_id == clinician_id:
                return visit
        return None

    def patient_history(self, patient_id: int) -> List[Visit]:
        """Completed visits of a patient, newest arrival first."""
        self.get_patient(patient_id)
        completed = [
            v for v in self.list_visits(VisitStatus.COMPLETED)
            if v.patient_id == patient_id
        ]
        return sorted(completed, key=lambda v: v.arrived_at, reverse=True)

    # ------------------------------------------------------------------
    # Service time history
    # ------------------------------------------------------------------

    def record_service_time(self, clinician_id: str, seconds: float) -> None:
        with self.lock:
            self._service_history.setdefault(clinician_id, []).append(max(0.0, seconds))

    def service_time_of(self, clinician: Clinician) -> Optional[float]:
        """Mean consultation length from history, else the roster value."""
        history = self._service_history.get(clinician.clinician_id)
        if history:
            return sum(history) / len(history)
        return clinician.average_service_time_seconds

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def load_snapshot(self, active: Optional[List[Clinician]] = None) -> LoadSnapshot:
        """
        Consistent view of loads for a decision.

        Callers that go on to mutate state must hold ``self.lock`` across
        the snapshot and the commit.
        """
        with self.lock:
            active = active if active is not None else self.active_clinicians()
            loads = self.ledger.snapshot()
            service_times = {}
            for clinician in self.clinicians.values():
                seconds = self.service_time_of(clinician)
                if seconds is not None:
                    service_times[clinician.clinician_id] = seconds
            return LoadSnapshot(
                loads=loads,
                average_load=self.ledger.average_load(c.clinician_id for c in active),
                now=self.now(),
                service_times=service_times,
            )
