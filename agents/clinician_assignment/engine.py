"""
Assignment Engine.

Ties the decision procedures, the load ledger and the visit state machine
together around one ClinicStore. Every read-choose-commit sequence runs
under ``store.lock``; all operations are synchronous.
"""

import logging
import time
from typing import List, Optional

from .assigner import Choice, EmergencyFastPath, GreedyAssigner
from .config import AssignmentConfig
from .exceptions import ConsultationConflict, InvalidTransition, NoAvailableClinician
from .models import (
    AssignmentPath,
    AssignmentResult,
    Diagnosis,
    Priority,
    TriageCompletion,
    Visit,
    VisitStatus,
    as_utc,
)
from .rebalancer import BatchRebalancer, RebalanceResult
from .store import ClinicStore
from .visit_state import transition

logger = logging.getLogger(__name__)


class AssignmentEngine:
    """Real-time and batch assignment over a clinic store."""

    def __init__(self, store: ClinicStore, config: Optional[AssignmentConfig] = None):
        self.store = store
        self.config = config or AssignmentConfig()
        self.greedy = GreedyAssigner(self.config)
        self.emergency = EmergencyFastPath(self.config)
        self.rebalancer = BatchRebalancer(self.config)

    # ------------------------------------------------------------------
    # Real-time path
    # ------------------------------------------------------------------

    def complete_triage(self, event: TriageCompletion) -> AssignmentResult:
        """
        Move a visit from triage to waiting and assign it immediately.

        NoAvailableClinician is not fatal: the visit stays waiting and
        unassigned, and the returned result carries the error name.
        """
        store = self.store
        with store.lock:
            visit = store.get_visit(event.visit_id)
            if visit.status != VisitStatus.TRIAGE:
                raise InvalidTransition(visit.visit_id, visit.status.value, VisitStatus.WAITING.value)

            visit.priority = event.priority
            visit.required_specialty = event.required_specialty
            if event.arrival_timestamp is not None:
                visit.arrived_at = as_utc(event.arrival_timestamp)
            if event.presenting_complaint:
                visit.presenting_complaint = event.presenting_complaint
            visit.transcript = list(event.transcript)
            visit.clinical_summary = dict(event.clinical_summary)
            transition(visit, VisitStatus.WAITING, store.now())

            logger.info(
                f"Visit {visit.visit_id} triaged: priority={visit.priority.value}, "
                f"specialty={visit.required_specialty!r}"
            )

            try:
                return self._assign_locked(visit)
            except NoAvailableClinician as e:
                logger.warning(f"{e}; visit {visit.visit_id} left waiting unassigned")
                return AssignmentResult(
                    visit_id=visit.visit_id,
                    clinician_id=None,
                    cost_breakdown=None,
                    decided_at=store.now(),
                    path=self._path_for(visit),
                    error=NoAvailableClinician.__name__,
                )

    def assign(self, visit_id: int) -> AssignmentResult:
        """
        Assign a waiting, unassigned visit.

        Raises:
            NoAvailableClinician: if no clinician is active.
            InvalidTransition: if the visit is not waiting or already assigned.
        """
        with self.store.lock:
            visit = self.store.get_visit(visit_id)
            return self._assign_locked(visit)

    def retry_unassigned(self) -> List[AssignmentResult]:
        """Retry every waiting, unassigned visit: emergencies first, then by arrival."""
        results = []
        with self.store.lock:
            pending = [v for v in self.store.waiting_visits() if not v.is_assigned]
            pending.sort(key=lambda v: (not v.is_emergency, v.arrived_at, v.visit_id))
            for visit in pending:
                try:
                    results.append(self._assign_locked(visit))
                except NoAvailableClinician:
                    logger.warning(
                        f"No active clinician; {len(pending) - len(results)} visits remain unassigned"
                    )
                    break
        return results

    def release_assignment(self, visit_id: int) -> Visit:
        """
        Compensate an abandoned assignment.

        The committed increment is undone with a decrement and the visit goes
        back to Waiting(unassigned).
        """
        with self.store.lock:
            visit = self.store.get_visit(visit_id)
            if visit.status != VisitStatus.WAITING or not visit.is_assigned:
                raise InvalidTransition(visit_id, visit.status.value, "waiting(unassigned)")
            self.store.ledger.decrement(visit.assigned_clinician_id)
            logger.info(f"Released visit {visit_id} from clinician {visit.assigned_clinician_id}")
            visit.assigned_clinician_id = None
            return visit

    def _path_for(self, visit: Visit) -> AssignmentPath:
        if visit.priority == Priority.EMERGENCY:
            return AssignmentPath.EMERGENCY
        return AssignmentPath.GREEDY

    def _assign_locked(self, visit: Visit) -> AssignmentResult:
        """Choose and commit; caller holds the store lock."""
        if visit.status != VisitStatus.WAITING or visit.is_assigned:
            raise InvalidTransition(visit.visit_id, visit.status.value, "waiting(assigned)")

        started = time.perf_counter()
        clinicians = self.store.active_clinicians()
        snapshot = self.store.load_snapshot(clinicians)
        path = self._path_for(visit)

        procedure = self.emergency if path == AssignmentPath.EMERGENCY else self.greedy
        choice: Choice = procedure.choose(
            visit.required_specialty, clinicians, snapshot, visit_id=visit.visit_id
        )

        self.store.ledger.increment(choice.clinician.clinician_id)
        visit.assigned_clinician_id = choice.clinician.clinician_id
        latency_ms = (time.perf_counter() - started) * 1000

        logger.info(
            f"Assigned visit {visit.visit_id} to {choice.clinician.clinician_id} "
            f"via {path.value} (cost={choice.cost_breakdown.total:.0f}s, {latency_ms:.2f}ms)"
        )
        return AssignmentResult(
            visit_id=visit.visit_id,
            clinician_id=choice.clinician.clinician_id,
            cost_breakdown=choice.cost_breakdown,
            decided_at=snapshot.now,
            path=path,
            latency_ms=round(latency_ms, 3),
            warnings=choice.warnings,
        )

    # ------------------------------------------------------------------
    # Consultation lifecycle
    # ------------------------------------------------------------------

    def call_in(self, visit_id: int, clinician_id: str) -> Visit:
        """
        The assigned clinician calls the patient into the cabin.

        Raises:
            ConsultationConflict: if the caller is not the assigned clinician
                or already has a patient in consultation.
        """
        with self.store.lock:
            visit = self.store.get_visit(visit_id)
            self.store.get_clinician(clinician_id)
            if visit.status != VisitStatus.WAITING:
                raise InvalidTransition(visit_id, visit.status.value, VisitStatus.IN_CONSULTATION.value)
            if visit.assigned_clinician_id != clinician_id:
                raise ConsultationConflict(
                    f"Visit {visit_id} is assigned to {visit.assigned_clinician_id}, not {clinician_id}"
                )
            busy = self.store.consulting_visit_of(clinician_id)
            if busy is not None:
                raise ConsultationConflict(
                    f"Clinician {clinician_id} is already consulting visit {busy.visit_id}"
                )
            transition(visit, VisitStatus.IN_CONSULTATION, self.store.now())
        logger.info(f"Clinician {clinician_id} called in visit {visit_id}")
        return visit

    def complete_visit(self, visit_id: int, notes: str, clinician_name: str = "Clinician") -> Visit:
        """Record the diagnosis, close the visit and release the clinician's load."""
        with self.store.lock:
            visit = self.store.get_visit(visit_id)
            now = self.store.now()
            transition(visit, VisitStatus.COMPLETED, now)
            visit.diagnosis = Diagnosis(
                notes=notes,
                discharge_summary=f"Discharged by {clinician_name}. Notes: {notes}",
                recorded_at=now,
                clinician_name=clinician_name,
            )
            clinician_id = visit.assigned_clinician_id
            if clinician_id is not None:
                self.store.ledger.decrement(clinician_id)
                if visit.consult_started_at is not None:
                    self.store.record_service_time(
                        clinician_id, (now - visit.consult_started_at).total_seconds()
                    )
        logger.info(f"Visit {visit_id} completed by {clinician_name}")
        return visit

    # ------------------------------------------------------------------
    # Batch path
    # ------------------------------------------------------------------

    def rebalance(self) -> RebalanceResult:
        return self.rebalancer.run(self.store)
