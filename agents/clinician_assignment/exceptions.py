"""
Error signals raised by the assignment engine.

None of these are process-fatal: the API layer maps each one to an HTTP
status or to an operator-visible no-op.
"""

from typing import Optional


class AssignmentError(Exception):
    """Base class for all engine errors."""


class NoAvailableClinician(AssignmentError):
    """No active clinician exists at decision time."""

    def __init__(self, visit_id: Optional[int] = None):
        self.visit_id = visit_id
        super().__init__(
            f"No active clinician available for visit {visit_id}"
            if visit_id is not None else "No active clinician available"
        )


class InfeasibleBatch(AssignmentError):
    """The rebalancer could not construct any matching."""


class InvalidTransition(AssignmentError):
    """A visit lifecycle transition that the state machine does not allow."""

    def __init__(self, visit_id: int, current: str, target: str):
        self.visit_id = visit_id
        self.current = current
        self.target = target
        super().__init__(f"Visit {visit_id} cannot move from {current} to {target}")


class ConsultationConflict(AssignmentError):
    """The clinician cannot call in this patient right now."""


class VisitNotFound(AssignmentError):
    """Unknown visit id."""


class ClinicianNotFound(AssignmentError):
    """Unknown clinician id."""


class PatientNotFound(AssignmentError):
    """Unknown patient id."""
