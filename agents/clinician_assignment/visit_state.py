"""
Visit State Machine.

    CHECKED_IN -> TRIAGE -> WAITING -> IN_CONSULTATION -> COMPLETED

No transition may be skipped. Waiting(assigned) and Waiting(unassigned)
share the WAITING state; the assigned clinician tells them apart, and a
rebalancer move changes the clinician without leaving WAITING.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet

from .exceptions import InvalidTransition
from .models import Visit, VisitStatus

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[VisitStatus, FrozenSet[VisitStatus]] = {
    VisitStatus.CHECKED_IN: frozenset({VisitStatus.TRIAGE}),
    VisitStatus.TRIAGE: frozenset({VisitStatus.WAITING}),
    VisitStatus.WAITING: frozenset({VisitStatus.IN_CONSULTATION}),
    VisitStatus.IN_CONSULTATION: frozenset({VisitStatus.COMPLETED}),
    VisitStatus.COMPLETED: frozenset(),
}


def can_transition(current: VisitStatus, target: VisitStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(visit: Visit, target: VisitStatus, at: datetime) -> Visit:
    """
    Move a visit to ``target`` and stamp the matching timestamp.

    Raises:
        InvalidTransition: if the move is not in the transition table.
    """
    if not can_transition(visit.status, target):
        raise InvalidTransition(visit.visit_id, visit.status.value, target.value)

    if target == VisitStatus.WAITING:
        visit.triage_completed_at = at
    elif target == VisitStatus.IN_CONSULTATION:
        visit.consult_started_at = at
    elif target == VisitStatus.COMPLETED:
        visit.consult_ended_at = at

    logger.debug(f"Visit {visit.visit_id}: {visit.status.value} -> {target.value}")
    visit.status = target
    return visit


def is_outstanding(visit: Visit) -> bool:
    """True for visits that count toward a clinician's load."""
    return visit.is_assigned and visit.status in (
        VisitStatus.WAITING,
        VisitStatus.IN_CONSULTATION,
    )
