"""
Clinician Load Ledger.

Tracks the current caseload of every clinician: the number of visits
assigned to it that are not yet completed. Exactly one increment per
successful assignment and one decrement per completed (or released) visit.
A rebalancer move goes through ``reassign`` so it can never double count.
"""

import logging
import threading
from typing import Dict, Iterable, Optional

from .cost_model import average_load

logger = logging.getLogger(__name__)


class ClinicianLoadLedger:
    """Thread-safe caseload counters keyed by clinician id."""

    def __init__(self, initial: Optional[Dict[str, int]] = None):
        self._loads: Dict[str, int] = dict(initial or {})
        self._lock = threading.Lock()

    def register(self, clinician_id: str) -> None:
        """Start tracking a clinician with zero load (no-op if known)."""
        with self._lock:
            self._loads.setdefault(clinician_id, 0)

    def increment(self, clinician_id: str) -> int:
        with self._lock:
            self._loads[clinician_id] = self._loads.get(clinician_id, 0) + 1
            return self._loads[clinician_id]

    def decrement(self, clinician_id: str) -> int:
        """Decrement a clinician's load, flooring at zero."""
        with self._lock:
            current = self._loads.get(clinician_id, 0)
            if current == 0:
                logger.warning(f"Load of clinician {clinician_id} already 0; decrement ignored")
            self._loads[clinician_id] = max(0, current - 1)
            return self._loads[clinician_id]

    def reassign(self, old_clinician_id: str, new_clinician_id: str) -> None:
        """Move one unit of load from one clinician to another in a single step."""
        if old_clinician_id == new_clinician_id:
            return
        with self._lock:
            self._loads[old_clinician_id] = max(0, self._loads.get(old_clinician_id, 0) - 1)
            self._loads[new_clinician_id] = self._loads.get(new_clinician_id, 0) + 1

    def current_load(self, clinician_id: str) -> int:
        with self._lock:
            return self._loads.get(clinician_id, 0)

    def average_load(self, active_ids: Iterable[str]) -> float:
        """Mean load over the given (active) clinicians; 0.0 for an empty set."""
        with self._lock:
            return average_load(self._loads.get(cid, 0) for cid in active_ids)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._loads)

    def total(self) -> int:
        with self._lock:
            return sum(self._loads.values())
