"""
Clinician Assignment Agent
==========================

Real-time patient-to-clinician assignment for clinic triage.

Given a stream of triaged patients (each with a required specialty and a
priority) and a pool of clinicians (specialty, availability, caseload),
the agent decides which clinician takes each new case and periodically
recomputes a globally optimal assignment of everyone still waiting.

Components:
-----------
- config: Environment configuration and cost model tunables
- cost_model: Pure scoring of a (requirement, clinician) pair
- load_ledger: Clinician caseload counters
- assigner: Greedy assigner and emergency fast-path
- rebalancer: OR-Tools min-cost matching over waiting visits
- visit_state: Visit lifecycle state machine
- store / engine: Clinic state handle and the operations over it
- api: FastAPI REST endpoints

Usage:
------
    python -m uvicorn clinician_assignment.api:app --host 0.0.0.0 --port 8006

Port: 8006

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Hospital AI Platform Team"

from .config import AssignmentConfig, settings
from .engine import AssignmentEngine
from .store import ClinicStore

__all__ = [
    "AssignmentConfig",
    "AssignmentEngine",
    "ClinicStore",
    "settings",
    "__version__",
]
