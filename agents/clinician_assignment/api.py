"""
Clinician Assignment Agent - FastAPI Application

This module provides the REST API for the patient-to-clinician assignment
service. It exposes endpoints for the visit lifecycle, real-time assignment
at triage completion, batch rebalancing and operational metrics.

================================================================================
ASSIGNMENT FLOW
================================================================================

    POST /patients ──► POST /visits ──► POST /triage/complete
                        (checked_in       │
                         -> triage)       ├── Emergency ──► Emergency fast-path
                                          └── otherwise ──► Greedy cost model
                                                  │
                                                  ▼
                                       waiting (assigned clinician)
                                                  │
                 POST /rebalance (or background task) may move it to
                 another clinician while it stays waiting
                                                  │
                                                  ▼
                     POST /visits/{id}/call-in ──► in_consultation
                                                  │
                                                  ▼
                     POST /visits/{id}/complete ──► completed (load released)

================================================================================
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import AssignmentConfig, settings
from .engine import AssignmentEngine
from .exceptions import (
    AssignmentError,
    ClinicianNotFound,
    ConsultationConflict,
    InvalidTransition,
    NoAvailableClinician,
    PatientNotFound,
    VisitNotFound,
)
from .metrics import clinic_stats, queue_metrics
from .models import (
    AssignmentResult,
    Availability,
    Clinician,
    Priority,
    TriageCompletion,
    Visit,
    VisitStatus,
)
from .rebalancer import RebalanceResult
from .store import ClinicStore

LOG_FORMATS = {
    "text": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "json": '{"time": "%(asctime)s", "logger": "%(name)s", "level": "%(levelname)s", "message": "%(message)s"}',
}

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format=LOG_FORMATS.get(settings.log_format, LOG_FORMATS["text"]),
)
logger = logging.getLogger(__name__)


# =============================================================================
# PYDANTIC MODELS (Request/Response Schemas)
# =============================================================================

class CostBreakdownModel(BaseModel):
    """Every term of the cost model, in seconds."""
    mismatch: float
    wait: float
    load: float
    shift: float
    total: float


class AssignmentResultResponse(BaseModel):
    """One assignment decision."""
    visit_id: int
    clinician_id: Optional[str]
    cost_breakdown: Optional[CostBreakdownModel]
    decided_at: datetime
    path: str
    latency_ms: float = 0.0
    previous_clinician_id: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class ClinicianCreate(BaseModel):
    """Roster entry for a new clinician."""
    clinician_id: Optional[str] = None
    name: str = Field(min_length=1)
    specialty: str = Field(min_length=1)
    availability: Availability = Availability.ACTIVE
    average_service_time_seconds: Optional[float] = Field(default=None, gt=0)
    shift_ends_at: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "clinician_id": "d_7",
                "name": "Dr. G. Lee",
                "specialty": "Cardiology",
                "availability": "active",
                "average_service_time_seconds": 840,
            }
        }


class AvailabilityUpdate(BaseModel):
    availability: Availability


class ClinicianResponse(BaseModel):
    clinician_id: str
    name: str
    specialty: str
    availability: Availability
    current_load: int
    average_service_time_seconds: Optional[float]
    shift_ends_at: Optional[datetime]


class PatientCreate(BaseModel):
    name: str = Field(min_length=1)
    phone: Optional[str] = None


class PatientResponse(BaseModel):
    patient_id: int
    name: str
    phone: Optional[str]


class VisitCreate(BaseModel):
    """Check-in request; ``arrived_at`` backdates a backlog arrival."""
    patient_id: int
    arrived_at: Optional[datetime] = None


class DiagnosisModel(BaseModel):
    notes: str
    discharge_summary: str
    recorded_at: datetime
    clinician_name: str


class VisitResponse(BaseModel):
    visit_id: int
    patient_id: int
    patient_name: str
    status: VisitStatus
    priority: Priority
    presenting_complaint: str
    required_specialty: Optional[str]
    assigned_clinician_id: Optional[str]
    arrived_at: datetime
    triage_completed_at: Optional[datetime]
    consult_started_at: Optional[datetime]
    consult_ended_at: Optional[datetime]
    diagnosis: Optional[DiagnosisModel] = None


class TriageCompletionRequest(BaseModel):
    """Event from the intake collaborator when triage finishes."""
    visit_id: int
    required_specialty: Optional[str] = None
    priority: Priority = Priority.NORMAL
    arrival_timestamp: Optional[datetime] = None
    presenting_complaint: str = ""
    transcript: List[Dict[str, Any]] = Field(default_factory=list)
    clinical_summary: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "visit_id": 1,
                "required_specialty": "Cardiology",
                "priority": "Normal",
                "presenting_complaint": "Palpitations for the last hour",
            }
        }


class CallInRequest(BaseModel):
    clinician_id: str


class CompleteVisitRequest(BaseModel):
    notes: str = "Patient discharged after consultation."
    clinician_name: str = "Clinician"


class RebalanceResponse(BaseModel):
    status: str
    results: List[AssignmentResultResponse]
    visits_considered: int
    total_cost_before: Optional[float]
    total_cost_after: Optional[float]
    solver_time_seconds: float
    skipped_stale: int
    message: str


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, Dict[str, Any]]


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState:
    """
    Application state management.

    Holds the clinic store and the engine built over it, plus the outcome
    of the last rebalance cycle for the health check.
    """

    def __init__(self):
        self.config = AssignmentConfig.from_settings(settings)
        self.store = ClinicStore()
        self.engine = AssignmentEngine(self.store, self.config)
        self.last_rebalance: Optional[RebalanceResult] = None
        self.last_rebalance_at: Optional[datetime] = None

    def reset(self) -> None:
        """Start over with an empty clinic."""
        self.__init__()

    def load_roster_file(self, path: str) -> List[Clinician]:
        """Load a JSON roster, validating each entry like POST /clinicians."""
        with open(path, "r", encoding="utf-8") as f:
            entries = json.load(f)
        validated = []
        for entry in entries:
            if not entry.get("clinician_id"):
                raise ValueError(f"Roster entry without clinician_id: {entry}")
            validated.append(ClinicianCreate(**entry).model_dump())
        loaded = self.store.load_roster(validated)
        logger.info(f"Loaded {len(loaded)} clinicians from {path}")
        return loaded

    def run_cycle(self) -> RebalanceResult:
        """One background cycle: retry unassigned visits, then rebalance."""
        self.engine.retry_unassigned()
        return self.run_rebalance()

    def run_rebalance(self) -> RebalanceResult:
        """Rebalance once and remember the outcome for the health check."""
        result = self.engine.rebalance()
        self.last_rebalance = result
        self.last_rebalance_at = self.store.now()
        return result


# Global application state
app_state = AppState()


async def rebalance_loop(interval_seconds: int) -> None:
    """Periodic rebalance trigger."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app_state.run_cycle)
        except Exception as e:
            logger.error(f"Background rebalance failed: {e}", exc_info=True)


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Starts the periodic rebalance task when an interval is configured.
    """
    logger.info(f"Starting {settings.service_name} v{settings.service_version}")

    if settings.roster_file:
        try:
            app_state.load_roster_file(settings.roster_file)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load roster from {settings.roster_file}: {e}")

    task = None
    if settings.rebalance_interval_seconds > 0:
        task = asyncio.create_task(rebalance_loop(settings.rebalance_interval_seconds))
        logger.info(f"Background rebalance every {settings.rebalance_interval_seconds}s")

    yield

    if task is not None:
        task.cancel()
    logger.info("Shutting down clinician assignment agent")


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="Clinician Assignment Agent",
    description="""
    Real-time patient-to-clinician assignment for clinic triage.

    ## Features
    - **Greedy Assignment**: Cost model balancing specialty fit, wait and load
    - **Emergency Fast-Path**: Least-busy clinician, specialist preferred
    - **Batch Rebalancing**: Exact min-cost matching with OR-Tools
    - **Visit Lifecycle**: Triage, waiting, consultation and discharge
    """,
    version=settings.service_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# RESPONSE BUILDERS
# =============================================================================

def to_assignment_response(result: AssignmentResult) -> AssignmentResultResponse:
    breakdown = None
    if result.cost_breakdown is not None:
        breakdown = CostBreakdownModel(**result.cost_breakdown.as_dict())
    return AssignmentResultResponse(
        visit_id=result.visit_id,
        clinician_id=result.clinician_id,
        cost_breakdown=breakdown,
        decided_at=result.decided_at,
        path=result.path.value,
        latency_ms=result.latency_ms,
        previous_clinician_id=result.previous_clinician_id,
        warnings=result.warnings,
        error=result.error,
    )


def to_clinician_response(clinician: Clinician) -> ClinicianResponse:
    return ClinicianResponse(
        clinician_id=clinician.clinician_id,
        name=clinician.name,
        specialty=clinician.specialty,
        availability=clinician.availability,
        current_load=app_state.store.ledger.current_load(clinician.clinician_id),
        average_service_time_seconds=app_state.store.service_time_of(clinician),
        shift_ends_at=clinician.shift_ends_at,
    )


def to_visit_response(visit: Visit) -> VisitResponse:
    patient = app_state.store.patients.get(visit.patient_id)
    diagnosis = None
    if visit.diagnosis is not None:
        diagnosis = DiagnosisModel(
            notes=visit.diagnosis.notes,
            discharge_summary=visit.diagnosis.discharge_summary,
            recorded_at=visit.diagnosis.recorded_at,
            clinician_name=visit.diagnosis.clinician_name,
        )
    return VisitResponse(
        visit_id=visit.visit_id,
        patient_id=visit.patient_id,
        patient_name=patient.name if patient else "Unknown",
        status=visit.status,
        priority=visit.priority,
        presenting_complaint=visit.presenting_complaint,
        required_specialty=visit.required_specialty,
        assigned_clinician_id=visit.assigned_clinician_id,
        arrived_at=visit.arrived_at,
        triage_completed_at=visit.triage_completed_at,
        consult_started_at=visit.consult_started_at,
        consult_ended_at=visit.consult_ended_at,
        diagnosis=diagnosis,
    )


def to_rebalance_response(result: RebalanceResult) -> RebalanceResponse:
    return RebalanceResponse(
        status=result.status.value,
        results=[to_assignment_response(r) for r in result.results],
        visits_considered=result.visits_considered,
        total_cost_before=result.total_cost_before,
        total_cost_after=result.total_cost_after,
        solver_time_seconds=result.solver_time_seconds,
        skipped_stale=result.skipped_stale,
        message=result.message,
    )


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Operations"])
async def health_check() -> HealthResponse:
    """Health check endpoint for Kubernetes probes."""
    store = app_state.store
    checks = {
        "engine": {
            "status": "ok",
            "active_clinicians": len(store.active_clinicians()),
            "waiting_visits": len(store.waiting_visits()),
        },
        "rebalancer": {
            "status": "ok",
            "interval_seconds": settings.rebalance_interval_seconds,
            "last_status": app_state.last_rebalance.status.value if app_state.last_rebalance else None,
            "last_run_at": app_state.last_rebalance_at.isoformat() if app_state.last_rebalance_at else None,
        },
    }
    overall_status = "healthy"
    if checks["engine"]["active_clinicians"] == 0:
        checks["engine"]["status"] = "degraded"
        checks["engine"]["message"] = "No active clinicians"
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=settings.service_version,
        timestamp=store.now(),
        checks=checks,
    )


@app.get("/clinicians", response_model=List[ClinicianResponse], tags=["Roster"])
async def list_clinicians() -> List[ClinicianResponse]:
    clinicians = sorted(app_state.store.clinicians.values(), key=lambda c: c.sort_key)
    return [to_clinician_response(c) for c in clinicians]


@app.post(
    "/clinicians",
    response_model=ClinicianResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Roster"],
)
async def add_clinician(request: ClinicianCreate) -> ClinicianResponse:
    """Add a clinician to the roster with zero caseload."""
    store = app_state.store
    clinician_id = request.clinician_id or store.next_clinician_id()
    if clinician_id in store.clinicians:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Clinician already exists: {clinician_id}",
        )
    clinician = store.add_clinician(
        clinician_id=clinician_id,
        name=request.name,
        specialty=request.specialty,
        availability=request.availability,
        average_service_time_seconds=request.average_service_time_seconds,
        shift_ends_at=request.shift_ends_at,
    )
    return to_clinician_response(clinician)


@app.put(
    "/clinicians/{clinician_id}/availability",
    response_model=ClinicianResponse,
    tags=["Roster"],
)
async def update_availability(clinician_id: str, request: AvailabilityUpdate) -> ClinicianResponse:
    clinician = app_state.store.set_availability(clinician_id, request.availability)
    return to_clinician_response(clinician)


@app.post(
    "/patients",
    response_model=PatientResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Visits"],
)
async def create_patient(request: PatientCreate) -> PatientResponse:
    patient = app_state.store.create_patient(request.name, request.phone)
    return PatientResponse(patient_id=patient.patient_id, name=patient.name, phone=patient.phone)


@app.get("/patients/{patient_id}/history", response_model=List[VisitResponse], tags=["Visits"])
async def patient_history(patient_id: int) -> List[VisitResponse]:
    """Completed visits of a patient, newest first."""
    return [to_visit_response(v) for v in app_state.store.patient_history(patient_id)]


@app.post(
    "/visits",
    response_model=VisitResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Visits"],
)
async def begin_visit(request: VisitCreate) -> VisitResponse:
    visit = app_state.store.begin_visit(request.patient_id, request.arrived_at)
    return to_visit_response(visit)


@app.get("/visits", response_model=List[VisitResponse], tags=["Visits"])
async def list_visits(
    status_filter: Optional[VisitStatus] = Query(default=None, alias="status"),
) -> List[VisitResponse]:
    return [to_visit_response(v) for v in app_state.store.list_visits(status_filter)]


@app.get("/visits/{visit_id}", response_model=VisitResponse, tags=["Visits"])
async def get_visit(visit_id: int) -> VisitResponse:
    return to_visit_response(app_state.store.get_visit(visit_id))


@app.post("/triage/complete", response_model=AssignmentResultResponse, tags=["Assignment"])
async def complete_triage(request: TriageCompletionRequest) -> AssignmentResultResponse:
    """
    Finalize triage and assign a clinician in real time.

    Emergency visits take the fast-path; all others the greedy cost model.
    With no active clinician the visit stays waiting and the response has
    ``clinician_id: null`` with ``error: NoAvailableClinician``.
    """
    result = app_state.engine.complete_triage(TriageCompletion(
        visit_id=request.visit_id,
        required_specialty=request.required_specialty,
        priority=request.priority,
        arrival_timestamp=request.arrival_timestamp,
        presenting_complaint=request.presenting_complaint,
        transcript=request.transcript,
        clinical_summary=request.clinical_summary,
    ))
    return to_assignment_response(result)


@app.post("/visits/retry", response_model=List[AssignmentResultResponse], tags=["Assignment"])
async def retry_unassigned() -> List[AssignmentResultResponse]:
    """Retry every waiting visit that has no clinician yet."""
    return [to_assignment_response(r) for r in app_state.engine.retry_unassigned()]


@app.post("/visits/{visit_id}/call-in", response_model=VisitResponse, tags=["Visits"])
async def call_in(visit_id: int, request: CallInRequest) -> VisitResponse:
    return to_visit_response(app_state.engine.call_in(visit_id, request.clinician_id))


@app.post("/visits/{visit_id}/complete", response_model=VisitResponse, tags=["Visits"])
async def complete_visit(visit_id: int, request: CompleteVisitRequest) -> VisitResponse:
    """Submit the diagnosis; releases the clinician's load."""
    visit = app_state.engine.complete_visit(visit_id, request.notes, request.clinician_name)
    return to_visit_response(visit)


@app.post("/visits/{visit_id}/release", response_model=VisitResponse, tags=["Assignment"])
async def release_assignment(visit_id: int) -> VisitResponse:
    """Compensating decrement for an abandoned assignment."""
    return to_visit_response(app_state.engine.release_assignment(visit_id))


@app.post("/rebalance", response_model=RebalanceResponse, tags=["Assignment"])
async def rebalance() -> RebalanceResponse:
    """
    Run one batch rebalance now.

    An infeasible batch is an operator-visible no-op: status ``infeasible``
    and every prior assignment left intact.
    """
    result = await asyncio.to_thread(app_state.run_rebalance)
    return to_rebalance_response(result)


@app.get("/metrics/clinic", tags=["Operations"])
async def get_clinic_stats() -> Dict[str, Any]:
    return clinic_stats(app_state.store)


@app.get("/metrics/queue", tags=["Operations"])
async def get_queue_metrics() -> Dict[str, float]:
    return queue_metrics(app_state.store, app_state.config.default_service_time_seconds)


@app.get("/config/cost-model", tags=["Operations"])
async def get_cost_model_config() -> Dict[str, Any]:
    """Cost model and rebalancer tunables currently in effect."""
    config = app_state.config
    return {
        "mismatch_penalty_seconds": config.mismatch_penalty_seconds,
        "load_penalty_weight_seconds": config.load_penalty_weight_seconds,
        "default_service_time_seconds": config.default_service_time_seconds,
        "shift_penalty_threshold_seconds": config.shift_penalty_threshold_seconds,
        "shift_penalty_seconds": config.shift_penalty_seconds,
        "max_parallel_waiting": config.max_parallel_waiting,
        "rebalance_interval_seconds": settings.rebalance_interval_seconds,
    }


# =============================================================================
# ERROR HANDLERS
# =============================================================================

ERROR_STATUS = {
    VisitNotFound: status.HTTP_404_NOT_FOUND,
    ClinicianNotFound: status.HTTP_404_NOT_FOUND,
    PatientNotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    ConsultationConflict: status.HTTP_409_CONFLICT,
    NoAvailableClinician: status.HTTP_409_CONFLICT,
}


@app.exception_handler(AssignmentError)
async def assignment_error_handler(request, exc: AssignmentError):
    """Map engine errors to HTTP status codes."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    logger.warning(f"{type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "message": str(exc)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        },
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "clinician_assignment.api:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
