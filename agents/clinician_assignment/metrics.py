"""
Clinic operational metrics.

Read-only summaries over the store for operators: status counts, observed
wait, throughput and a simple queueing view (lambda, mu, rho).
"""

from datetime import timedelta
from typing import Any, Dict

from .models import Priority, VisitStatus
from .store import ClinicStore

ONE_HOUR = timedelta(hours=1)


def clinic_stats(store: ClinicStore) -> Dict[str, Any]:
    """Counts per status, average wait, hourly throughput and workload."""
    with store.lock:
        now = store.now()
        visits = store.list_visits()
        clinicians = sorted(store.clinicians.values(), key=lambda c: c.sort_key)
        loads = store.ledger.snapshot()

    waiting = [v for v in visits if v.status == VisitStatus.WAITING]
    total_wait = sum((now - v.arrived_at).total_seconds() for v in waiting)
    avg_wait_minutes = int(total_wait / len(waiting) // 60) if waiting else 0

    throughput = sum(
        1 for v in visits
        if v.consult_ended_at is not None and v.consult_ended_at > now - ONE_HOUR
    )

    priority_distribution = {p.value: 0 for p in Priority}
    for visit in visits:
        if visit.status not in (VisitStatus.CHECKED_IN, VisitStatus.TRIAGE):
            priority_distribution[visit.priority.value] += 1

    return {
        "active_clinicians": sum(1 for c in clinicians if c.is_active),
        "status_counts": {
            status.value: sum(1 for v in visits if v.status == status)
            for status in VisitStatus
        },
        "unassigned_waiting": sum(1 for v in waiting if not v.is_assigned),
        "average_wait_minutes": avg_wait_minutes,
        "throughput_last_hour": throughput,
        "priority_distribution": priority_distribution,
        "workload": {c.clinician_id: loads.get(c.clinician_id, 0) for c in clinicians},
    }


def queue_metrics(store: ClinicStore, default_service_time_seconds: float) -> Dict[str, float]:
    """
    M/M/c style indicators.

    arrival_rate is arrivals per hour over the last hour, service_rate is
    consultations per clinician per hour from the mean service time, and
    traffic_intensity is lambda / (c * mu).
    """
    with store.lock:
        now = store.now()
        visits = store.list_visits()
        active = store.active_clinicians()
        service_times = [
            seconds for seconds in (store.service_time_of(c) for c in active)
            if seconds is not None
        ]

    arrival_rate = float(sum(1 for v in visits if v.arrived_at > now - ONE_HOUR))
    mean_service = (
        sum(service_times) / len(service_times) if service_times else default_service_time_seconds
    )
    service_rate = 3600.0 / mean_service if mean_service > 0 else 0.0
    capacity = service_rate * len(active)
    traffic_intensity = arrival_rate / capacity if capacity > 0 else 0.0

    waiting = [v for v in visits if v.status == VisitStatus.WAITING]
    avg_wait = (
        sum((now - v.arrived_at).total_seconds() for v in waiting) / len(waiting) / 60
        if waiting else 0.0
    )

    return {
        "arrival_rate": round(arrival_rate, 3),
        "service_rate": round(service_rate, 3),
        "traffic_intensity": round(traffic_intensity, 3),
        "avg_wait_time": round(avg_wait, 1),
    }
