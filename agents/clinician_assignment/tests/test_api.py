"""
Clinician Assignment Agent - API Unit Tests

Tests for the FastAPI endpoints using TestClient.
Run with: pytest tests/test_api.py -v
"""

import json
import os
import sys

import pytest
from fastapi.testclient import TestClient

# Add agents directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from clinician_assignment.api import app, app_state


@pytest.fixture
def client():
    """Fresh clinic per test; the lifespan (and its background task) is not started."""
    app_state.reset()
    return TestClient(app)


def add_clinician(client, clinician_id, specialty="Cardiology", availability="active"):
    response = client.post("/clinicians", json={
        "clinician_id": clinician_id,
        "name": f"Dr. {clinician_id}",
        "specialty": specialty,
        "availability": availability,
    })
    assert response.status_code == 201
    return response.json()


def start_visit(client, name="Asha"):
    patient = client.post("/patients", json={"name": name, "phone": "555-0100"}).json()
    response = client.post("/visits", json={"patient_id": patient["patient_id"]})
    assert response.status_code == 201
    return response.json()


def triage(client, visit_id, specialty="Cardiology", priority="Normal"):
    return client.post("/triage/complete", json={
        "visit_id": visit_id,
        "required_specialty": specialty,
        "priority": priority,
        "presenting_complaint": "Chest pain",
    })


class TestHealthEndpoint:

    def test_health_check_returns_valid_structure(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        for key in ("status", "service", "version", "timestamp", "checks"):
            assert key in data
        assert "engine" in data["checks"]
        assert "rebalancer" in data["checks"]

    def test_health_is_degraded_without_active_clinicians(self, client):
        assert client.get("/health").json()["status"] == "degraded"
        add_clinician(client, "A")
        assert client.get("/health").json()["status"] == "healthy"


class TestRosterEndpoints:

    def test_add_and_list_clinicians(self, client):
        created = add_clinician(client, "A")
        assert created["current_load"] == 0

        listed = client.get("/clinicians").json()
        assert [c["clinician_id"] for c in listed] == ["A"]

    def test_duplicate_clinician_is_conflict(self, client):
        add_clinician(client, "A")
        response = client.post("/clinicians", json={
            "clinician_id": "A", "name": "Dr. Again", "specialty": "Neurology",
        })
        assert response.status_code == 409

    def test_generated_clinician_id(self, client):
        response = client.post("/clinicians", json={"name": "Dr. New", "specialty": "Neurology"})
        assert response.json()["clinician_id"] == "d_1"

    def test_generated_id_skips_explicit_ids(self, client):
        add_clinician(client, "d_2")
        response = client.post("/clinicians", json={"name": "Dr. New", "specialty": "Neurology"})
        assert response.status_code == 201
        assert response.json()["clinician_id"] == "d_3"

        response = client.post("/clinicians", json={"name": "Dr. Next", "specialty": "Neurology"})
        assert response.status_code == 201
        assert response.json()["clinician_id"] == "d_4"

    def test_clinicians_listed_in_numeric_order(self, client):
        for n in (10, 2, 1):
            add_clinician(client, f"d_{n}")
        assert [c["clinician_id"] for c in client.get("/clinicians").json()] == ["d_1", "d_2", "d_10"]

    def test_update_availability(self, client):
        add_clinician(client, "A")
        response = client.put("/clinicians/A/availability", json={"availability": "break"})
        assert response.status_code == 200
        assert response.json()["availability"] == "break"

    def test_unknown_clinician_is_not_found(self, client):
        response = client.put("/clinicians/ZZ/availability", json={"availability": "active"})
        assert response.status_code == 404
        assert response.json()["error"] == "ClinicianNotFound"


class TestRosterFile:

    def test_roster_file_loads_and_updates_clinicians(self, client, tmp_path):
        roster = tmp_path / "roster.json"
        roster.write_text(json.dumps([
            {"clinician_id": "A", "name": "Dr. A", "specialty": "Cardiology"},
            {
                "clinician_id": "B", "name": "Dr. B", "specialty": "Neurology",
                "availability": "break", "shift_ends_at": "2026-03-02T18:00:00+00:00",
            },
        ]))
        app_state.load_roster_file(str(roster))
        triage(client, start_visit(client)["visit_id"])

        roster.write_text(json.dumps([
            {"clinician_id": "A", "name": "Dr. A", "specialty": "Cardiology", "availability": "offline"},
        ]))
        app_state.load_roster_file(str(roster))

        clinicians = {c["clinician_id"]: c for c in client.get("/clinicians").json()}
        assert clinicians["A"]["availability"] == "offline"
        assert clinicians["A"]["current_load"] == 1
        assert clinicians["B"]["shift_ends_at"].startswith("2026-03-02T18:00:00")

    def test_roster_entry_needs_an_id(self, client, tmp_path):
        roster = tmp_path / "roster.json"
        roster.write_text(json.dumps([{"name": "Dr. X", "specialty": "Cardiology"}]))
        with pytest.raises(ValueError):
            app_state.load_roster_file(str(roster))


class TestVisitFlow:

    def test_begin_visit_enters_triage(self, client):
        visit = start_visit(client)
        assert visit["status"] == "triage"
        assert visit["assigned_clinician_id"] is None

    def test_triage_call_in_and_complete(self, client):
        add_clinician(client, "A")
        visit = start_visit(client)

        response = triage(client, visit["visit_id"])
        assert response.status_code == 200
        result = response.json()
        assert result["clinician_id"] == "A"
        assert result["path"] == "greedy"
        assert result["cost_breakdown"]["total"] == 0.0

        consulting = client.post(
            f"/visits/{visit['visit_id']}/call-in", json={"clinician_id": "A"}
        ).json()
        assert consulting["status"] == "in_consultation"

        done = client.post(
            f"/visits/{visit['visit_id']}/complete",
            json={"notes": "Rest and fluids", "clinician_name": "Dr. A"},
        ).json()
        assert done["status"] == "completed"
        assert done["diagnosis"]["discharge_summary"] == "Discharged by Dr. A. Notes: Rest and fluids"
        assert client.get("/clinicians").json()[0]["current_load"] == 0

    def test_emergency_takes_fast_path(self, client):
        add_clinician(client, "A")
        visit = start_visit(client)
        result = triage(client, visit["visit_id"], priority="Emergency").json()
        assert result["path"] == "emergency"

    def test_triage_without_clinicians_leaves_visit_unassigned(self, client):
        visit = start_visit(client)
        response = triage(client, visit["visit_id"])

        assert response.status_code == 200
        result = response.json()
        assert result["clinician_id"] is None
        assert result["error"] == "NoAvailableClinician"

        stored = client.get(f"/visits/{visit['visit_id']}").json()
        assert stored["status"] == "waiting"

    def test_retry_assigns_once_clinician_arrives(self, client):
        visit = start_visit(client)
        triage(client, visit["visit_id"])
        add_clinician(client, "A")

        results = client.post("/visits/retry").json()
        assert [r["clinician_id"] for r in results] == ["A"]

    def test_triage_twice_is_conflict(self, client):
        add_clinician(client, "A")
        visit = start_visit(client)
        triage(client, visit["visit_id"])
        response = triage(client, visit["visit_id"])
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransition"

    def test_unknown_visit_is_not_found(self, client):
        response = client.get("/visits/9999")
        assert response.status_code == 404
        assert response.json()["error"] == "VisitNotFound"

    def test_call_in_by_wrong_clinician_is_conflict(self, client):
        add_clinician(client, "A")
        add_clinician(client, "B", availability="break")
        visit = start_visit(client)
        triage(client, visit["visit_id"])

        response = client.post(f"/visits/{visit['visit_id']}/call-in", json={"clinician_id": "B"})
        assert response.status_code == 409
        assert response.json()["error"] == "ConsultationConflict"

    def test_release_returns_visit_to_unassigned(self, client):
        add_clinician(client, "A")
        visit = start_visit(client)
        triage(client, visit["visit_id"])

        released = client.post(f"/visits/{visit['visit_id']}/release").json()
        assert released["assigned_clinician_id"] is None
        assert client.get("/clinicians").json()[0]["current_load"] == 0

    def test_list_visits_by_status(self, client):
        add_clinician(client, "A")
        waiting = start_visit(client, "One")
        start_visit(client, "Two")
        triage(client, waiting["visit_id"])

        listed = client.get("/visits", params={"status": "waiting"}).json()
        assert [v["visit_id"] for v in listed] == [waiting["visit_id"]]

    def test_patient_history_lists_completed_visits(self, client):
        add_clinician(client, "A")
        visit = start_visit(client)
        triage(client, visit["visit_id"])
        client.post(f"/visits/{visit['visit_id']}/call-in", json={"clinician_id": "A"})
        client.post(f"/visits/{visit['visit_id']}/complete", json={"notes": "ok"})

        history = client.get(f"/patients/{visit['patient_id']}/history").json()
        assert [v["visit_id"] for v in history] == [visit["visit_id"]]


class TestTimestampsWithoutOffset:

    def test_naive_arrivals_do_not_break_rebalance_or_metrics(self, client):
        add_clinician(client, "A")
        patient = client.post("/patients", json={"name": "Backlog"}).json()
        backlog = client.post("/visits", json={
            "patient_id": patient["patient_id"], "arrived_at": "2026-01-01T10:00:00",
        }).json()
        walk_in = start_visit(client, "Walk-in")

        assert triage(client, backlog["visit_id"]).status_code == 200
        response = client.post("/triage/complete", json={
            "visit_id": walk_in["visit_id"],
            "required_specialty": "Cardiology",
            "arrival_timestamp": "2026-01-01T10:05:00",
        })
        assert response.status_code == 200

        assert client.post("/rebalance").status_code == 200
        assert client.post("/visits/retry").status_code == 200
        assert client.get("/metrics/clinic").status_code == 200
        assert client.get("/metrics/queue").status_code == 200

        arrived = client.get(f"/visits/{backlog['visit_id']}").json()["arrived_at"]
        assert arrived in ("2026-01-01T10:00:00Z", "2026-01-01T10:00:00+00:00")

    def test_naive_shift_end_still_assigns(self, client):
        client.post("/clinicians", json={
            "clinician_id": "A", "name": "Dr. A", "specialty": "Cardiology",
            "shift_ends_at": "2099-12-01T18:00:00",
        })
        response = triage(client, start_visit(client)["visit_id"])

        assert response.status_code == 200
        assert response.json()["clinician_id"] == "A"
        assert response.json()["cost_breakdown"]["shift"] == 0.0

    def test_naive_shift_end_from_roster_file(self, client, tmp_path):
        roster = tmp_path / "roster.json"
        roster.write_text(json.dumps([{
            "clinician_id": "A", "name": "Dr. A", "specialty": "Cardiology",
            "shift_ends_at": "2099-12-01T18:00:00",
        }]))
        app_state.load_roster_file(str(roster))

        response = triage(client, start_visit(client)["visit_id"])
        assert response.status_code == 200
        assert response.json()["clinician_id"] == "A"


class TestRebalanceEndpoint:

    def test_rebalance_moves_visit_to_returning_clinician(self, client):
        add_clinician(client, "A")
        add_clinician(client, "B", availability="break")
        for name in ("One", "Two"):
            triage(client, start_visit(client, name)["visit_id"])
        client.put("/clinicians/B/availability", json={"availability": "active"})

        data = client.post("/rebalance").json()

        assert data["status"] == "optimal"
        assert len(data["results"]) == 1
        assert data["results"][0]["path"] == "rebalance"
        loads = {c["clinician_id"]: c["current_load"] for c in client.get("/clinicians").json()}
        assert loads == {"A": 1, "B": 1}

    def test_infeasible_rebalance_is_reported(self, client):
        add_clinician(client, "A")
        visit = start_visit(client)
        triage(client, visit["visit_id"])
        client.put("/clinicians/A/availability", json={"availability": "offline"})

        data = client.post("/rebalance").json()

        assert data["status"] == "infeasible"
        assert client.get(f"/visits/{visit['visit_id']}").json()["assigned_clinician_id"] == "A"
        assert client.get("/health").json()["checks"]["rebalancer"]["last_status"] == "infeasible"


class TestOperationsEndpoints:

    def test_clinic_stats(self, client):
        add_clinician(client, "A")
        triage(client, start_visit(client)["visit_id"])

        stats = client.get("/metrics/clinic").json()
        assert stats["active_clinicians"] == 1
        assert stats["status_counts"]["waiting"] == 1
        assert stats["workload"] == {"A": 1}
        assert stats["priority_distribution"]["Normal"] == 1

    def test_queue_metrics(self, client):
        add_clinician(client, "A")
        start_visit(client)

        metrics = client.get("/metrics/queue").json()
        assert metrics["arrival_rate"] == 1.0
        assert metrics["service_rate"] == pytest.approx(3600 / app_state.config.default_service_time_seconds, rel=1e-3)

    def test_cost_model_config(self, client):
        data = client.get("/config/cost-model").json()
        assert data["mismatch_penalty_seconds"] == app_state.config.mismatch_penalty_seconds
        assert "max_parallel_waiting" in data


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
