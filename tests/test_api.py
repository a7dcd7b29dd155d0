"""
Tests for the HTTP surface (shift_coverage/api.py) using FastAPI's TestClient.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from shift_coverage.api import create_app, CoverageServices

HANDLER = "/shift-coverage-handler"


@pytest.fixture
def services(db, transport):
    return CoverageServices(db=db, transport=transport)


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


class TestShiftCoverageHandler:

    def test_unknown_action(self, client):
        response = client.post(HANDLER, json={"action": "reticulate_splines"})

        assert response.status_code == 400
        assert response.json() == {"error": "Unknown action"}

    def test_missing_action(self, client):
        response = client.post(HANDLER, json={})
        assert response.status_code == 400
        assert response.json() == {"error": "Unknown action"}

    def test_missing_required_field(self, client):
        response = client.post(HANDLER, json={"action": "notify_family_request"})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required field: request_id"}

    def test_blank_message_is_logged(self, db, client, care_team):
        response = client.post(HANDLER, json={
            "action": "process_whatsapp_message",
            "phone_number": care_team.ben_phone,
            "message_content": "",
        })

        assert response.status_code == 200
        assert response.json()["result"]["reason"] == "unrecognized_command"
        log = db.get_message_log(phone_number=care_team.ben_phone, direction="incoming")
        assert len(log) == 1
        assert log[0]["content"] == ""

    def test_missing_message_content(self, client, care_team):
        response = client.post(HANDLER, json={
            "action": "process_whatsapp_message", "phone_number": care_team.ben_phone
        })

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required field: message_content"}

    def test_invalid_json(self, client):
        response = client.post(HANDLER, content="not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_submit_and_approve_over_http(self, db, client, transport, care_team):
        response = client.post(HANDLER, json={
            "action": "submit_coverage_request",
            "shift_id": care_team.shift_id,
            "caregiver_id": care_team.alice_id,
            "reason": "Doctor appointment",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        request_id = body["result"]["request_id"]

        response = client.post(HANDLER, json={
            "action": "process_whatsapp_message",
            "phone_number": "+18685550100",
            "message_content": "APPROVE",
        })

        assert response.status_code == 200
        assert db.get_request(request_id)["status"] == "approved"
        assert len(transport.messages_to(care_team.ben_phone)) == 1

    def test_notify_family_request(self, client, transport, care_team, pending_request):
        response = client.post(HANDLER, json={"action": "notify_family_request", "request_id": pending_request})

        assert response.status_code == 200
        assert len(transport.messages_to(care_team.family_phone)) == 2

    def test_notify_family_claim(self, engine, client, transport, care_team, approved_request):
        claim_id = engine.record_claim(approved_request, care_team.ben_id)["claim_id"]

        response = client.post(HANDLER, json={"action": "notify_family_claim", "claim_id": claim_id})

        assert response.status_code == 200
        claims = [m for m in transport.messages_to(care_team.family_phone) if "SHIFT CLAIM" in m["text"]]
        assert len(claims) == 2

    def test_send_reminders(self, client, care_team):
        response = client.post(HANDLER, json={"action": "send_reminders"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "result": {"reminders": []}}

    def test_unhandled_exception_returns_500(self, client, services, pending_request):
        with patch.object(services.engine, "broadcast_open_shift", side_effect=RuntimeError("database gone")):
            response = client.post(HANDLER, json={
                "action": "broadcast_available_shift", "request_id": pending_request
            })

        assert response.status_code == 500
        assert response.json() == {"error": "database gone"}

    def test_cors_preflight(self, client):
        response = client.options(HANDLER, headers={
            "Origin": "https://app.example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "authorization, content-type",
        })

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"


class TestNudgeEndpoint:

    def test_sends_nudges(self, client, care_team):
        response = client.post("/send-nudge-whatsapp", json={
            "target_users": [care_team.ben_id, care_team.cara_id],
            "message_type": "welcome",
        })

        assert response.status_code == 200
        assert response.json()["message"] == "Messages sent to 2 recipients"

    def test_missing_parameters(self, client):
        response = client.post("/send-nudge-whatsapp", json={"message_type": "general"})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_no_recipients(self, client, care_team):
        response = client.post("/send-nudge-whatsapp", json={
            "target_users": [care_team.eve_id], "message_type": "general"
        })

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "No recipients with phone numbers found"}


class TestSchedulerEndpoint:

    def test_runs_sweep(self, client, care_team):
        response = client.post("/shift-reminder-scheduler")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert set(body["summary"]) == {"reminders", "expired", "unclaimed_alerts"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
