"""
Unit tests for shift_coverage/engine.py

Covers:
- Submitting a coverage request (validation, one open request per shift)
- Family approval / denial and the care team broadcast
- Claims: first claimant wins, including under concurrent claims
- Family confirmation / decline and shift reassignment
- Duplicate and stale replies are ignored
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

from shift_coverage.engine import ShiftCoverageEngine
from shift_coverage.models import CareTeamMember
from shift_coverage.whatsapp_service import MockWhatsAppService


def _notifications(db, notification_type, shift_id="shift-1"):
    return db.get_notifications(shift_id=shift_id, notification_type=notification_type)


# ============================================================
# Submitting requests
# ============================================================

class TestSubmitCoverageRequest:

    def test_creates_pending_request_and_notifies_family(self, db, engine, transport, care_team):
        result = engine.submit_coverage_request(
            care_team.shift_id, care_team.alice_id, "Doctor appointment", message="Sorry for the short notice"
        )

        assert result["success"] is True
        assert result["action"] == "requested"

        request = db.get_request(result["request_id"])
        assert request["status"] == "pending_family_approval"
        assert request["expires_at"] - request["requested_at"] == timedelta(hours=24)

        messages = transport.messages_to(care_team.family_phone)
        assert len(messages) == 1
        assert "Alice Baptiste" in messages[0]["text"]
        assert f"APPROVE {request['reference_code']}" in messages[0]["text"]
        assert "Sorry for the short notice" in messages[0]["text"]

        records = _notifications(db, "time_off_request")
        assert len(records) == 1
        assert records[0]["sent_to"] == care_team.family_id
        assert records[0]["coverage_request_id"] == request["id"]

    def test_rejects_unknown_shift(self, engine, care_team):
        result = engine.submit_coverage_request("no-such-shift", care_team.alice_id, "Sick")
        assert result["success"] is False
        assert result["reason"] == "shift_not_found"

    def test_rejects_caregiver_not_assigned_to_shift(self, engine, transport, care_team):
        result = engine.submit_coverage_request(care_team.shift_id, care_team.ben_id, "Sick")
        assert result["success"] is False
        assert result["reason"] == "not_assigned_caregiver"
        assert transport.sent_messages == []

    def test_second_open_request_for_shift_rejected(self, engine, care_team, pending_request):
        result = engine.submit_coverage_request(care_team.shift_id, care_team.alice_id, "Still sick")
        assert result["success"] is False
        assert result["reason"] == "open_request_exists"

    def test_new_request_allowed_after_denial(self, engine, care_team, pending_request):
        engine.record_family_approval(pending_request, False, care_team.family_id)

        result = engine.submit_coverage_request(care_team.shift_id, care_team.alice_id, "Family emergency")
        assert result["success"] is True
        assert result["request_id"] != pending_request

    def test_notify_family_only_while_pending(self, engine, care_team, approved_request):
        result = engine.notify_family_of_request(approved_request)
        assert result["action"] == "ignored"
        assert result["reason"] == "not_pending"


# ============================================================
# Family approval and broadcast
# ============================================================

class TestFamilyApproval:

    def test_approve_broadcasts_to_active_team_except_requester(self, db, engine, transport, care_team,
                                                                pending_request):
        result = engine.record_family_approval(pending_request, True, care_team.family_id)

        assert result["action"] == "approved"
        assert result["broadcast"]["recipients"] == 2
        assert result["broadcast"]["delivered"] == 2

        request = db.get_request(pending_request)
        assert request["status"] == "approved"
        assert request["family_response_by"] == care_team.family_id
        assert request["family_response_at"] is not None

        for phone in (care_team.ben_phone, care_team.cara_phone):
            messages = transport.messages_to(phone)
            assert len(messages) == 1
            assert f"CLAIM {request['reference_code']}" in messages[0]["text"]

        assert transport.messages_to(care_team.alice_phone) == []
        assert transport.messages_to(care_team.dev_phone) == []

        sent_to = {n["sent_to"] for n in _notifications(db, "coverage_available")}
        assert sent_to == {care_team.ben_id, care_team.cara_id}

    def test_broadcast_uses_recipient_language(self, engine, transport, care_team, approved_request):
        assert "TURNO DISPONIBLE" in transport.messages_to(care_team.cara_phone)[0]["text"]
        assert "SHIFT AVAILABLE" in transport.messages_to(care_team.ben_phone)[0]["text"]

    def test_deny_sends_no_broadcast(self, db, engine, care_team, pending_request):
        result = engine.record_family_approval(pending_request, False, care_team.family_id)

        assert result["action"] == "denied"
        assert db.get_request(pending_request)["status"] == "denied"
        assert _notifications(db, "coverage_available") == []

    def test_duplicate_approval_is_ignored(self, db, engine, care_team, approved_request):
        result = engine.record_family_approval(approved_request, True, care_team.family_id)

        assert result["action"] == "ignored"
        assert len(_notifications(db, "coverage_available")) == 2

    def test_deny_after_approve_is_ignored(self, db, engine, care_team, approved_request):
        result = engine.record_family_approval(approved_request, False, care_team.family_id)

        assert result["action"] == "ignored"
        assert db.get_request(approved_request)["status"] == "approved"

    def test_broadcast_continues_after_a_failed_send(self, db, care_team):
        transport = MockWhatsAppService(failing_numbers=[care_team.ben_phone])
        engine = ShiftCoverageEngine(db, transport)
        request_id = engine.submit_coverage_request(care_team.shift_id, care_team.alice_id, "Sick")["request_id"]

        result = engine.record_family_approval(request_id, True, care_team.family_id)

        broadcast = result["broadcast"]
        assert broadcast["recipients"] == 2
        assert broadcast["delivered"] == 1
        assert len(transport.messages_to(care_team.cara_phone)) == 1

        statuses = {n["sent_to"]: n["delivery_status"] for n in _notifications(db, "coverage_available")}
        assert statuses == {care_team.ben_id: "failed", care_team.cara_id: "sent"}

    def test_broadcast_with_no_eligible_members_succeeds(self, db, engine, care_team, pending_request):
        with db.get_session() as session:
            session.query(CareTeamMember).filter(
                CareTeamMember.caregiver_id != care_team.alice_id
            ).update({"status": "inactive"}, synchronize_session=False)

        result = engine.record_family_approval(pending_request, True, care_team.family_id)

        assert result["action"] == "approved"
        assert result["broadcast"]["success"] is True
        assert result["broadcast"]["recipients"] == 0

    def test_broadcast_skipped_once_claimed(self, engine, care_team, approved_request):
        engine.record_claim(approved_request, care_team.ben_id)

        result = engine.broadcast_open_shift(approved_request)
        assert result["action"] == "ignored"


# ============================================================
# Claims
# ============================================================

class TestClaims:

    def test_first_claim_wins(self, db, engine, transport, care_team, approved_request):
        first = engine.record_claim(approved_request, care_team.ben_id)
        second = engine.record_claim(approved_request, care_team.cara_id)

        assert first["action"] == "claimed"
        assert second["action"] == "ignored"
        assert second["reason"] == "not_claimable"

        claims = db.get_claims_for_request(approved_request)
        assert len(claims) == 1
        assert claims[0]["claiming_caregiver_id"] == care_team.ben_id
        assert db.get_request(approved_request)["active_claim_id"] == first["claim_id"]

        # family told once, losing claimant hears nothing beyond the broadcast
        family_messages = transport.messages_to(care_team.family_phone)
        assert sum("Ben Mohammed wants to cover" in m["text"] for m in family_messages) == 1
        assert len(transport.messages_to(care_team.cara_phone)) == 1
        assert len(_notifications(db, "coverage_claimed")) == 1

    def test_concurrent_claims_have_one_winner(self, db, engine, care_team, approved_request):
        claimants = [care_team.ben_id, care_team.cara_id, care_team.eve_id]
        barrier = threading.Barrier(len(claimants))

        def claim(caregiver_id):
            barrier.wait()
            return engine.record_claim(approved_request, caregiver_id)

        with ThreadPoolExecutor(max_workers=len(claimants)) as pool:
            results = list(pool.map(claim, claimants))

        winners = [r for r in results if r["action"] == "claimed"]
        assert len(winners) == 1
        assert all(r["reason"] == "not_claimable" for r in results if r["action"] != "claimed")

        claims = db.get_claims_for_request(approved_request)
        assert len(claims) == 1
        assert db.get_request(approved_request)["active_claim_id"] == winners[0]["claim_id"]
        assert len(_notifications(db, "coverage_claimed")) == 1

    def test_requester_cannot_claim_own_shift(self, engine, care_team, approved_request):
        result = engine.record_claim(approved_request, care_team.alice_id)
        assert result["reason"] == "requester_cannot_claim"

    def test_inactive_member_cannot_claim(self, db, engine, care_team, approved_request):
        result = engine.record_claim(approved_request, care_team.dev_id)

        assert result["reason"] == "not_on_care_team"
        assert db.get_claims_for_request(approved_request) == []

    def test_claim_on_pending_request_ignored(self, db, engine, care_team, pending_request):
        result = engine.record_claim(pending_request, care_team.ben_id)

        assert result["reason"] == "not_claimable"
        assert db.get_claims_for_request(pending_request) == []


# ============================================================
# Family confirmation
# ============================================================

class TestFamilyConfirmation:

    def test_confirm_reassigns_shift_and_notifies_claimant(self, db, transport, care_team):
        on_reassigned = MagicMock()
        engine = ShiftCoverageEngine(db, transport, on_shift_reassigned=on_reassigned)
        request_id = engine.submit_coverage_request(care_team.shift_id, care_team.alice_id, "Sick")["request_id"]
        engine.record_family_approval(request_id, True, care_team.family_id)
        claim_id = engine.record_claim(request_id, care_team.ben_id)["claim_id"]

        result = engine.record_family_confirmation(claim_id, True, care_team.family_id)

        assert result["action"] == "confirmed"
        assert db.get_claim(claim_id)["status"] == "confirmed"
        assert db.get_claim(claim_id)["family_confirmed_by"] == care_team.family_id
        assert db.get_shift(care_team.shift_id)["caregiver_id"] == care_team.ben_id

        on_reassigned.assert_called_once()
        shift, claim = on_reassigned.call_args[0]
        assert shift["caregiver_id"] == care_team.ben_id
        assert claim["id"] == claim_id

        assert "CONFIRMED" in transport.messages_to(care_team.ben_phone)[-1]["text"]
        assert len(_notifications(db, "claim_confirmed")) == 1

    def test_confirmed_shift_can_be_requested_again(self, engine, care_team, approved_request):
        claim_id = engine.record_claim(approved_request, care_team.ben_id)["claim_id"]
        engine.record_family_confirmation(claim_id, True, care_team.family_id)

        result = engine.submit_coverage_request(care_team.shift_id, care_team.ben_id, "Car trouble")
        assert result["success"] is True

    def test_decline_reopens_request(self, db, engine, transport, care_team, approved_request):
        first = engine.record_claim(approved_request, care_team.ben_id)

        result = engine.record_family_confirmation(first["claim_id"], False, care_team.family_id)

        assert result["action"] == "declined"
        request = db.get_request(approved_request)
        assert request["status"] == "approved"
        assert request["active_claim_id"] is None
        assert db.get_shift(care_team.shift_id)["caregiver_id"] == care_team.alice_id
        assert "other coverage" in transport.messages_to(care_team.ben_phone)[-1]["text"]

        second = engine.record_claim(approved_request, care_team.cara_id)
        assert second["action"] == "claimed"
        assert db.get_request(approved_request)["active_claim_id"] == second["claim_id"]

    def test_duplicate_confirmation_ignored(self, db, transport, care_team):
        on_reassigned = MagicMock()
        engine = ShiftCoverageEngine(db, transport, on_shift_reassigned=on_reassigned)
        request_id = engine.submit_coverage_request(care_team.shift_id, care_team.alice_id, "Sick")["request_id"]
        engine.record_family_approval(request_id, True, care_team.family_id)
        claim_id = engine.record_claim(request_id, care_team.ben_id)["claim_id"]

        engine.record_family_confirmation(claim_id, True, care_team.family_id)
        repeat = engine.record_family_confirmation(claim_id, True, care_team.family_id)
        late_decline = engine.record_family_confirmation(claim_id, False, care_team.family_id)

        assert repeat["action"] == "ignored"
        assert late_decline["action"] == "ignored"
        assert db.get_claim(claim_id)["status"] == "confirmed"
        on_reassigned.assert_called_once()

    def test_notify_family_of_claim_only_while_pending(self, engine, care_team, approved_request):
        claim_id = engine.record_claim(approved_request, care_team.ben_id)["claim_id"]
        engine.record_family_confirmation(claim_id, False, care_team.family_id)

        result = engine.notify_family_of_claim(claim_id)
        assert result["action"] == "ignored"

    def test_unknown_claim_ignored(self, engine, care_team):
        assert engine.record_family_confirmation("missing-claim", True, care_team.family_id)["action"] == "ignored"
        assert engine.notify_family_of_claim("missing-claim")["reason"] == "claim_not_found"
