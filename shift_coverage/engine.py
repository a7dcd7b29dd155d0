"""
Shift Coverage Engine - State Machine

Drives a coverage request through its lifecycle:
1. Caregiver asks for time off, family is asked to approve
2. On approval the open shift is broadcast to the care team
3. First caregiver to claim holds the request
4. Family confirms (shift reassigned) or declines (request reopens)

Every transition is a guarded conditional write in the database layer. When a
transition finds the entity in the wrong state (duplicate reply, someone else
already claimed) the operation is ignored: logged, no state change, no message.
"""

import logging
from typing import Optional, Dict, Any, Callable

from . import config
from .database import CoverageDatabase, PENDING, APPROVED, CLAIM_PENDING
from .models import NotificationType
from .notifier import CoverageNotifier
from .templates import render, format_time_window, optional_line
from .whatsapp_service import WhatsAppService, build_whatsapp_service

logger = logging.getLogger(__name__)


def _ignored(reason: str, **extra) -> Dict[str, Any]:
    result = {"success": False, "action": "ignored", "reason": reason}
    result.update(extra)
    return result


def _rejected(reason: str, **extra) -> Dict[str, Any]:
    result = {"success": False, "action": "rejected", "reason": reason}
    result.update(extra)
    return result


class ShiftCoverageEngine:
    """
    Shift coverage request/claim/confirmation workflow.

    Stateless between calls; everything lives in the database, so any number
    of concurrent invocations can share one engine or each build their own.
    """

    def __init__(
        self,
        db: CoverageDatabase,
        transport: WhatsAppService = None,
        on_shift_reassigned: Callable = None
    ):
        """
        Args:
            db: Coverage database
            transport: Outbound message transport (mock when not configured)
            on_shift_reassigned: Callback(shift, claim) after a confirmed claim
                reassigns the shift
        """
        self.db = db
        self.transport = transport or build_whatsapp_service()
        self.notifier = CoverageNotifier(db, self.transport)
        self.on_shift_reassigned = on_shift_reassigned

    # =========================================================================
    # REQUESTS
    # =========================================================================

    def submit_coverage_request(
        self,
        shift_id: str,
        caregiver_id: str,
        reason: str,
        message: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a time-off request for a shift and ask the family to approve it.

        Rejected when the shift is unknown, the caregiver isn't the one
        assigned to it, or the shift already has an open request.
        """
        logger.info(f"Coverage request for shift {shift_id} by caregiver {caregiver_id}")

        shift = self.db.get_shift(shift_id)
        if not shift:
            logger.warning(f"Coverage request for unknown shift {shift_id}")
            return _rejected("shift_not_found", shift_id=shift_id)

        if shift["caregiver_id"] != caregiver_id:
            logger.warning(f"Caregiver {caregiver_id} is not assigned to shift {shift_id}")
            return _rejected("not_assigned_caregiver", shift_id=shift_id)

        request = self.db.create_coverage_request(shift_id, caregiver_id, reason, request_message=message)
        if not request:
            return _rejected("open_request_exists", shift_id=shift_id)

        notification = self.notify_family_of_request(request["id"])

        return {
            "success": True,
            "action": "requested",
            "request_id": request["id"],
            "reference_code": request["reference_code"],
            "family_notified": notification.get("delivered", False),
        }

    def notify_family_of_request(self, request_id: str) -> Dict[str, Any]:
        """Send the approval prompt for a pending request to the shift's family."""
        context = self.db.get_request_context(request_id)
        if not context:
            logger.error(f"Request not found: {request_id}")
            return _ignored("request_not_found", request_id=request_id)

        request = context["request"]
        if request["status"] != PENDING:
            logger.info(f"Request {request_id} is {request['status']}, not notifying family")
            return _ignored("not_pending", request_id=request_id)

        shift, family = context["shift"], context["family"]
        if not shift or not family:
            logger.warning(f"No shift or family for request {request_id}")
            return _ignored("family_not_found", request_id=request_id)

        requester = context["requesting_caregiver"] or {}
        text = render(
            "time_off_request",
            family.get("preferred_language"),
            requester_name=requester.get("full_name", "Your caregiver"),
            shift_title=shift["title"],
            time_window=format_time_window(shift["start_time"], shift["end_time"]),
            reason=request["reason"],
            message_line=optional_line("💬 Message: ", request["request_message"]),
            reference_code=request["reference_code"],
            expiry_hours=config.REQUEST_EXPIRY_HOURS
        )

        result = self.notifier.send(
            family, text, NotificationType.TIME_OFF_REQUEST.value,
            shift_id=shift["id"],
            notification_type=NotificationType.TIME_OFF_REQUEST.value,
            coverage_request_id=request_id
        )
        return {"success": True, "action": "family_notified", "request_id": request_id,
                "delivered": result.delivered}

    def record_family_approval(
        self,
        request_id: str,
        approved: bool,
        responding_user_id: str
    ) -> Dict[str, Any]:
        """APPROVE/DENY from the family. Approval broadcasts the open shift."""
        if not self.db.respond_to_request(request_id, approved, responding_user_id):
            logger.info(f"Approval reply for request {request_id} ignored: no longer pending")
            return _ignored("not_pending", request_id=request_id)

        if not approved:
            logger.info(f"Request {request_id} denied by {responding_user_id}")
            return {"success": True, "action": "denied", "request_id": request_id}

        logger.info(f"Request {request_id} approved by {responding_user_id}")
        broadcast = self.broadcast_open_shift(request_id)
        return {"success": True, "action": "approved", "request_id": request_id, "broadcast": broadcast}

    def broadcast_open_shift(self, request_id: str) -> Dict[str, Any]:
        """
        Offer an approved request to the care team.

        Everyone active on the care plan except the requester, as long as they
        have a phone number. One failed send doesn't stop the rest.
        """
        context = self.db.get_request_context(request_id)
        if not context:
            logger.error(f"Request not found for broadcast: {request_id}")
            return _ignored("request_not_found", request_id=request_id)

        request, shift = context["request"], context["shift"]
        if request["status"] != APPROVED or request["active_claim_id"]:
            logger.info(f"Request {request_id} is not open for claims, skipping broadcast")
            return _ignored("not_open", request_id=request_id)
        if not shift:
            return _ignored("shift_not_found", request_id=request_id)

        members = self.db.get_active_team_members(
            shift["care_plan_id"], exclude_caregiver_id=request["requesting_caregiver_id"]
        )
        recipients = [m for m in members if m.get("phone_number")]

        if not recipients:
            logger.info(f"No team members to broadcast request {request_id} to")
            return {"success": True, "action": "broadcast", "request_id": request_id,
                    "recipients": 0, "delivered": 0, "results": []}

        requester = context["requesting_caregiver"] or {}
        care_plan = context["care_plan"] or {}
        results = []

        for member in recipients:
            text = render(
                "coverage_available",
                member.get("preferred_language"),
                shift_title=shift["title"],
                time_window=format_time_window(shift["start_time"], shift["end_time"]),
                requester_name=requester.get("full_name", "Unknown"),
                care_plan_title=care_plan.get("title", ""),
                location_line=optional_line("📍 Location: ", shift.get("location")),
                reference_code=request["reference_code"]
            )
            result = self.notifier.send(
                member, text, NotificationType.COVERAGE_AVAILABLE.value,
                shift_id=shift["id"],
                notification_type=NotificationType.COVERAGE_AVAILABLE.value,
                coverage_request_id=request_id
            )
            results.append({
                "caregiver_id": member["caregiver_id"],
                "delivered": result.delivered,
                "error": result.error,
            })

        delivered = sum(1 for r in results if r["delivered"])
        logger.info(f"Broadcast request {request_id}: {delivered}/{len(results)} delivered")

        return {
            "success": True,
            "action": "broadcast",
            "request_id": request_id,
            "recipients": len(results),
            "delivered": delivered,
            "results": results,
        }

    # =========================================================================
    # CLAIMS
    # =========================================================================

    def record_claim(self, request_id: str, claiming_caregiver_id: str) -> Dict[str, Any]:
        """
        CLAIM from a caregiver. First one wins.

        Losing claimants get no message; the family is told about the winner.
        """
        request = self.db.get_request(request_id)
        if not request:
            logger.info(f"Claim on unknown request {request_id}")
            return _ignored("request_not_found", request_id=request_id)

        if request["requesting_caregiver_id"] == claiming_caregiver_id:
            logger.info(f"Caregiver {claiming_caregiver_id} tried to claim their own request {request_id}")
            return _ignored("requester_cannot_claim", request_id=request_id)

        shift = self.db.get_shift(request["shift_id"])
        if not shift or not self.db.is_active_team_member(shift["care_plan_id"], claiming_caregiver_id):
            logger.info(f"Caregiver {claiming_caregiver_id} is not on the care team for request {request_id}")
            return _ignored("not_on_care_team", request_id=request_id)

        claim = self.db.claim_request(request_id, claiming_caregiver_id)
        if not claim:
            logger.info(f"Claim by {claiming_caregiver_id} on request {request_id} ignored: not claimable")
            return _ignored("not_claimable", request_id=request_id)

        logger.info(f"Caregiver {claiming_caregiver_id} claimed request {request_id} (claim {claim['id']})")
        self.notify_family_of_claim(claim["id"])

        return {
            "success": True,
            "action": "claimed",
            "request_id": request_id,
            "claim_id": claim["id"],
            "reference_code": claim["reference_code"],
        }

    def notify_family_of_claim(self, claim_id: str) -> Dict[str, Any]:
        context = self.db.get_claim_context(claim_id)
        if not context:
            logger.error(f"Claim not found: {claim_id}")
            return _ignored("claim_not_found", claim_id=claim_id)

        claim, shift, family = context["claim"], context["shift"], context["family"]
        if claim["status"] != CLAIM_PENDING:
            logger.info(f"Claim {claim_id} is {claim['status']}, not notifying family")
            return _ignored("not_pending", claim_id=claim_id)
        if not shift or not family:
            logger.warning(f"No shift or family for claim {claim_id}")
            return _ignored("family_not_found", claim_id=claim_id)

        claimant = context["claiming_caregiver"] or {}
        text = render(
            "coverage_claimed",
            family.get("preferred_language"),
            claimant_name=claimant.get("full_name", "A caregiver"),
            shift_title=shift["title"],
            time_window=format_time_window(shift["start_time"], shift["end_time"]),
            reference_code=claim["reference_code"]
        )

        result = self.notifier.send(
            family, text, NotificationType.COVERAGE_CLAIMED.value,
            shift_id=shift["id"],
            notification_type=NotificationType.COVERAGE_CLAIMED.value,
            coverage_request_id=claim["coverage_request_id"]
        )
        return {"success": True, "action": "family_notified", "claim_id": claim_id,
                "delivered": result.delivered}

    def record_family_confirmation(
        self,
        claim_id: str,
        confirmed: bool,
        responding_user_id: str
    ) -> Dict[str, Any]:
        """
        CONFIRM/DECLINE from the family.

        Confirm reassigns the shift to the claimant. Decline frees the request
        so another caregiver can claim it.
        """
        claim = self.db.respond_to_claim(claim_id, confirmed, responding_user_id)
        if not claim:
            logger.info(f"Confirmation reply for claim {claim_id} ignored: no longer pending")
            return _ignored("not_pending", claim_id=claim_id)

        context = self.db.get_claim_context(claim_id)
        shift = context["shift"] or {}
        claimant = context["claiming_caregiver"] or {}

        if confirmed:
            logger.info(f"Claim {claim_id} confirmed: shift {shift.get('id')} -> {claim['claiming_caregiver_id']}")
            if self.on_shift_reassigned:
                self.on_shift_reassigned(shift, claim)
            template = NotificationType.CLAIM_CONFIRMED.value
        else:
            logger.info(f"Claim {claim_id} declined, request {claim['coverage_request_id']} reopened")
            template = NotificationType.CLAIM_DECLINED.value

        if claimant and shift:
            text = render(
                template,
                claimant.get("preferred_language"),
                claimant_name=claimant.get("full_name", ""),
                shift_title=shift["title"],
                time_window=format_time_window(shift["start_time"], shift["end_time"]),
                location_line=optional_line("📍 ", shift.get("location"))
            )
            self.notifier.send(
                claimant, text, template,
                shift_id=shift["id"],
                notification_type=template,
                coverage_request_id=claim["coverage_request_id"]
            )

        return {
            "success": True,
            "action": "confirmed" if confirmed else "declined",
            "claim_id": claim_id,
            "request_id": claim["coverage_request_id"],
            "shift_id": shift.get("id"),
        }
