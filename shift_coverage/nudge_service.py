"""
WhatsApp nudges.

Outbound messages outside the coverage workflow, in three families:
- emergency shift coverage broadcast to a care team (urgent format)
- schedule update digest (weekly/biweekly/monthly) for a care plan
- generic nudges (welcome, reminder, follow_up, general) to chosen users

Each recipient gets an outgoing message log row and an AssistantNudge row.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from .database import CoverageDatabase
from .models import DeliveryStatus
from .notifier import CoverageNotifier
from .templates import render, format_date, format_time, format_time_window
from .whatsapp_service import WhatsAppService, build_whatsapp_service

logger = logging.getLogger(__name__)

EMERGENCY_SHIFT_COVERAGE = "emergency_shift_coverage"
SCHEDULE_UPDATE_SUFFIX = "_schedule_update"
SCHEDULE_PERIOD_DAYS = {"weekly": 7, "biweekly": 14, "monthly": 30}
DEFAULT_NUDGE_TYPES = ("welcome", "reminder", "follow_up", "general")


class NudgeRequestError(ValueError):
    """The nudge request is missing or has invalid parameters."""


class NudgeService:

    def __init__(self, db: CoverageDatabase, transport: WhatsAppService = None):
        self.db = db
        self.notifier = CoverageNotifier(db, transport or build_whatsapp_service())

    def send_nudges(
        self,
        target_users: Optional[List[str]] = None,
        message_type: str = "general",
        custom_message: Optional[str] = None,
        care_plan_id: Optional[str] = None,
        shift_details: Optional[Dict[str, Any]] = None,
        schedule_period: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Send one nudge to every resolved recipient.

        Raises:
            NudgeRequestError: when the parameters don't describe any nudge family

        Returns:
            {"success": True, "message": "Messages sent to N recipients", "results": [...]}
            or {"success": False, "error": ...} when nobody has a phone number
        """
        logger.info(f"WhatsApp nudge request: type={message_type} care_plan={care_plan_id} "
                    f"targets={len(target_users or [])}")

        period = self._resolve_schedule_period(message_type, schedule_period)

        if message_type == EMERGENCY_SHIFT_COVERAGE:
            if not care_plan_id or not isinstance(shift_details, dict):
                raise NudgeRequestError("Invalid request: missing required parameters")
            recipients = self._team_recipients(care_plan_id)
            message = self._emergency_message(shift_details)

        elif period:
            if not care_plan_id:
                raise NudgeRequestError("Invalid request: care_plan_id is required for schedule updates")
            recipients = self._user_recipients(target_users) if target_users else self._team_recipients(care_plan_id)
            message = custom_message or self._schedule_digest(care_plan_id, period, now or datetime.utcnow())

        elif target_users:
            recipients = self._user_recipients(target_users)
            message = custom_message or self._default_message(message_type)

        else:
            raise NudgeRequestError("Invalid request: missing required parameters")

        recipients = [r for r in recipients if r.get("phone_number")]
        if not recipients:
            return {"success": False, "error": "No recipients with phone numbers found"}

        results = []
        for recipient in recipients:
            result = self.notifier.send(recipient, message, message_type, message_type=message_type)

            context = {
                "message_type": message_type,
                "phone_number": recipient["phone_number"],
                "care_plan_id": care_plan_id,
            }
            if message_type == EMERGENCY_SHIFT_COVERAGE:
                context["shift_details"] = shift_details
            if period:
                context["schedule_period"] = period

            status = DeliveryStatus.SENT.value if result.delivered else DeliveryStatus.FAILED.value
            self.db.record_nudge(recipient["id"], message, status, context)

            if result.delivered:
                results.append({
                    "recipient": recipient["phone_number"],
                    "status": status,
                    "message_id": result.message_id,
                })
            else:
                results.append({
                    "recipient": recipient["phone_number"],
                    "status": status,
                    "error": result.error,
                })

        sent = sum(1 for r in results if r["status"] == DeliveryStatus.SENT.value)
        return {
            "success": True,
            "message": f"Messages sent to {sent} recipients",
            "results": results,
        }

    def _resolve_schedule_period(self, message_type: str, schedule_period: Optional[str]) -> Optional[str]:
        if schedule_period:
            if schedule_period not in SCHEDULE_PERIOD_DAYS:
                raise NudgeRequestError(f"Invalid schedule_period: {schedule_period}")
            return schedule_period

        if message_type and message_type.endswith(SCHEDULE_UPDATE_SUFFIX):
            period = message_type[:-len(SCHEDULE_UPDATE_SUFFIX)]
            if period in SCHEDULE_PERIOD_DAYS:
                return period
        return None

    def _team_recipients(self, care_plan_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "id": member["caregiver_id"],
                "full_name": member["full_name"],
                "phone_number": member["phone_number"],
                "preferred_language": member["preferred_language"],
            }
            for member in self.db.get_active_team_members(care_plan_id)
        ]

    def _user_recipients(self, user_ids: List[str]) -> List[Dict[str, Any]]:
        return self.db.get_profiles(user_ids)

    def _emergency_message(self, shift_details: Dict[str, Any]) -> str:
        start, end = shift_details.get("start_time"), shift_details.get("end_time")
        return render(
            EMERGENCY_SHIFT_COVERAGE,
            shift_date=format_date(start),
            time_window=f"{format_time(start)} - {format_time(end)}",
            location=shift_details.get("location") or "Patient's home",
            reason=shift_details.get("reason") or "Not specified"
        )

    def _schedule_digest(self, care_plan_id: str, period: str, now: datetime) -> str:
        care_plan = self.db.get_care_plan(care_plan_id) or {}
        shifts = self.db.get_care_plan_shifts(
            care_plan_id, now, now + timedelta(days=SCHEDULE_PERIOD_DAYS[period])
        )

        if shifts:
            shift_lines = "\n".join(
                f"• {format_time_window(s['start_time'], s['end_time'])}: "
                f"{s['title']} ({s['caregiver_name'] or 'Unassigned'})"
                for s in shifts
            )
        else:
            shift_lines = render("schedule_empty")

        return render(
            "schedule_update",
            period_label=period.upper(),
            care_plan_title=care_plan.get("title", "Your care plan"),
            shift_lines=shift_lines
        )

    def _default_message(self, message_type: str) -> str:
        return render(message_type if message_type in DEFAULT_NUDGE_TYPES else "general")
