"""
Shift Reminder Scheduler

Periodic sweep, triggered externally (cron or the /shift-reminder-scheduler
endpoint). Each pass:
- reminds caregivers of assigned shifts starting within the lookahead window
- expires time-off requests the family never answered
- alerts families whose approved shift nobody has claimed

The notification ledger is the only memory between passes. Idempotency is a
check-then-send, so two overlapping sweeps can still double-send.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from . import config
from .database import CoverageDatabase
from .models import NotificationType
from .notifier import CoverageNotifier
from .templates import render, format_datetime, optional_line
from .whatsapp_service import WhatsAppService, build_whatsapp_service

logger = logging.getLogger(__name__)


class ReminderScheduler:
    """Sends shift reminders and enforces request expiry."""

    def __init__(
        self,
        db: CoverageDatabase,
        transport: WhatsAppService = None,
        lookahead_days: Optional[int] = None,
        unclaimed_alert_hours: Optional[int] = None
    ):
        self.db = db
        self.notifier = CoverageNotifier(db, transport or build_whatsapp_service())
        self.lookahead = timedelta(
            days=lookahead_days if lookahead_days is not None else config.REMINDER_LOOKAHEAD_DAYS
        )
        self.unclaimed_after = timedelta(
            hours=unclaimed_alert_hours if unclaimed_alert_hours is not None else config.UNCLAIMED_ALERT_HOURS
        )

    def run(self, now: Optional[datetime] = None) -> Dict[str, List[str]]:
        """
        One full sweep.

        Returns:
            Actions taken per step, e.g. {"reminders": ["reminder_2_days:<shift_id>"], ...}
        """
        now = now or datetime.utcnow()
        logger.info("Running shift reminder scheduler...")

        summary = {
            "reminders": self.send_reminders(now),
            "expired": self.expire_stale_requests(now),
            "unclaimed_alerts": self.alert_unclaimed_shifts(now),
        }

        logger.info(
            f"Scheduler done: {len(summary['reminders'])} reminders, "
            f"{len(summary['expired'])} expired, {len(summary['unclaimed_alerts'])} unclaimed alerts"
        )
        return summary

    def send_reminders(self, now: Optional[datetime] = None) -> List[str]:
        """Remind each assigned caregiver once about a shift starting within the window."""
        now = now or datetime.utcnow()
        actions = []
        reminder_type = NotificationType.REMINDER_2_DAYS.value

        for item in self.db.get_upcoming_assigned_shifts(now, now + self.lookahead):
            shift, caregiver = item["shift"], item["caregiver"]

            if not caregiver or not caregiver.get("phone_number"):
                continue

            if self.db.has_notification(shift["id"], reminder_type, sent_to=caregiver["id"]):
                continue

            text = render(
                reminder_type,
                caregiver.get("preferred_language"),
                shift_title=shift["title"],
                start_time=format_datetime(shift["start_time"]),
                location_line=optional_line("📍 ", shift.get("location"))
            )
            result = self.notifier.send(
                caregiver, text, reminder_type,
                shift_id=shift["id"],
                notification_type=reminder_type
            )
            if result.delivered:
                actions.append(f"{reminder_type}:{shift['id']}")

        return actions

    def expire_stale_requests(self, now: Optional[datetime] = None) -> List[str]:
        """Move unanswered requests past expires_at to expired and tell both parties."""
        now = now or datetime.utcnow()
        actions = []
        expired_type = NotificationType.REQUEST_EXPIRED.value

        request_ids = self.db.find_expired_pending_request_ids(now)
        if request_ids:
            logger.info(f"Found {len(request_ids)} expired requests")

        for request_id in request_ids:
            # The family may have answered since the query ran
            if not self.db.expire_request(request_id, now):
                continue

            actions.append(f"expired:{request_id}")
            context = self.db.get_request_context(request_id)
            shift = context["shift"]
            if not shift:
                continue

            requester = context["requesting_caregiver"] or {}
            params = {
                "requester_name": requester.get("full_name", "your caregiver"),
                "shift_title": shift["title"],
                "start_time": format_datetime(shift["start_time"]),
            }

            family = context["family"]
            if family:
                self.notifier.send(
                    family,
                    render("request_expired", family.get("preferred_language"), **params),
                    "request_expired",
                    shift_id=shift["id"],
                    notification_type=expired_type,
                    coverage_request_id=request_id
                )

            if requester:
                self.notifier.send(
                    requester,
                    render("request_expired_caregiver", requester.get("preferred_language"), **params),
                    "request_expired_caregiver",
                    shift_id=shift["id"],
                    notification_type=expired_type,
                    coverage_request_id=request_id
                )

        return actions

    def alert_unclaimed_shifts(self, now: Optional[datetime] = None) -> List[str]:
        """Tell the family, once, that an approved shift is still unclaimed."""
        now = now or datetime.utcnow()
        actions = []
        alert_type = NotificationType.UNCLAIMED_SHIFT_ALERT.value

        for request_id in self.db.find_unclaimed_approved_request_ids(now - self.unclaimed_after):
            context = self.db.get_request_context(request_id)
            shift, family = context["shift"], context["family"]
            if not shift or not family:
                continue

            if self.db.has_notification(shift["id"], alert_type, sent_to=family["id"],
                                        coverage_request_id=request_id):
                continue

            text = render(
                alert_type,
                family.get("preferred_language"),
                shift_title=shift["title"],
                start_time=format_datetime(shift["start_time"])
            )
            result = self.notifier.send(
                family, text, alert_type,
                shift_id=shift["id"],
                notification_type=alert_type,
                coverage_request_id=request_id
            )
            if result.delivered:
                actions.append(f"{alert_type}:{request_id}")

        return actions
