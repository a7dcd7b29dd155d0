"""
Outbound notifications for the coverage workflow.

One send = transport call + outgoing WhatsApp log row + (optionally) a
ShiftNotification ledger row carrying the delivery outcome.
"""

import logging
from typing import Optional, Dict, Any

from .database import CoverageDatabase
from .models import DeliveryStatus, MessageDirection
from .whatsapp_service import DeliveryResult, WhatsAppService

logger = logging.getLogger(__name__)


class CoverageNotifier:

    def __init__(self, db: CoverageDatabase, transport: WhatsAppService):
        self.db = db
        self.transport = transport

    def send(
        self,
        recipient: Dict[str, Any],
        text: str,
        template_name: str,
        shift_id: Optional[str] = None,
        notification_type: Optional[str] = None,
        coverage_request_id: Optional[str] = None,
        message_type: str = "template"
    ) -> DeliveryResult:
        """
        Send one message to a profile and record it.

        A ledger row is written only when notification_type is given; a
        recipient without a phone number gets a 'failed' row.
        Failures are returned, never raised.
        """
        user_id = recipient.get("id") or recipient.get("caregiver_id")
        phone = recipient.get("phone_number")

        if not phone:
            logger.info(f"No phone number for user {user_id}, skipping {template_name}")
            result = DeliveryResult(delivered=False, error="No phone number")
        else:
            try:
                result = self.transport.send(phone, text, template_name)
            except Exception as e:
                logger.error(f"Transport raised sending {template_name} to {user_id}: {e}")
                result = DeliveryResult(delivered=False, error=str(e))

            if not result.delivered:
                logger.error(f"Failed to send {template_name} to {user_id}: {result.error}")

            self.db.log_message(
                phone_number=phone,
                direction=MessageDirection.OUTGOING.value,
                content=text,
                message_type=message_type,
                user_id=user_id,
                template_name=template_name,
                processed=True
            )

        if notification_type and shift_id and user_id:
            self.db.record_notification(
                shift_id=shift_id,
                notification_type=notification_type,
                sent_to=user_id,
                message_content=text,
                delivery_status=DeliveryStatus.SENT.value if result.delivered else DeliveryStatus.FAILED.value,
                coverage_request_id=coverage_request_id
            )

        return result
