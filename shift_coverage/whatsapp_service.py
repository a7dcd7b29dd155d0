"""
WhatsApp Messaging Service for Shift Coverage

Sends plain-text WhatsApp messages through the WhatsApp Business Cloud API.
Delivery problems are reported in the returned DeliveryResult; send() never
raises, so a failure for one recipient cannot abort a batch.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Dict, Any

import requests

from . import config
from .models import normalize_phone

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    """Outcome of one outbound message."""
    delivered: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class WhatsAppService:
    """Message transport adapter backed by the WhatsApp Business Cloud API."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        phone_number_id: Optional[str] = None,
        api_version: Optional[str] = None,
        base_url: Optional[str] = None
    ):
        self.access_token = access_token or config.WHATSAPP_ACCESS_TOKEN
        self.phone_number_id = phone_number_id or config.WHATSAPP_PHONE_NUMBER_ID
        self.api_version = api_version or config.WHATSAPP_API_VERSION
        self.base_url = (base_url or config.WHATSAPP_API_BASE_URL).rstrip("/")

        self.enabled = bool(self.access_token and self.phone_number_id)
        if not self.enabled:
            logger.warning("WhatsApp credentials not fully configured")

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.api_version}/{self.phone_number_id}/messages"

    def format_phone(self, phone: str) -> str:
        """The Cloud API wants the number in international format, digits only."""
        return normalize_phone(phone)

    def send(self, phone_number: str, text: str, template_name: Optional[str] = None) -> DeliveryResult:
        """
        Send a text message.

        Args:
            phone_number: Recipient phone number, any formatting
            text: Message body
            template_name: Logical template name, for logging only

        Returns:
            DeliveryResult with the provider message id or the error text
        """
        if not self.enabled:
            return DeliveryResult(delivered=False, error="WhatsApp not configured")

        to = self.format_phone(phone_number)
        if not to:
            return DeliveryResult(delivered=False, error="Invalid phone number")

        try:
            response = requests.post(
                self.messages_url,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json"
                },
                json={
                    "messaging_product": "whatsapp",
                    "to": to,
                    "type": "text",
                    "text": {"body": text}
                },
                timeout=30
            )

            if 200 <= response.status_code < 300:
                data = response.json()
                messages = data.get("messages") or [{}]
                message_id = messages[0].get("id")
                logger.info(f"WhatsApp {template_name or 'message'} sent to {to}: {message_id}")
                return DeliveryResult(delivered=True, message_id=message_id)

            error = response.text[:200]
            logger.error(f"WhatsApp send failed: {response.status_code} - {error}")
            return DeliveryResult(delivered=False, error=f"HTTP {response.status_code}: {error}")

        except requests.RequestException as e:
            logger.error(f"WhatsApp send error: {e}")
            return DeliveryResult(delivered=False, error=str(e))
        except ValueError as e:
            logger.error(f"WhatsApp returned an unreadable response: {e}")
            return DeliveryResult(delivered=False, error=str(e))

    def is_enabled(self) -> bool:
        return self.enabled

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "api_version": self.api_version,
            "phone_number_id": self.phone_number_id,
            "error": None if self.enabled else "Missing credentials",
        }


class MockWhatsAppService(WhatsAppService):
    """
    Mock transport for local runs and tests.

    Records every message in sent_messages. Numbers listed in failing_numbers
    (digits only) get delivered=False.
    """

    def __init__(self, failing_numbers: Optional[List[str]] = None):
        super().__init__(access_token="mock", phone_number_id="mock")
        self.sent_messages: List[Dict[str, Any]] = []
        self.failing_numbers = {normalize_phone(p) for p in (failing_numbers or [])}

    def send(self, phone_number: str, text: str, template_name: Optional[str] = None) -> DeliveryResult:
        digits = normalize_phone(phone_number)
        if digits in self.failing_numbers:
            logger.info(f"[MOCK] WhatsApp to {phone_number} failed")
            return DeliveryResult(delivered=False, error="Simulated delivery failure")

        message_id = f"mock_{datetime.now().timestamp()}"
        self.sent_messages.append({
            "id": message_id,
            "to": phone_number,
            "text": text,
            "template_name": template_name,
            "sent_at": datetime.now()
        })
        logger.info(f"[MOCK] WhatsApp to {phone_number}: {text[:50]}...")
        return DeliveryResult(delivered=True, message_id=message_id)

    def messages_to(self, phone_number: str) -> List[Dict[str, Any]]:
        digits = normalize_phone(phone_number)
        return [m for m in self.sent_messages if normalize_phone(m["to"]) == digits]


def build_whatsapp_service() -> WhatsAppService:
    """The real adapter when credentials are configured, otherwise the mock."""
    service = WhatsAppService()
    if service.is_enabled():
        return service
    logger.info("Using mock WhatsApp service")
    return MockWhatsAppService()
