"""
Shift Coverage Coordination Service

Lets caregivers hand off shifts over WhatsApp:
- Caregiver requests time off, family approves or denies
- Approved shifts are broadcast to the rest of the care team
- First caregiver to reply CLAIM holds the shift until the family confirms
- Scheduled sweep sends shift reminders and expires unanswered requests
- Nudge endpoint for emergency, schedule and generic team messages
"""

from .api import create_app, CoverageServices, CoverageAction
from .database import CoverageDatabase
from .engine import ShiftCoverageEngine
from .message_router import InboundMessageRouter, parse_reply
from .nudge_service import NudgeService, NudgeRequestError
from .reminder_scheduler import ReminderScheduler
from .whatsapp_service import WhatsAppService, MockWhatsAppService, DeliveryResult, build_whatsapp_service

__all__ = [
    'create_app',
    'CoverageServices',
    'CoverageAction',
    'CoverageDatabase',
    'ShiftCoverageEngine',
    'InboundMessageRouter',
    'parse_reply',
    'NudgeService',
    'NudgeRequestError',
    'ReminderScheduler',
    'WhatsAppService',
    'MockWhatsAppService',
    'DeliveryResult',
    'build_whatsapp_service',
]
