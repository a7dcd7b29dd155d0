"""
Message templates for shift coverage WhatsApp messages.

Templates are keyed by language code; anything missing in a language falls
back to English. Workflow prompts quote a reference code so a reply like
"APPROVE K7Q2XP" names exactly what it answers.
"""

import logging
from datetime import datetime
from typing import Optional, Union

import pytz

from . import config

logger = logging.getLogger(__name__)

TIMEZONE = pytz.timezone(config.DISPLAY_TIMEZONE)


TEMPLATES = {
    "en": {
        "time_off_request": (
            "🏥 SHIFT COVERAGE REQUEST\n\n"
            "{requester_name} has requested time off for:\n"
            "📅 {shift_title}\n"
            "⏰ {time_window}\n"
            "🏷️ Reason: {reason}\n"
            "{message_line}\n"
            "Reply:\n"
            "✅ APPROVE {reference_code} to allow this request\n"
            "❌ DENY {reference_code} to decline this request\n\n"
            "Request expires in {expiry_hours} hours."
        ),
        "coverage_available": (
            "🚨 SHIFT AVAILABLE\n\n"
            "📅 {shift_title}\n"
            "⏰ {time_window}\n"
            "👤 Originally: {requester_name}\n"
            "🏠 Client: {care_plan_title}\n"
            "{location_line}\n"
            "Reply CLAIM {reference_code} to take this shift\n"
            "⚡ First come, first served!"
        ),
        "coverage_claimed": (
            "👋 SHIFT CLAIM\n\n"
            "{claimant_name} wants to cover:\n"
            "📅 {shift_title}\n"
            "⏰ {time_window}\n\n"
            "Reply:\n"
            "✅ CONFIRM {reference_code} to assign this caregiver\n"
            "❌ DECLINE {reference_code} to look for other options"
        ),
        "claim_confirmed": (
            "✅ CONFIRMED! The shift is yours.\n\n"
            "📅 {shift_title}\n"
            "⏰ {time_window}\n"
            "{location_line}\n"
            "Thank you for covering!"
        ),
        "claim_declined": (
            "Thanks for offering, {claimant_name}. The family has arranged other coverage for:\n"
            "📅 {shift_title}\n"
            "⏰ {time_window}\n\n"
            "We'll reach out again with future opportunities!"
        ),
        "reminder_2_days": (
            "📋 SHIFT REMINDER\n\n"
            "You have a shift in 2 days:\n"
            "📅 {shift_title}\n"
            "⏰ {start_time}\n"
            "{location_line}\n"
            "See you there! 💪"
        ),
        "request_expired": (
            "⏰ TIME-OFF REQUEST EXPIRED\n\n"
            "The time-off request from {requester_name} for:\n"
            "📅 {shift_title}\n"
            "⏰ {start_time}\n\n"
            "Has expired and was automatically denied. "
            "Please coordinate directly with your caregiver if needed."
        ),
        "request_expired_caregiver": (
            "❌ TIME-OFF REQUEST EXPIRED\n\n"
            "Your time-off request for:\n"
            "📅 {shift_title}\n"
            "⏰ {start_time}\n\n"
            "Has expired and was automatically denied. "
            "Please coordinate directly with the family if you still need coverage."
        ),
        "unclaimed_shift_alert": (
            "🚨 SHIFT STILL NEEDS COVERAGE\n\n"
            "No one has claimed the shift:\n"
            "📅 {shift_title}\n"
            "⏰ {start_time}\n\n"
            "You may need to manually arrange coverage or contact caregivers directly."
        ),
        "emergency_shift_coverage": (
            "🚨 URGENT: EMERGENCY SHIFT COVERAGE NEEDED\n\n"
            "We have an urgent opening that needs to be filled:\n\n"
            "📅 Date: {shift_date}\n"
            "⏰ Time: {time_window}\n"
            "📍 Location: {location}\n"
            "❗ Reason: {reason}\n\n"
            "PLEASE RESPOND IMMEDIATELY if you can cover this shift.\n\n"
            "This is TIME SENSITIVE - first to respond gets the shift."
        ),
        "schedule_update": (
            "🗓️ {period_label} SCHEDULE UPDATE\n"
            "🏠 {care_plan_title}\n\n"
            "{shift_lines}"
        ),
        "schedule_empty": "No shifts scheduled for this period.",
        "welcome": "Welcome! We're excited to help you with your caregiving journey. 🤝",
        "reminder": "Don't forget to complete your profile to get matched with the best care opportunities! 📋",
        "follow_up": "How is your caregiving experience going? We're here to help if you need anything! 💙",
        "general": "Hi from your care team! We're here to support you on your caregiving journey. 🌟",
    },
    "es": {
        "time_off_request": (
            "🏥 SOLICITUD DE COBERTURA DE TURNO\n\n"
            "{requester_name} ha solicitado tiempo libre para:\n"
            "📅 {shift_title}\n"
            "⏰ {time_window}\n"
            "🏷️ Motivo: {reason}\n"
            "{message_line}\n"
            "Responda:\n"
            "✅ APPROVE {reference_code} para aprobar la solicitud\n"
            "❌ DENY {reference_code} para rechazarla\n\n"
            "La solicitud vence en {expiry_hours} horas."
        ),
        "coverage_available": (
            "🚨 TURNO DISPONIBLE\n\n"
            "📅 {shift_title}\n"
            "⏰ {time_window}\n"
            "👤 Originalmente: {requester_name}\n"
            "🏠 Cliente: {care_plan_title}\n"
            "{location_line}\n"
            "Responda CLAIM {reference_code} para tomar este turno\n"
            "⚡ ¡El primero que responda se lo queda!"
        ),
        "coverage_claimed": (
            "👋 TURNO RECLAMADO\n\n"
            "{claimant_name} quiere cubrir:\n"
            "📅 {shift_title}\n"
            "⏰ {time_window}\n\n"
            "Responda:\n"
            "✅ CONFIRM {reference_code} para asignar a este cuidador\n"
            "❌ DECLINE {reference_code} para buscar otras opciones"
        ),
        "claim_confirmed": (
            "✅ ¡CONFIRMADO! El turno es suyo.\n\n"
            "📅 {shift_title}\n"
            "⏰ {time_window}\n"
            "{location_line}\n"
            "¡Gracias por cubrirlo!"
        ),
        "claim_declined": (
            "Gracias por ofrecerse, {claimant_name}. La familia organizó otra cobertura para:\n"
            "📅 {shift_title}\n"
            "⏰ {time_window}"
        ),
        "reminder_2_days": (
            "📋 RECORDATORIO DE TURNO\n\n"
            "Tiene un turno en 2 días:\n"
            "📅 {shift_title}\n"
            "⏰ {start_time}\n"
            "{location_line}\n"
            "¡Nos vemos! 💪"
        ),
    },
}

def _as_datetime(value: Union[datetime, str, None]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable timestamp in message data: {value}")
        return None


def to_display_tz(value: Union[datetime, str, None]) -> Optional[datetime]:
    """Stored times are naive UTC; show them in the configured zone."""
    dt = _as_datetime(value)
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = pytz.utc.localize(dt)
    return dt.astimezone(TIMEZONE)


def format_datetime(value) -> str:
    dt = to_display_tz(value)
    if dt is None:
        return "TBD"
    return dt.strftime("%a %b %d, %I:%M %p").replace(" 0", " ")


def format_time(value) -> str:
    dt = to_display_tz(value)
    if dt is None:
        return "TBD"
    return dt.strftime("%I:%M %p").lstrip("0")


def format_date(value) -> str:
    dt = to_display_tz(value)
    if dt is None:
        return "TBD"
    return dt.strftime("%A, %B %d, %Y").replace(" 0", " ")


def format_time_window(start, end) -> str:
    """e.g. 'Mon Oct 20, 9:00 AM - 5:00 PM'"""
    return f"{format_datetime(start)} - {format_time(end)}"


def optional_line(label: str, value: Optional[str]) -> str:
    return f"{label}{value}\n" if value else ""


def render(name: str, language: Optional[str] = None, **params) -> str:
    """Render a named template in the recipient's language, English if unavailable."""
    language = (language or config.DEFAULT_LANGUAGE).lower()
    templates = TEMPLATES.get(language, {})
    template = templates.get(name) or TEMPLATES["en"].get(name)
    if template is None:
        raise KeyError(f"Unknown message template: {name}")
    return template.format(**params)
