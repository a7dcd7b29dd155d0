"""
Shift Coverage configuration.

All settings come from environment variables (a local .env is loaded first).
Constructors elsewhere accept explicit overrides, so these are only defaults.
"""

import os

from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
SQLITE_FALLBACK_URL = "sqlite:///./shift_coverage.db"

# WhatsApp Business Cloud API
WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN")
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID")
WHATSAPP_API_VERSION = os.getenv("WHATSAPP_API_VERSION", "v17.0")
WHATSAPP_API_BASE_URL = os.getenv("WHATSAPP_API_BASE_URL", "https://graph.facebook.com")

# Message formatting
DISPLAY_TIMEZONE = os.getenv("DISPLAY_TIMEZONE", "UTC")
DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "en")

# Workflow timing
REQUEST_EXPIRY_HOURS = int(os.getenv("REQUEST_EXPIRY_HOURS", "24"))
REMINDER_LOOKAHEAD_DAYS = int(os.getenv("REMINDER_LOOKAHEAD_DAYS", "2"))
UNCLAIMED_ALERT_HOURS = int(os.getenv("UNCLAIMED_ALERT_HOURS", "24"))

# Service
SENTRY_DSN = os.getenv("SENTRY_DSN")
ENVIRONMENT = os.getenv("ENVIRONMENT", "production")
PORT = int(os.getenv("PORT", "8770"))
