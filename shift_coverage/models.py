"""
Data models for Shift Coverage

Coverage requests, claims, the notification ledger and the WhatsApp message
log are owned by this service. Profiles, care plans, team members and shifts
are owned by the main application; they are mapped here so the service can
read them (and reassign a shift once a claim is confirmed).
"""

import secrets
import string
import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Index, JSON, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

REFERENCE_ALPHABET = string.ascii_uppercase + string.digits
REFERENCE_LENGTH = 6


def new_id() -> str:
    return str(uuid.uuid4())


def new_reference_code() -> str:
    """Short code quoted in outbound prompts so replies can name what they answer."""
    return "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(REFERENCE_LENGTH))


def normalize_phone(phone: str) -> str:
    """Digits only, so '+1 (868) 555-0101' and '18685550101' compare equal."""
    return "".join(filter(str.isdigit, phone or ""))


class CoverageRequestStatus(str, Enum):
    """Lifecycle of a time-off (coverage) request"""
    PENDING_FAMILY_APPROVAL = "pending_family_approval"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class ClaimStatus(str, Enum):
    """Lifecycle of a claim on an approved request"""
    PENDING_FAMILY_CONFIRMATION = "pending_family_confirmation"
    CONFIRMED = "confirmed"
    DECLINED = "declined"


class NotificationType(str, Enum):
    TIME_OFF_REQUEST = "time_off_request"
    COVERAGE_AVAILABLE = "coverage_available"
    COVERAGE_CLAIMED = "coverage_claimed"
    REMINDER_2_DAYS = "reminder_2_days"
    CLAIM_CONFIRMED = "claim_confirmed"
    CLAIM_DECLINED = "claim_declined"
    REQUEST_EXPIRED = "request_expired"
    UNCLAIMED_SHIFT_ALERT = "unclaimed_shift_alert"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class MessageDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


# =============================================================================
# External records (owned by the main application)
# =============================================================================

class Profile(Base):
    """A family member, caregiver or admin."""
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    full_name = Column(String(255), nullable=False)
    phone_number = Column(String(32), index=True)
    role = Column(String(50), default="family")  # family, professional, admin
    preferred_language = Column(String(8), default="en")
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "full_name": self.full_name,
            "phone_number": self.phone_number,
            "role": self.role,
            "preferred_language": self.preferred_language,
        }


class CarePlan(Base):
    __tablename__ = "care_plans"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(255), nullable=False)
    family_id = Column(String(36), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {"id": self.id, "title": self.title, "family_id": self.family_id}


class CareTeamMember(Base):
    """Caregiver membership in a family's care plan."""
    __tablename__ = "care_team_members"

    id = Column(String(36), primary_key=True, default=new_id)
    care_plan_id = Column(String(36), index=True)
    family_id = Column(String(36), nullable=False)
    caregiver_id = Column(String(36), nullable=False, index=True)
    role = Column(String(50), default="caregiver")
    status = Column(String(50), default="active")  # active, inactive, removed
    created_at = Column(DateTime, default=datetime.utcnow)


class CareShift(Base):
    """A scheduled caregiving block."""
    __tablename__ = "care_shifts"

    id = Column(String(36), primary_key=True, default=new_id)
    care_plan_id = Column(String(36), index=True)
    family_id = Column(String(36), nullable=False, index=True)
    caregiver_id = Column(String(36), index=True)
    title = Column(String(255), nullable=False)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)
    location = Column(String(255))
    status = Column(String(50), default="scheduled")  # scheduled, cancelled, completed
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "care_plan_id": self.care_plan_id,
            "family_id": self.family_id,
            "caregiver_id": self.caregiver_id,
            "title": self.title,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "location": self.location,
            "status": self.status,
        }


# =============================================================================
# Coverage workflow records (owned by this service)
# =============================================================================

class ShiftCoverageRequest(Base):
    """
    A caregiver's request to be relieved of a shift.

    open_shift_key holds the shift id while the request is non-terminal and is
    cleared on denial, expiry or a confirmed claim. The unique constraint on it
    is what keeps a shift down to one open request at a time.
    """
    __tablename__ = "shift_coverage_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    reference_code = Column(String(12), unique=True, nullable=False, default=new_reference_code)
    shift_id = Column(String(36), nullable=False, index=True)
    requesting_caregiver_id = Column(String(36), nullable=False, index=True)
    reason = Column(Text, nullable=False)
    request_message = Column(Text)
    status = Column(String(50), nullable=False, default=CoverageRequestStatus.PENDING_FAMILY_APPROVAL.value)
    requested_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    expires_at = Column(DateTime, nullable=False)
    family_response_at = Column(DateTime)
    family_response_by = Column(String(36))
    active_claim_id = Column(String(36))
    open_shift_key = Column(String(36), unique=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "reference_code": self.reference_code,
            "shift_id": self.shift_id,
            "requesting_caregiver_id": self.requesting_caregiver_id,
            "reason": self.reason,
            "request_message": self.request_message,
            "status": self.status,
            "requested_at": self.requested_at,
            "expires_at": self.expires_at,
            "family_response_at": self.family_response_at,
            "family_response_by": self.family_response_by,
            "active_claim_id": self.active_claim_id,
        }


class ShiftCoverageClaim(Base):
    """Another caregiver's offer to take an approved open shift."""
    __tablename__ = "shift_coverage_claims"

    id = Column(String(36), primary_key=True, default=new_id)
    reference_code = Column(String(12), unique=True, nullable=False, default=new_reference_code)
    coverage_request_id = Column(String(36), nullable=False, index=True)
    claiming_caregiver_id = Column(String(36), nullable=False, index=True)
    status = Column(String(50), nullable=False, default=ClaimStatus.PENDING_FAMILY_CONFIRMATION.value)
    claimed_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    family_confirmed_at = Column(DateTime)
    family_confirmed_by = Column(String(36))

    def to_dict(self):
        return {
            "id": self.id,
            "reference_code": self.reference_code,
            "coverage_request_id": self.coverage_request_id,
            "claiming_caregiver_id": self.claiming_caregiver_id,
            "status": self.status,
            "claimed_at": self.claimed_at,
            "family_confirmed_at": self.family_confirmed_at,
            "family_confirmed_by": self.family_confirmed_by,
        }


class ShiftNotification(Base):
    """Audit and idempotency ledger for workflow notifications. Never updated."""
    __tablename__ = "shift_notifications"
    __table_args__ = (
        Index("idx_shift_notifications_lookup", "shift_id", "notification_type", "sent_to"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    coverage_request_id = Column(String(36), index=True)
    shift_id = Column(String(36), nullable=False)
    notification_type = Column(String(50), nullable=False)
    sent_to = Column(String(36), nullable=False)
    message_content = Column(Text, nullable=False)
    delivery_status = Column(String(20), nullable=False, default=DeliveryStatus.SENT.value)
    sent_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "coverage_request_id": self.coverage_request_id,
            "shift_id": self.shift_id,
            "notification_type": self.notification_type,
            "sent_to": self.sent_to,
            "message_content": self.message_content,
            "delivery_status": self.delivery_status,
            "sent_at": self.sent_at,
        }


class WhatsAppMessageLog(Base):
    """Every inbound and outbound WhatsApp message."""
    __tablename__ = "whatsapp_message_log"

    id = Column(String(36), primary_key=True, default=new_id)
    phone_number = Column(String(32), nullable=False, index=True)
    user_id = Column(String(36))
    direction = Column(String(10), nullable=False)
    message_type = Column(String(50), nullable=False, default="text")
    content = Column(Text, nullable=False)
    template_name = Column(String(100))
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "phone_number": self.phone_number,
            "user_id": self.user_id,
            "direction": self.direction,
            "message_type": self.message_type,
            "content": self.content,
            "template_name": self.template_name,
            "processed": self.processed,
            "processed_at": self.processed_at,
            "created_at": self.created_at,
        }


class AssistantNudge(Base):
    """One row per nudge recipient."""
    __tablename__ = "assistant_nudges"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    message = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="sent")
    context = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "message": self.message,
            "status": self.status,
            "context": self.context,
            "created_at": self.created_at,
        }
