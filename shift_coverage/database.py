"""
Shift Coverage Database Module

Data access layer for the coverage workflow. Every status change goes through
a guarded conditional UPDATE ("set status to X where status = Y") and reports
whether it won; callers never check-then-write.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

from sqlalchemy import and_, create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from . import config
from .models import (
    Base, Profile, CarePlan, CareTeamMember, CareShift,
    ShiftCoverageRequest, ShiftCoverageClaim, ShiftNotification,
    WhatsAppMessageLog, AssistantNudge,
    CoverageRequestStatus, ClaimStatus, DeliveryStatus, MessageDirection,
    new_id, new_reference_code, normalize_phone,
)

logger = logging.getLogger(__name__)

PENDING = CoverageRequestStatus.PENDING_FAMILY_APPROVAL.value
APPROVED = CoverageRequestStatus.APPROVED.value
DENIED = CoverageRequestStatus.DENIED.value
EXPIRED = CoverageRequestStatus.EXPIRED.value
CLAIM_PENDING = ClaimStatus.PENDING_FAMILY_CONFIRMATION.value
CLAIM_CONFIRMED = ClaimStatus.CONFIRMED.value
CLAIM_DECLINED = ClaimStatus.DECLINED.value

REFERENCE_CODE_ATTEMPTS = 3


def normalize_database_url(database_url: Optional[str]) -> str:
    if not database_url:
        logger.warning("DATABASE_URL not set, using SQLite fallback")
        return config.SQLITE_FALLBACK_URL
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+psycopg2://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg2://", 1)
    return database_url


class CoverageDatabase:
    """Database manager for coverage requests, claims and message ledgers."""

    def __init__(self, database_url: Optional[str] = None, request_expiry_hours: Optional[int] = None):
        self.database_url = normalize_database_url(database_url or config.DATABASE_URL)
        self.request_expiry = timedelta(
            hours=request_expiry_hours if request_expiry_hours is not None else config.REQUEST_EXPIRY_HOURS
        )
        self.engine = None
        self.SessionLocal = None
        self._initialized = False

    def initialize(self):
        """Create the engine and any missing tables."""
        if self._initialized:
            return

        try:
            if self.database_url.startswith("sqlite"):
                self.engine = create_engine(self.database_url, connect_args={"check_same_thread": False})
            else:
                self.engine = create_engine(
                    self.database_url,
                    pool_size=5,
                    max_overflow=10,
                    pool_pre_ping=True
                )

            self.SessionLocal = sessionmaker(
                autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
            )
            Base.metadata.create_all(bind=self.engine)

            self._initialized = True
            logger.info("Shift coverage database initialized")

        except Exception as e:
            logger.error(f"Failed to initialize shift coverage database: {e}")
            raise

    @contextmanager
    def get_session(self):
        """Get a database session with automatic cleanup."""
        if not self._initialized:
            self.initialize()

        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # PEOPLE, PLANS AND SHIFTS (read side)
    # =========================================================================

    def get_profile(self, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not user_id:
            return None
        with self.get_session() as session:
            profile = session.query(Profile).filter(Profile.id == user_id).first()
            return profile.to_dict() if profile else None

    def get_profiles(self, user_ids: List[str]) -> List[Dict[str, Any]]:
        if not user_ids:
            return []
        with self.get_session() as session:
            profiles = session.query(Profile).filter(Profile.id.in_(user_ids)).all()
            return [p.to_dict() for p in profiles]

    def find_user_by_phone(self, phone: str) -> Optional[Dict[str, Any]]:
        """Look up a profile by phone number, tolerating formatting differences."""
        digits = normalize_phone(phone)
        if not digits:
            return None

        candidates = {phone, digits, f"+{digits}"}
        with self.get_session() as session:
            profile = session.query(Profile).filter(
                Profile.phone_number.in_(candidates)
            ).order_by(Profile.created_at).first()

            if profile:
                return profile.to_dict()

            # Stored numbers may carry formatting ("+1 (868) 555-0101")
            possible = session.query(Profile).filter(
                Profile.phone_number.like(f"%{digits[-4:]}")
            ).order_by(Profile.created_at).all()
            for profile in possible:
                if normalize_phone(profile.phone_number) == digits:
                    return profile.to_dict()

        logger.info(f"DB: No profile for phone {digits}")
        return None

    def get_shift(self, shift_id: str) -> Optional[Dict[str, Any]]:
        with self.get_session() as session:
            shift = session.query(CareShift).filter(CareShift.id == shift_id).first()
            return shift.to_dict() if shift else None

    def get_care_plan(self, care_plan_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not care_plan_id:
            return None
        with self.get_session() as session:
            plan = session.query(CarePlan).filter(CarePlan.id == care_plan_id).first()
            return plan.to_dict() if plan else None

    def get_active_team_members(
        self,
        care_plan_id: str,
        exclude_caregiver_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Active caregivers on a care plan, joined with their profiles."""
        with self.get_session() as session:
            query = session.query(CareTeamMember, Profile).join(
                Profile, Profile.id == CareTeamMember.caregiver_id
            ).filter(
                CareTeamMember.care_plan_id == care_plan_id,
                CareTeamMember.status == "active"
            )
            if exclude_caregiver_id:
                query = query.filter(CareTeamMember.caregiver_id != exclude_caregiver_id)

            members = []
            seen = set()
            for member, profile in query.order_by(CareTeamMember.created_at).all():
                if member.caregiver_id in seen:
                    continue
                seen.add(member.caregiver_id)
                members.append({
                    "caregiver_id": member.caregiver_id,
                    "full_name": profile.full_name,
                    "phone_number": profile.phone_number,
                    "preferred_language": profile.preferred_language,
                })
            return members

    def is_active_team_member(self, care_plan_id: Optional[str], caregiver_id: str) -> bool:
        if not care_plan_id:
            return False
        with self.get_session() as session:
            member = session.query(CareTeamMember.id).filter(
                CareTeamMember.care_plan_id == care_plan_id,
                CareTeamMember.caregiver_id == caregiver_id,
                CareTeamMember.status == "active"
            ).first()
            return member is not None

    def get_upcoming_assigned_shifts(self, window_start: datetime, window_end: datetime) -> List[Dict[str, Any]]:
        """Assigned, non-cancelled shifts starting inside the window, with caregiver profile."""
        with self.get_session() as session:
            rows = session.query(CareShift, Profile).outerjoin(
                Profile, Profile.id == CareShift.caregiver_id
            ).filter(
                and_(
                    CareShift.start_time >= window_start,
                    CareShift.start_time <= window_end,
                    CareShift.caregiver_id.isnot(None),
                    CareShift.status != "cancelled"
                )
            ).order_by(CareShift.start_time).all()

            return [
                {"shift": shift.to_dict(), "caregiver": profile.to_dict() if profile else None}
                for shift, profile in rows
            ]

    def get_care_plan_shifts(self, care_plan_id: str, window_start: datetime, window_end: datetime) -> List[Dict]:
        """Shifts of one care plan in a window, each with the assigned caregiver's name."""
        with self.get_session() as session:
            rows = session.query(CareShift, Profile).outerjoin(
                Profile, Profile.id == CareShift.caregiver_id
            ).filter(
                CareShift.care_plan_id == care_plan_id,
                CareShift.start_time >= window_start,
                CareShift.start_time <= window_end,
                CareShift.status != "cancelled"
            ).order_by(CareShift.start_time).all()

            shifts = []
            for shift, profile in rows:
                data = shift.to_dict()
                data["caregiver_name"] = profile.full_name if profile else None
                shifts.append(data)
            return shifts

    # =========================================================================
    # COVERAGE REQUESTS AND CLAIMS (read side)
    # =========================================================================

    def get_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        with self.get_session() as session:
            request = session.query(ShiftCoverageRequest).filter(ShiftCoverageRequest.id == request_id).first()
            return request.to_dict() if request else None

    def get_claim(self, claim_id: str) -> Optional[Dict[str, Any]]:
        with self.get_session() as session:
            claim = session.query(ShiftCoverageClaim).filter(ShiftCoverageClaim.id == claim_id).first()
            return claim.to_dict() if claim else None

    def get_claims_for_request(self, request_id: str) -> List[Dict[str, Any]]:
        with self.get_session() as session:
            claims = session.query(ShiftCoverageClaim).filter(
                ShiftCoverageClaim.coverage_request_id == request_id
            ).order_by(ShiftCoverageClaim.claimed_at).all()
            return [c.to_dict() for c in claims]

    def get_request_context(self, request_id: str) -> Optional[Dict[str, Any]]:
        """A request with its shift, family, requesting caregiver and care plan."""
        request = self.get_request(request_id)
        if not request:
            return None

        shift = self.get_shift(request["shift_id"])
        return {
            "request": request,
            "shift": shift,
            "family": self.get_profile(shift["family_id"]) if shift else None,
            "requesting_caregiver": self.get_profile(request["requesting_caregiver_id"]),
            "care_plan": self.get_care_plan(shift["care_plan_id"]) if shift else None,
        }

    def get_claim_context(self, claim_id: str) -> Optional[Dict[str, Any]]:
        """A claim with its request, shift, family and claiming caregiver."""
        claim = self.get_claim(claim_id)
        if not claim:
            return None

        request = self.get_request(claim["coverage_request_id"])
        shift = self.get_shift(request["shift_id"]) if request else None
        return {
            "claim": claim,
            "request": request,
            "shift": shift,
            "family": self.get_profile(shift["family_id"]) if shift else None,
            "claiming_caregiver": self.get_profile(claim["claiming_caregiver_id"]),
        }

    def find_pending_request_for_family(
        self,
        family_id: str,
        reference_code: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """The family's most recent request awaiting approval (or the one named by reference)."""
        with self.get_session() as session:
            query = session.query(ShiftCoverageRequest).join(
                CareShift, CareShift.id == ShiftCoverageRequest.shift_id
            ).filter(
                CareShift.family_id == family_id,
                ShiftCoverageRequest.status == PENDING
            )
            if reference_code:
                query = query.filter(ShiftCoverageRequest.reference_code == reference_code)

            request = query.order_by(ShiftCoverageRequest.requested_at.desc()).first()
            return request.to_dict() if request else None

    def find_claimable_request_for_caregiver(
        self,
        caregiver_id: str,
        reference_code: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Most recent approved, unclaimed request on a care plan the caregiver actively belongs to."""
        with self.get_session() as session:
            query = session.query(ShiftCoverageRequest).join(
                CareShift, CareShift.id == ShiftCoverageRequest.shift_id
            ).join(
                CareTeamMember,
                and_(
                    CareTeamMember.care_plan_id == CareShift.care_plan_id,
                    CareTeamMember.caregiver_id == caregiver_id,
                    CareTeamMember.status == "active"
                )
            ).filter(
                ShiftCoverageRequest.status == APPROVED,
                ShiftCoverageRequest.active_claim_id.is_(None),
                ShiftCoverageRequest.requesting_caregiver_id != caregiver_id
            )
            if reference_code:
                query = query.filter(ShiftCoverageRequest.reference_code == reference_code)

            request = query.order_by(ShiftCoverageRequest.requested_at.desc()).first()
            return request.to_dict() if request else None

    def find_pending_claim_for_family(
        self,
        family_id: str,
        reference_code: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """The family's most recent claim awaiting confirmation (or the one named by reference)."""
        with self.get_session() as session:
            query = session.query(ShiftCoverageClaim).join(
                ShiftCoverageRequest, ShiftCoverageRequest.id == ShiftCoverageClaim.coverage_request_id
            ).join(
                CareShift, CareShift.id == ShiftCoverageRequest.shift_id
            ).filter(
                CareShift.family_id == family_id,
                ShiftCoverageClaim.status == CLAIM_PENDING
            )
            if reference_code:
                query = query.filter(ShiftCoverageClaim.reference_code == reference_code)

            claim = query.order_by(ShiftCoverageClaim.claimed_at.desc()).first()
            return claim.to_dict() if claim else None

    def find_expired_pending_request_ids(self, now: datetime) -> List[str]:
        with self.get_session() as session:
            rows = session.query(ShiftCoverageRequest.id).filter(
                ShiftCoverageRequest.status == PENDING,
                ShiftCoverageRequest.expires_at <= now
            ).order_by(ShiftCoverageRequest.requested_at).all()
            return [row[0] for row in rows]

    def find_unclaimed_approved_request_ids(self, responded_before: datetime) -> List[str]:
        """Approved requests still open, with nobody holding a claim, approved before the cutoff."""
        with self.get_session() as session:
            rows = session.query(ShiftCoverageRequest.id).filter(
                ShiftCoverageRequest.status == APPROVED,
                ShiftCoverageRequest.open_shift_key.isnot(None),
                ShiftCoverageRequest.active_claim_id.is_(None),
                ShiftCoverageRequest.family_response_at <= responded_before
            ).order_by(ShiftCoverageRequest.family_response_at).all()
            return [row[0] for row in rows]

    # =========================================================================
    # COVERAGE REQUESTS AND CLAIMS (guarded writes)
    # =========================================================================

    def create_coverage_request(
        self,
        shift_id: str,
        caregiver_id: str,
        reason: str,
        request_message: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Insert a request in pending_family_approval.

        Returns None when the shift already has a non-terminal request. A
        reference code collision is retried with a fresh code.
        """
        now = now or datetime.utcnow()
        for attempt in range(1, REFERENCE_CODE_ATTEMPTS + 1):
            try:
                with self.get_session() as session:
                    request = ShiftCoverageRequest(
                        shift_id=shift_id,
                        requesting_caregiver_id=caregiver_id,
                        reason=reason,
                        request_message=request_message,
                        status=PENDING,
                        reference_code=new_reference_code(),
                        requested_at=now,
                        expires_at=now + self.request_expiry,
                        open_shift_key=shift_id,
                        updated_at=now
                    )
                    session.add(request)
                    session.flush()
                    return request.to_dict()
            except IntegrityError:
                if self.has_open_request(shift_id):
                    logger.info(f"Shift {shift_id} already has an open coverage request")
                    return None
                logger.warning(f"Reference code collision for shift {shift_id} (attempt {attempt})")

        raise RuntimeError(f"Could not allocate a reference code for shift {shift_id}")

    def has_open_request(self, shift_id: str) -> bool:
        with self.get_session() as session:
            return session.query(ShiftCoverageRequest.id).filter(
                ShiftCoverageRequest.open_shift_key == shift_id
            ).first() is not None

    def respond_to_request(
        self,
        request_id: str,
        approved: bool,
        responding_user_id: str,
        now: Optional[datetime] = None
    ) -> bool:
        """pending_family_approval -> approved|denied. False if the request was not pending."""
        now = now or datetime.utcnow()
        values = {
            "status": APPROVED if approved else DENIED,
            "family_response_at": now,
            "family_response_by": responding_user_id,
            "updated_at": now,
        }
        if not approved:
            values["open_shift_key"] = None

        with self.get_session() as session:
            updated = session.query(ShiftCoverageRequest).filter(
                ShiftCoverageRequest.id == request_id,
                ShiftCoverageRequest.status == PENDING,
                ShiftCoverageRequest.expires_at > now
            ).update(values, synchronize_session=False)
            return updated == 1

    def claim_request(
        self,
        request_id: str,
        caregiver_id: str,
        now: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically take the request's claim slot and insert the claim.

        The first write in the transaction is the conditional UPDATE, so of
        several concurrent claimants exactly one sees a row affected.
        Returns the new claim, or None if the request was not claimable.
        """
        now = now or datetime.utcnow()
        claim_id = new_id()

        with self.get_session() as session:
            won = session.query(ShiftCoverageRequest).filter(
                ShiftCoverageRequest.id == request_id,
                ShiftCoverageRequest.status == APPROVED,
                ShiftCoverageRequest.active_claim_id.is_(None)
            ).update({"active_claim_id": claim_id, "updated_at": now}, synchronize_session=False)

            if not won:
                return None

            claim = ShiftCoverageClaim(
                id=claim_id,
                coverage_request_id=request_id,
                claiming_caregiver_id=caregiver_id,
                status=CLAIM_PENDING,
                claimed_at=now
            )
            session.add(claim)
            session.flush()
            return claim.to_dict()

    def respond_to_claim(
        self,
        claim_id: str,
        confirmed: bool,
        responding_user_id: str,
        now: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """
        pending_family_confirmation -> confirmed|declined.

        Confirm closes the request and hands the shift to the claimant.
        Decline frees the request's claim slot so it stays open.
        Returns the updated claim, or None if it was not pending.
        """
        now = now or datetime.utcnow()

        with self.get_session() as session:
            updated = session.query(ShiftCoverageClaim).filter(
                ShiftCoverageClaim.id == claim_id,
                ShiftCoverageClaim.status == CLAIM_PENDING
            ).update({
                "status": CLAIM_CONFIRMED if confirmed else CLAIM_DECLINED,
                "family_confirmed_at": now,
                "family_confirmed_by": responding_user_id,
            }, synchronize_session=False)

            if not updated:
                return None

            claim = session.query(ShiftCoverageClaim).filter(ShiftCoverageClaim.id == claim_id).one()

            if confirmed:
                session.query(ShiftCoverageRequest).filter(
                    ShiftCoverageRequest.id == claim.coverage_request_id
                ).update({"open_shift_key": None, "updated_at": now}, synchronize_session=False)

                request = session.query(ShiftCoverageRequest).filter(
                    ShiftCoverageRequest.id == claim.coverage_request_id
                ).one()
                session.query(CareShift).filter(CareShift.id == request.shift_id).update(
                    {"caregiver_id": claim.claiming_caregiver_id, "updated_at": now},
                    synchronize_session=False
                )
            else:
                session.query(ShiftCoverageRequest).filter(
                    ShiftCoverageRequest.id == claim.coverage_request_id,
                    ShiftCoverageRequest.active_claim_id == claim_id
                ).update({"active_claim_id": None, "updated_at": now}, synchronize_session=False)

            return claim.to_dict()

    def expire_request(self, request_id: str, now: Optional[datetime] = None) -> bool:
        """pending_family_approval -> expired, only once expires_at has passed."""
        now = now or datetime.utcnow()
        with self.get_session() as session:
            updated = session.query(ShiftCoverageRequest).filter(
                ShiftCoverageRequest.id == request_id,
                ShiftCoverageRequest.status == PENDING,
                ShiftCoverageRequest.expires_at <= now
            ).update({"status": EXPIRED, "open_shift_key": None, "updated_at": now}, synchronize_session=False)
            return updated == 1

    # =========================================================================
    # NOTIFICATION LEDGER
    # =========================================================================

    def record_notification(
        self,
        shift_id: str,
        notification_type: str,
        sent_to: str,
        message_content: str,
        delivery_status: str = DeliveryStatus.SENT.value,
        coverage_request_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        with self.get_session() as session:
            record = ShiftNotification(
                coverage_request_id=coverage_request_id,
                shift_id=shift_id,
                notification_type=notification_type,
                sent_to=sent_to,
                message_content=message_content,
                delivery_status=delivery_status,
                sent_at=now or datetime.utcnow()
            )
            session.add(record)
            session.flush()
            return record.to_dict()

    def has_notification(
        self,
        shift_id: str,
        notification_type: str,
        sent_to: Optional[str] = None,
        coverage_request_id: Optional[str] = None
    ) -> bool:
        """
        Whether a notification of this type was already recorded.

        Failed attempts count too: a recipient gets one ledger row per
        (shift, type) and is not retried by later sweeps.
        """
        with self.get_session() as session:
            query = session.query(ShiftNotification.id).filter(
                ShiftNotification.shift_id == shift_id,
                ShiftNotification.notification_type == notification_type
            )
            if sent_to:
                query = query.filter(ShiftNotification.sent_to == sent_to)
            if coverage_request_id:
                query = query.filter(ShiftNotification.coverage_request_id == coverage_request_id)
            return query.first() is not None

    def get_notifications(
        self,
        shift_id: Optional[str] = None,
        notification_type: Optional[str] = None,
        sent_to: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        with self.get_session() as session:
            query = session.query(ShiftNotification)
            if shift_id:
                query = query.filter(ShiftNotification.shift_id == shift_id)
            if notification_type:
                query = query.filter(ShiftNotification.notification_type == notification_type)
            if sent_to:
                query = query.filter(ShiftNotification.sent_to == sent_to)
            return [n.to_dict() for n in query.order_by(ShiftNotification.sent_at).all()]

    # =========================================================================
    # WHATSAPP MESSAGE LOG AND NUDGES
    # =========================================================================

    def log_message(
        self,
        phone_number: str,
        direction: str,
        content: str,
        message_type: str = "text",
        user_id: Optional[str] = None,
        template_name: Optional[str] = None,
        processed: bool = False
    ) -> str:
        """Append to the WhatsApp message log. Returns the entry id."""
        now = datetime.utcnow()
        with self.get_session() as session:
            entry = WhatsAppMessageLog(
                phone_number=phone_number,
                user_id=user_id,
                direction=direction,
                message_type=message_type,
                content=content,
                template_name=template_name,
                processed=processed,
                processed_at=now if processed else None,
                created_at=now
            )
            session.add(entry)
            session.flush()
            return entry.id

    def mark_message_processed(self, log_id: str, user_id: Optional[str] = None) -> None:
        values = {"processed": True, "processed_at": datetime.utcnow()}
        if user_id:
            values["user_id"] = user_id
        with self.get_session() as session:
            session.query(WhatsAppMessageLog).filter(
                WhatsAppMessageLog.id == log_id,
                WhatsAppMessageLog.direction == MessageDirection.INCOMING.value
            ).update(values, synchronize_session=False)

    def get_message_log(self, phone_number: Optional[str] = None, direction: Optional[str] = None) -> List[Dict]:
        with self.get_session() as session:
            query = session.query(WhatsAppMessageLog)
            if phone_number:
                query = query.filter(WhatsAppMessageLog.phone_number == phone_number)
            if direction:
                query = query.filter(WhatsAppMessageLog.direction == direction)
            return [m.to_dict() for m in query.order_by(WhatsAppMessageLog.created_at).all()]

    def record_nudge(self, user_id: str, message: str, status: str, context: Dict[str, Any]) -> Dict[str, Any]:
        with self.get_session() as session:
            nudge = AssistantNudge(user_id=user_id, message=message, status=status, context=context)
            session.add(nudge)
            session.flush()
            return nudge.to_dict()

    def get_nudges(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.get_session() as session:
            query = session.query(AssistantNudge)
            if user_id:
                query = query.filter(AssistantNudge.user_id == user_id)
            return [n.to_dict() for n in query.order_by(AssistantNudge.created_at).all()]
