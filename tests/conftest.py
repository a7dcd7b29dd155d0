"""
Shared pytest fixtures for the shift coverage test suite.

Every test gets its own file-backed SQLite database and a recording mock
WhatsApp transport, so nothing touches real services.
"""

import os
import sys
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

# Ensure project root is on sys.path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shift_coverage.database import CoverageDatabase
from shift_coverage.engine import ShiftCoverageEngine
from shift_coverage.models import Profile, CarePlan, CareTeamMember, CareShift
from shift_coverage.whatsapp_service import MockWhatsAppService


# ============================================================
# Environment fixtures
# ============================================================

@pytest.fixture(autouse=True)
def mock_env(monkeypatch):
    """Set safe default environment variables for all tests."""
    defaults = {
        "DATABASE_URL": "sqlite:///./test_shift_coverage.db",
        "ENVIRONMENT": "test",
        "WHATSAPP_ACCESS_TOKEN": "",
        "WHATSAPP_PHONE_NUMBER_ID": "",
        "DISPLAY_TIMEZONE": "UTC",
    }
    for key, value in defaults.items():
        monkeypatch.setenv(key, value)


# ============================================================
# Database fixtures
# ============================================================

@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database file per test."""
    database = CoverageDatabase(f"sqlite:///{tmp_path / 'shift_coverage.db'}")
    database.initialize()
    yield database
    database.engine.dispose()


@pytest.fixture
def add_records(db):
    """Insert ORM records directly, standing in for the main application's writes."""
    def _add(*records):
        with db.get_session() as session:
            for record in records:
                session.add(record)
    return _add


@pytest.fixture
def transport():
    return MockWhatsAppService()


@pytest.fixture
def engine(db, transport):
    return ShiftCoverageEngine(db, transport)


# ============================================================
# Care team fixtures
# ============================================================

@pytest.fixture
def care_team(add_records):
    """
    One family, one care plan, one shift assigned to Alice five days out.

    Team: Alice, Ben and Cara active with phones, Eve active without a phone,
    Dev inactive.
    """
    now = datetime.utcnow()
    team = SimpleNamespace(
        family_id="family-1",
        family_phone="+1 (868) 555-0100",
        alice_id="cg-alice",
        alice_phone="+18685550101",
        ben_id="cg-ben",
        ben_phone="+18685550102",
        cara_id="cg-cara",
        cara_phone="+18685550103",
        dev_id="cg-dev",
        dev_phone="+18685550104",
        eve_id="cg-eve",
        plan_id="plan-1",
        shift_id="shift-1",
        shift_start=(now + timedelta(days=5)).replace(microsecond=0),
    )

    add_records(
        Profile(id=team.family_id, full_name="Maria Lopez", phone_number=team.family_phone, role="family"),
        Profile(id=team.alice_id, full_name="Alice Baptiste", phone_number=team.alice_phone, role="professional"),
        Profile(id=team.ben_id, full_name="Ben Mohammed", phone_number=team.ben_phone, role="professional"),
        Profile(id=team.cara_id, full_name="Cara Joseph", phone_number=team.cara_phone, role="professional",
                preferred_language="es"),
        Profile(id=team.dev_id, full_name="Dev Ramdial", phone_number=team.dev_phone, role="professional"),
        Profile(id=team.eve_id, full_name="Eve Charles", phone_number=None, role="professional"),
        CarePlan(id=team.plan_id, title="Mr. Lopez Home Care", family_id=team.family_id),
        CareTeamMember(care_plan_id=team.plan_id, family_id=team.family_id, caregiver_id=team.alice_id),
        CareTeamMember(care_plan_id=team.plan_id, family_id=team.family_id, caregiver_id=team.ben_id),
        CareTeamMember(care_plan_id=team.plan_id, family_id=team.family_id, caregiver_id=team.cara_id),
        CareTeamMember(care_plan_id=team.plan_id, family_id=team.family_id, caregiver_id=team.eve_id),
        CareTeamMember(care_plan_id=team.plan_id, family_id=team.family_id, caregiver_id=team.dev_id,
                       status="inactive"),
        CareShift(
            id=team.shift_id,
            care_plan_id=team.plan_id,
            family_id=team.family_id,
            caregiver_id=team.alice_id,
            title="Morning Care",
            start_time=team.shift_start,
            end_time=team.shift_start + timedelta(hours=8),
            location="12 Oak Lane, Arima",
        ),
    )
    return team


@pytest.fixture
def pending_request(engine, care_team):
    """Alice has asked for time off; the family hasn't answered."""
    result = engine.submit_coverage_request(care_team.shift_id, care_team.alice_id, "Doctor appointment")
    assert result["success"]
    return result["request_id"]


@pytest.fixture
def approved_request(engine, care_team, pending_request):
    """The family approved Alice's request and the shift was broadcast."""
    result = engine.record_family_approval(pending_request, True, care_team.family_id)
    assert result["action"] == "approved"
    return pending_request
