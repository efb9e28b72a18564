"""
Pytest fixtures for dutycalc tests.

Provides:
- Flask app fixture with in-memory SQLite (app context held for the test)
- Model factories for rate entries, extra taxes, agreements and notes
- A mock AI collaborator for formula extraction
"""

import os
import sys
from datetime import date, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

# Set testing environment before importing the package
os.environ["TESTING"] = "true"
os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"

# Add the project root to the Python path
project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_dir not in sys.path:
    sys.path.insert(0, project_dir)


# ============================================================================
# Flask App Fixtures
# ============================================================================

@pytest.fixture
def app():
    """Create Flask application for testing."""
    from dutycalc.web import create_app
    from dutycalc.web.db import db

    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def db_session(app):
    """Database session for direct DB access in tests."""
    from dutycalc.web.db import db
    return db.session


# ============================================================================
# Model Factories
# ============================================================================

@pytest.fixture
def make_rate_entry(db_session):
    from dutycalc.web.db.models import RateEntry

    def _make(hts_number="8544.42.90.90", general_rate_text="5%", **kwargs):
        fields = {
            "country_code": "ALL",
            "effective_date": date(2025, 1, 1),
            "source_version": "2025 Revision 1",
            "unit_of_quantity": "kg",
        }
        fields.update(kwargs)
        return RateEntry.create(hts_number=hts_number, general_rate_text=general_rate_text, **fields)

    return _make


@pytest.fixture
def make_extra_tax(db_session):
    from dutycalc.web.db.models import ExtraTax

    def _make(tax_code, **kwargs):
        fields = {
            "tax_name": f"{tax_code} fee",
            "country_code": "ALL",
            "application_mode": "ADD_ON",
            "is_percentage": True,
            "apply_to": "VALUE",
            "priority": 50,
            "effective_date": date(2025, 1, 1),
        }
        if "rate" in kwargs and kwargs["rate"] is not None:
            kwargs["rate"] = Decimal(str(kwargs["rate"]))
        fields.update(kwargs)
        return ExtraTax.create(tax_code=tax_code, **fields)

    return _make


@pytest.fixture
def make_agreement(db_session):
    from dutycalc.web.db.models import TradeAgreement, TradeAgreementEligibility

    def _make(code="USMCA", partners=("MX", "CA"), certificate_required=True, eligibility=(), **kwargs):
        agreement = TradeAgreement.create(
            code=code,
            name=f"{code} agreement",
            partner_countries=list(partners),
            certificate_required=certificate_required,
            effective_date=kwargs.pop("effective_date", date(2020, 7, 1)),
            **kwargs,
        )
        for record in eligibility:
            TradeAgreementEligibility.create(agreement_code=code, **record)
        return agreement

    return _make


@pytest.fixture
def make_note(db_session):
    """Create a document + note + rates in one call."""
    from dutycalc.web.db.models import HtsDocument, HtsNote, HtsNoteRate

    def _make(
        chapter="99",
        note_number="20(r)",
        year=2025,
        processed_at=datetime(2025, 1, 15, 12, 0),
        rates=(("value * 0.25", 0.95, False),),
        note_type="additional_us_note",
        document=None,
        source_version="2025 Revision 1",
    ):
        if document is None:
            document = HtsDocument.create(
                chapter=chapter,
                year=year,
                source_version=source_version,
                processed_at=processed_at,
            )
        note = HtsNote.create(
            document_id=document.id,
            chapter=chapter,
            note_type=note_type,
            note_number=note_number,
            content=f"Note {note_number} text",
            year=year,
            has_rate=bool(rates),
        )
        for formula, confidence, verified in rates:
            HtsNoteRate.create(
                note_id=note.id,
                formula=formula,
                variables=["value"] if formula and "value" in formula else [],
                confidence=Decimal(str(confidence)),
                verified=verified,
            )
        return note

    return _make


# ============================================================================
# Mock Fixtures for External Services
# ============================================================================

@pytest.fixture
def mock_llm():
    """FormulaLLM stand-in; set .propose.return_value / side_effect per test."""
    from dutycalc.services.formula_llm import FormulaLLM
    return Mock(spec=FormulaLLM)


@pytest.fixture
def generator(mock_llm):
    from dutycalc.services.formula_generator import FormulaGenerator
    return FormulaGenerator(llm=mock_llm, max_workers=4)
