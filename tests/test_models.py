"""
Model-level tests: HTS normalization, date windows, rate columns, and the
append-only calculation record.
"""

from datetime import date
from decimal import Decimal

import pytest

from dutycalc.errors import ImmutableRecordError
from dutycalc.web.db.models import CalculationRecord, RateCategory, normalize_hts


def _record(**overrides):
    fields = {
        "calculation_id": "CALC-20250601120000-0a1b2c3d",
        "inputs": {"hts_number": "8544.42.90.90"},
        "hts_number": "8544.42.90.90",
        "country_code": "CN",
        "entry_date": date(2025, 6, 1),
        "rate_entry_id": 1,
        "rate_category": "general",
        "formula_used": "value * 0.026",
        "formula_provenance": {"source": "stored"},
        "base_duty": Decimal("260.00"),
        "extra_taxes_total": Decimal("0"),
        "total_duty": Decimal("260.00"),
        "landed_cost": Decimal("10260.00"),
        "breakdown": {},
        "engine_version": "1.0.0",
    }
    fields.update(overrides)
    return CalculationRecord.create(**fields)


class TestRateEntry:

    def test_hts_digits_follow_hts_number(self, app, make_rate_entry):
        entry = make_rate_entry(hts_number="8544.42.90.90")

        assert entry.hts_digits == "8544429090"
        assert entry.chapter == "85"
        assert normalize_hts(" 0702.00.20 ") == "07020020"

    def test_window_is_end_exclusive(self, app, make_rate_entry):
        entry = make_rate_entry(effective_date=date(2025, 1, 1), expiration_date=date(2025, 7, 1))

        assert not entry.is_active(date(2024, 12, 31))
        assert entry.is_active(date(2025, 1, 1))
        assert entry.is_active(date(2025, 6, 30))
        assert not entry.is_active(date(2025, 7, 1))

    def test_rate_columns_are_independent(self, app, make_rate_entry):
        entry = make_rate_entry(general_rate_text="2.6%", chapter99_rate_text="25%")

        entry.apply_formula(RateCategory.CHAPTER99, "value * 0.25", ["value"], "pattern", 1.0)

        assert entry.rate_column(RateCategory.CHAPTER99).is_resolved
        assert not entry.rate_column(RateCategory.GENERAL).is_resolved
        assert entry.rate_column(RateCategory.GENERAL).has_text
        assert not entry.rate_column(RateCategory.OTHER).has_text

    def test_special_column_carries_no_formula(self, app, make_rate_entry):
        entry = make_rate_entry(special_rate_text="Free (CA,MX)")

        assert entry.rate_column(RateCategory.SPECIAL).rate_text == "Free (CA,MX)"
        with pytest.raises(ValueError):
            entry.apply_formula(RateCategory.SPECIAL, "0", [], "pattern", 1.0)


class TestExtraTax:

    def test_inactive_flag_wins_over_window(self, app, make_extra_tax):
        tax = make_extra_tax("MPF", rate=0.003464, is_active_flag=False)

        assert not tax.is_active(date(2025, 6, 1))

    def test_serializes_amounts_as_strings(self, app, make_extra_tax):
        tax = make_extra_tax("MPF", rate=0.003464, minimum_amount=Decimal("32.71"))

        data = tax.as_dict()

        assert data["rate"] == "0.003464"
        assert data["minimum_amount"] == "32.71"
        assert data["maximum_amount"] is None


class TestCalculationRecord:

    def test_update_rejected(self, app, db_session):
        record = _record()
        record.total_duty = Decimal("0")

        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()

        assert CalculationRecord.query.one().total_duty == Decimal("260.00")

    def test_delete_rejected(self, app, db_session):
        record = _record()
        db_session.delete(record)

        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()

        assert CalculationRecord.query.count() == 1

    def test_insert_allowed(self, app):
        _record(calculation_id="CALC-1")
        _record(calculation_id="CALC-2")

        assert CalculationRecord.query.count() == 2
