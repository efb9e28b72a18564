"""
Append-only audit record of a completed calculation.

Rows are written once by the orchestrator. Any later flush that would
update or delete one raises ImmutableRecordError.
"""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON, event

from dutycalc.errors import ImmutableRecordError
from dutycalc.web.db import db
from dutycalc.web.db.models.base import BaseModel


class CalculationRecord(BaseModel):
    __tablename__ = "calculation_records"

    id = db.Column(db.Integer, primary_key=True)
    calculation_id = db.Column(db.String(64), nullable=False, unique=True)  # "CALC-20250101120000-1a2b3c4d"
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # Input snapshot
    inputs = db.Column(JSON, nullable=False)
    hts_number = db.Column(db.String(16), nullable=False, index=True)
    country_code = db.Column(db.String(3), nullable=False)
    entry_date = db.Column(db.Date, nullable=False)

    # Rate and formula provenance
    rate_entry_id = db.Column(db.Integer, nullable=False)
    rate_source_version = db.Column(db.String(64), nullable=True)
    rate_category = db.Column(db.String(16), nullable=False)
    formula_used = db.Column(db.String(512), nullable=False)
    formula_provenance = db.Column(JSON, nullable=False)
    eligibility = db.Column(JSON, nullable=True)

    # Breakdown (amounts also kept as strings in `breakdown` for exact replay)
    tax_lines = db.Column(JSON, nullable=False, default=list)
    warnings = db.Column(JSON, nullable=False, default=list)
    base_duty = db.Column(db.Numeric(18, 4), nullable=False)
    extra_taxes_total = db.Column(db.Numeric(18, 4), nullable=False)
    total_duty = db.Column(db.Numeric(18, 4), nullable=False)
    landed_cost = db.Column(db.Numeric(18, 4), nullable=False)
    breakdown = db.Column(JSON, nullable=False)
    engine_version = db.Column(db.String(16), nullable=False)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "calculation_id": self.calculation_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "inputs": self.inputs,
            "rate_entry_id": self.rate_entry_id,
            "rate_source_version": self.rate_source_version,
            "rate_category": self.rate_category,
            "formula_used": self.formula_used,
            "formula_provenance": self.formula_provenance,
            "eligibility": self.eligibility,
            "tax_lines": self.tax_lines,
            "warnings": self.warnings,
            "breakdown": self.breakdown,
            "engine_version": self.engine_version,
        }


@event.listens_for(CalculationRecord, "before_update")
def _reject_update(mapper, connection, target):
    raise ImmutableRecordError(f"Calculation record {target.calculation_id} is append-only")


@event.listens_for(CalculationRecord, "before_delete")
def _reject_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Calculation record {target.calculation_id} cannot be deleted")
