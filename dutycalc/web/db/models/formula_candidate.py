"""
Review queue for extracted formulas that did not clear the confidence bar.

A candidate never touches the rate catalog until a reviewer approves it.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict

from sqlalchemy import JSON

from dutycalc.web.db import db
from dutycalc.web.db.models.base import BaseModel


class CandidateStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class FormulaCandidate(BaseModel):
    __tablename__ = "hts_formula_candidates"

    id = db.Column(db.Integer, primary_key=True)
    rate_entry_id = db.Column(db.Integer, db.ForeignKey("hts_rate_entries.id"), nullable=True, index=True)
    hts_number = db.Column(db.String(16), nullable=False, index=True)
    country_code = db.Column(db.String(3), nullable=True)
    rate_category = db.Column(db.String(16), nullable=False)  # general, other, chapter99
    rate_text = db.Column(db.String(512), nullable=True)
    current_formula = db.Column(db.String(512), nullable=True)
    proposed_formula = db.Column(db.String(512), nullable=False)
    proposed_variables = db.Column(JSON, nullable=True)
    confidence = db.Column(db.Numeric(5, 4), nullable=False)
    method = db.Column(db.String(16), nullable=False)  # pattern, ai
    reasoning = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default=CandidateStatus.PENDING.value, index=True)
    review_comment = db.Column(db.Text, nullable=True)
    reviewed_by = db.Column(db.String(128), nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    rate_entry = db.relationship("RateEntry")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rate_entry_id": self.rate_entry_id,
            "hts_number": self.hts_number,
            "country_code": self.country_code,
            "rate_category": self.rate_category,
            "rate_text": self.rate_text,
            "current_formula": self.current_formula,
            "proposed_formula": self.proposed_formula,
            "proposed_variables": self.proposed_variables,
            "confidence": float(self.confidence) if self.confidence is not None else None,
            "method": self.method,
            "reasoning": self.reasoning,
            "status": self.status,
            "review_comment": self.review_comment,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
