"""
SQLAlchemy models for the versioned rate catalog.

These tables are populated by the ingestion collaborator from the
published HTS schedule and are read-mostly: a new schedule revision is a
new row with a later effective date, never an in-place rewrite.

Date windows are end-exclusive: effective_date <= d < expiration_date.

Tables:
- RateEntry: per-HTS duty rates (general / other / chapter 99 / special columns)
- ExtraTax: fees and additional tariffs stacked on top of the base duty
- TradeAgreement: agreement master data (partners, certificate default)
- TradeAgreementEligibility: per-HTS preferential rate under an agreement
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, UniqueConstraint
from sqlalchemy.orm import validates

from dutycalc.web.db import db
from dutycalc.web.db.models.base import BaseModel


def normalize_hts(hts_number: str) -> str:
    """'8544.42.90.90' -> '8544429090'"""
    return re.sub(r"[^0-9]", "", hts_number or "")


def _window_contains(effective: Optional[date], expiration: Optional[date], as_of: date) -> bool:
    if effective and as_of < effective:
        return False
    if expiration and as_of >= expiration:
        return False
    return True


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


class RateCategory(str, Enum):
    """Rate columns of the schedule."""
    GENERAL = "general"        # Column 1 general (NTR)
    OTHER = "other"            # Column 2, non-NTR countries
    CHAPTER99 = "chapter99"    # Chapter 99 contingency rate
    SPECIAL = "special"        # Preferential programs as printed


class ApplicationMode(str, Enum):
    """How an extra tax relates to the running duty total."""
    ADD_ON = "ADD_ON"
    STANDALONE = "STANDALONE"
    CONDITIONAL = "CONDITIONAL"
    POST_CALCULATION = "POST_CALCULATION"


class BaseValue(str, Enum):
    """Which amount a percentage extra tax is applied to."""
    VALUE = "VALUE"
    DUTY = "DUTY"
    TOTAL = "TOTAL"
    QUANTITY = "QUANTITY"
    WEIGHT = "WEIGHT"


@dataclass
class RateColumn:
    """One rate category of a RateEntry, with its resolved formula if any."""
    category: RateCategory
    rate_text: Optional[str] = None
    formula: Optional[str] = None
    variables: List[str] = field(default_factory=list)
    method: Optional[str] = None
    confidence: Optional[float] = None

    @property
    def has_text(self) -> bool:
        return bool(self.rate_text and self.rate_text.strip())

    @property
    def is_resolved(self) -> bool:
        return self.formula is not None


class RateEntry(BaseModel):
    """
    Duty rates for one HTS number over one effective window.

    country_code is "ALL" for the published schedule; a country-specific
    row overrides it for that origin. Each formula-bearing category keeps
    its own resolved formula, so the general rate can be resolved while
    the chapter 99 rate still waits for review.
    """
    __tablename__ = "hts_rate_entries"
    __table_args__ = (
        UniqueConstraint('hts_number', 'country_code', 'effective_date', name='uq_rate_entry_version'),
    )

    id = db.Column(db.Integer, primary_key=True)
    hts_number = db.Column(db.String(16), nullable=False)  # "8544.42.90.90"
    hts_digits = db.Column(db.String(10), nullable=False, index=True)  # "8544429090"
    country_code = db.Column(db.String(3), nullable=False, default="ALL")
    description = db.Column(db.Text, nullable=True)
    unit_of_quantity = db.Column(db.String(32), nullable=True)  # "kg", "No.", "doz."

    general_rate_text = db.Column(db.String(256), nullable=True)
    general_formula = db.Column(db.String(512), nullable=True)
    general_formula_variables = db.Column(JSON, nullable=True)
    general_formula_method = db.Column(db.String(16), nullable=True)
    general_formula_confidence = db.Column(db.Numeric(5, 4), nullable=True)

    other_rate_text = db.Column(db.String(256), nullable=True)
    other_formula = db.Column(db.String(512), nullable=True)
    other_formula_variables = db.Column(JSON, nullable=True)
    other_formula_method = db.Column(db.String(16), nullable=True)
    other_formula_confidence = db.Column(db.Numeric(5, 4), nullable=True)

    chapter99_rate_text = db.Column(db.String(256), nullable=True)
    chapter99_formula = db.Column(db.String(512), nullable=True)
    chapter99_formula_variables = db.Column(JSON, nullable=True)
    chapter99_formula_method = db.Column(db.String(16), nullable=True)
    chapter99_formula_confidence = db.Column(db.Numeric(5, 4), nullable=True)

    special_rate_text = db.Column(db.String(512), nullable=True)  # "Free (A+,AU,CA,MX,...)"

    effective_date = db.Column(db.Date, nullable=False)
    expiration_date = db.Column(db.Date, nullable=True)  # NULL if still current
    source_version = db.Column(db.String(64), nullable=True)  # "2025 Revision 3"
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @validates("hts_number")
    def _set_digits(self, key, value):
        self.hts_digits = normalize_hts(value)
        return value

    @property
    def chapter(self) -> str:
        return self.hts_digits[:2]

    def is_active(self, as_of_date: Optional[date] = None) -> bool:
        return _window_contains(self.effective_date, self.expiration_date, as_of_date or date.today())

    def rate_column(self, category: RateCategory) -> RateColumn:
        if category == RateCategory.GENERAL:
            return RateColumn(
                category=category,
                rate_text=self.general_rate_text,
                formula=self.general_formula,
                variables=list(self.general_formula_variables or []),
                method=self.general_formula_method,
                confidence=_to_float(self.general_formula_confidence),
            )
        if category == RateCategory.OTHER:
            return RateColumn(
                category=category,
                rate_text=self.other_rate_text,
                formula=self.other_formula,
                variables=list(self.other_formula_variables or []),
                method=self.other_formula_method,
                confidence=_to_float(self.other_formula_confidence),
            )
        if category == RateCategory.CHAPTER99:
            return RateColumn(
                category=category,
                rate_text=self.chapter99_rate_text,
                formula=self.chapter99_formula,
                variables=list(self.chapter99_formula_variables or []),
                method=self.chapter99_formula_method,
                confidence=_to_float(self.chapter99_formula_confidence),
            )
        if category == RateCategory.SPECIAL:
            # Preferential formulas live on TradeAgreementEligibility
            return RateColumn(category=category, rate_text=self.special_rate_text)
        raise ValueError(f"Unknown rate category: {category}")

    def apply_formula(
        self,
        category: RateCategory,
        formula: str,
        variables: List[str],
        method: str,
        confidence: float,
    ) -> None:
        """Record a resolved formula on one category (caller commits)."""
        confidence = Decimal(str(confidence))
        if category == RateCategory.GENERAL:
            self.general_formula = formula
            self.general_formula_variables = list(variables)
            self.general_formula_method = method
            self.general_formula_confidence = confidence
        elif category == RateCategory.OTHER:
            self.other_formula = formula
            self.other_formula_variables = list(variables)
            self.other_formula_method = method
            self.other_formula_confidence = confidence
        elif category == RateCategory.CHAPTER99:
            self.chapter99_formula = formula
            self.chapter99_formula_variables = list(variables)
            self.chapter99_formula_method = method
            self.chapter99_formula_confidence = confidence
        else:
            raise ValueError(f"Category {category} does not carry a formula")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hts_number": self.hts_number,
            "country_code": self.country_code,
            "description": self.description,
            "unit_of_quantity": self.unit_of_quantity,
            "general_rate_text": self.general_rate_text,
            "general_formula": self.general_formula,
            "other_rate_text": self.other_rate_text,
            "other_formula": self.other_formula,
            "chapter99_rate_text": self.chapter99_rate_text,
            "chapter99_formula": self.chapter99_formula,
            "special_rate_text": self.special_rate_text,
            "effective_date": _iso(self.effective_date),
            "expiration_date": _iso(self.expiration_date),
            "source_version": self.source_version,
        }


class ExtraTax(BaseModel):
    """
    A fee or additional tariff layered on the base duty.

    Scope is matched three ways: exact hts_number, hts_chapter, or
    "ALL" (also "*" or NULL on both columns). Percentage taxes store
    `rate` as a fraction (0.003464 for 0.3464%); other taxes carry a
    rate_formula or a rate_text that pattern extraction understands.

    conditions is a flat JSON predicate evaluated against the calculation
    context, e.g. {"min_value": 2500, "transport_mode": "vessel"}.
    """
    __tablename__ = "hts_extra_taxes"

    id = db.Column(db.Integer, primary_key=True)
    tax_code = db.Column(db.String(32), nullable=False, index=True)  # "MPF", "HMF", "S301"
    tax_name = db.Column(db.String(256), nullable=False)
    description = db.Column(db.Text, nullable=True)
    hts_number = db.Column(db.String(16), nullable=True)
    hts_chapter = db.Column(db.String(4), nullable=True)
    country_code = db.Column(db.String(3), nullable=False, default="ALL")
    application_mode = db.Column(db.String(20), nullable=False, default=ApplicationMode.ADD_ON.value)
    rate_text = db.Column(db.String(256), nullable=True)
    rate_formula = db.Column(db.String(512), nullable=True)
    rate = db.Column(db.Numeric(10, 6), nullable=True)
    is_percentage = db.Column(db.Boolean, nullable=False, default=True)
    apply_to = db.Column(db.String(16), nullable=False, default=BaseValue.VALUE.value)
    minimum_amount = db.Column(db.Numeric(14, 2), nullable=True)
    maximum_amount = db.Column(db.Numeric(14, 2), nullable=True)
    conditions = db.Column(JSON, nullable=True)
    priority = db.Column(db.Integer, nullable=False, default=50)  # lower applies first
    is_active_flag = db.Column("is_active", db.Boolean, nullable=False, default=True)
    effective_date = db.Column(db.Date, nullable=False)
    expiration_date = db.Column(db.Date, nullable=True)
    legal_reference = db.Column(db.String(256), nullable=True)  # "19 CFR 24.23"

    @property
    def mode(self) -> ApplicationMode:
        return ApplicationMode(self.application_mode)

    @property
    def base_value(self) -> BaseValue:
        return BaseValue(self.apply_to)

    def is_active(self, as_of_date: Optional[date] = None) -> bool:
        if not self.is_active_flag:
            return False
        return _window_contains(self.effective_date, self.expiration_date, as_of_date or date.today())

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tax_code": self.tax_code,
            "tax_name": self.tax_name,
            "hts_number": self.hts_number,
            "hts_chapter": self.hts_chapter,
            "country_code": self.country_code,
            "application_mode": self.application_mode,
            "rate_text": self.rate_text,
            "rate_formula": self.rate_formula,
            "rate": str(self.rate) if self.rate is not None else None,
            "is_percentage": self.is_percentage,
            "apply_to": self.apply_to,
            "minimum_amount": str(self.minimum_amount) if self.minimum_amount is not None else None,
            "maximum_amount": str(self.maximum_amount) if self.maximum_amount is not None else None,
            "conditions": self.conditions,
            "priority": self.priority,
            "is_active": self.is_active_flag,
            "effective_date": _iso(self.effective_date),
            "expiration_date": _iso(self.expiration_date),
            "legal_reference": self.legal_reference,
        }


class TradeAgreement(BaseModel):
    """Trade agreement master data (USMCA, KORUS, ...)."""
    __tablename__ = "trade_agreements"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(16), nullable=False, unique=True)  # "USMCA"
    name = db.Column(db.String(256), nullable=False)
    partner_countries = db.Column(JSON, nullable=False, default=list)  # ["MX", "CA"]
    certificate_required = db.Column(db.Boolean, nullable=False, default=True)
    origin_rules = db.Column(db.Text, nullable=True)
    is_active_flag = db.Column("is_active", db.Boolean, nullable=False, default=True)
    effective_date = db.Column(db.Date, nullable=True)
    expiration_date = db.Column(db.Date, nullable=True)

    def covers_country(self, country_code: str) -> bool:
        return (country_code or "").upper() in {c.upper() for c in (self.partner_countries or [])}

    def is_active(self, as_of_date: Optional[date] = None) -> bool:
        if not self.is_active_flag:
            return False
        return _window_contains(self.effective_date, self.expiration_date, as_of_date or date.today())

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "partner_countries": self.partner_countries,
            "certificate_required": self.certificate_required,
            "origin_rules": self.origin_rules,
            "is_active": self.is_active_flag,
            "effective_date": _iso(self.effective_date),
            "expiration_date": _iso(self.expiration_date),
        }


class TradeAgreementEligibility(BaseModel):
    """
    Preferential rate for an HTS number (or prefix) under an agreement.

    hts_number may be 6, 8 or 10 digits; the resolver matches the most
    specific prefix first.
    """
    __tablename__ = "trade_agreement_eligibility"
    __table_args__ = (
        UniqueConstraint('hts_digits', 'agreement_code', name='uq_eligibility_hts_agreement'),
    )

    id = db.Column(db.Integer, primary_key=True)
    hts_number = db.Column(db.String(16), nullable=False)
    hts_digits = db.Column(db.String(10), nullable=False, index=True)
    agreement_code = db.Column(db.String(16), nullable=False, index=True)
    is_eligible = db.Column(db.Boolean, nullable=False, default=True)
    preferential_rate = db.Column(db.Numeric(10, 6), nullable=True)  # 0.0 for Free
    rate_type = db.Column(db.String(16), nullable=False, default="percentage")  # percentage, specific, amount
    preferential_formula = db.Column(db.String(512), nullable=True)
    certificate_required = db.Column(db.Boolean, nullable=True)  # NULL -> agreement default
    certificate_type = db.Column(db.String(64), nullable=True)
    origin_requirements = db.Column(db.Text, nullable=True)

    @validates("hts_number")
    def _set_digits(self, key, value):
        self.hts_digits = normalize_hts(value)
        return value

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hts_number": self.hts_number,
            "agreement_code": self.agreement_code,
            "is_eligible": self.is_eligible,
            "preferential_rate": str(self.preferential_rate) if self.preferential_rate is not None else None,
            "rate_type": self.rate_type,
            "preferential_formula": self.preferential_formula,
            "certificate_required": self.certificate_required,
            "certificate_type": self.certificate_type,
            "origin_requirements": self.origin_requirements,
        }


def _to_float(value) -> Optional[float]:
    return float(value) if value is not None else None
