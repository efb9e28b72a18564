"""
Calculation Orchestrator - deterministic duty calculation with an audit trail.

Implements the 8-step calculation:
1. RATE        - current RateEntry for (HTS, entry date, origin)
2. FORMULA     - stored formula, note resolution, or extraction + review gate
3. EVALUATE    - base (general) duty from the formula
4. PREFERENCE  - trade agreement eligibility; substitute the preferential duty
5. STACK       - extra taxes and fees
6. TOTAL       - base duty + extra taxes, landed cost
7. PERSIST     - append-only CalculationRecord
8. RETURN      - full breakdown

Failure policy:
- Steps 1-3 raise (NotFoundError, AmbiguousResolutionError,
  FormulaSyntaxError, ExternalServiceError). No partial breakdown.
- Step 4 never raises; the general duty is kept and the reason recorded.
- Step 5 drops individual taxes with a warning.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from dutycalc.config import Config, setting
from dutycalc.errors import DutyCalcError, NotFoundError
from dutycalc.logging_utils import log_calculation_event
from dutycalc.services.eligibility import EligibilityResolver
from dutycalc.services.extra_tax_engine import BaseAmounts, ExtraTaxEngine, TaxLine
from dutycalc.services.formula_evaluator import FormulaEvaluator, to_decimal
from dutycalc.services.formula_generator import FormulaGenerator, is_note_reference
from dutycalc.services.formula_review import FormulaReviewService
from dutycalc.services.note_resolution import NoteResolutionEngine
from dutycalc.services.rate_catalog import RateCatalog
from dutycalc.web.db import db
from dutycalc.web.db.models import CalculationRecord, RateCategory, RateEntry

logger = logging.getLogger(__name__)

YEAR_RE = re.compile(r"\b(19|20)\d{2}\b")


def generate_calculation_id() -> str:
    return f"CALC-{datetime.utcnow():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"


@dataclass
class CalculationInput:
    hts_number: str
    country_of_origin: str
    declared_value: Decimal
    entry_date: date
    weight_kg: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    trade_agreement_code: Optional[str] = None
    claim_preferential: bool = False  # importer attests a certificate of origin
    use_chapter99_rate: bool = False
    attributes: Dict[str, Any] = field(default_factory=dict)  # e.g. {"transport_mode": "vessel"}
    currency: str = "USD"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "hts_number": self.hts_number,
            "country_of_origin": self.country_of_origin,
            "declared_value": str(self.declared_value),
            "entry_date": self.entry_date.isoformat(),
            "weight_kg": str(self.weight_kg) if self.weight_kg is not None else None,
            "quantity": str(self.quantity) if self.quantity is not None else None,
            "trade_agreement_code": self.trade_agreement_code,
            "claim_preferential": self.claim_preferential,
            "use_chapter99_rate": self.use_chapter99_rate,
            "attributes": dict(self.attributes),
            "currency": self.currency,
        }


@dataclass
class CalculationResult:
    calculation_id: str
    hts_number: str
    country_code: str
    entry_date: date
    currency: str

    rate_entry_id: int
    rate_source_version: Optional[str]
    rate_category: RateCategory
    general_formula: str
    formula_used: str
    formula_provenance: Dict[str, Any]

    general_duty: Decimal
    base_duty: Decimal
    eligibility: Optional[Dict[str, Any]] = None

    tax_lines: List[TaxLine] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    extra_taxes_total: Decimal = Decimal(0)
    total_duty: Decimal = Decimal(0)
    landed_cost: Decimal = Decimal(0)
    engine_version: str = Config.ENGINE_VERSION

    def as_dict(self) -> Dict[str, Any]:
        return {
            "calculation_id": self.calculation_id,
            "hts_number": self.hts_number,
            "country_code": self.country_code,
            "entry_date": self.entry_date.isoformat(),
            "currency": self.currency,
            "rate_entry_id": self.rate_entry_id,
            "rate_source_version": self.rate_source_version,
            "rate_category": self.rate_category.value,
            "general_formula": self.general_formula,
            "formula_used": self.formula_used,
            "formula_provenance": self.formula_provenance,
            "general_duty": str(self.general_duty),
            "base_duty": str(self.base_duty),
            "eligibility": self.eligibility,
            "tax_lines": [line.as_dict() for line in self.tax_lines],
            "warnings": list(self.warnings),
            "extra_taxes_total": str(self.extra_taxes_total),
            "total_duty": str(self.total_duty),
            "landed_cost": str(self.landed_cost),
            "engine_version": self.engine_version,
        }


class CalculationEngine:
    """
    Usage:
        engine = CalculationEngine()
        result = engine.calculate(CalculationInput(
            hts_number="8544.42.90.90",
            country_of_origin="CN",
            declared_value=Decimal("10000"),
            entry_date=date(2025, 6, 1),
        ))
        print(result.total_duty)
    """

    def __init__(
        self,
        catalog: Optional[RateCatalog] = None,
        note_engine: Optional[NoteResolutionEngine] = None,
        generator: Optional[FormulaGenerator] = None,
        review: Optional[FormulaReviewService] = None,
        evaluator: Optional[FormulaEvaluator] = None,
        eligibility: Optional[EligibilityResolver] = None,
        tax_engine: Optional[ExtraTaxEngine] = None,
        scale: Optional[int] = None,
    ):
        self.scale = setting("MONEY_SCALE") if scale is None else scale
        self.evaluator = evaluator or FormulaEvaluator(scale=self.scale)
        self.catalog = catalog or RateCatalog()
        self.note_engine = note_engine or NoteResolutionEngine()
        self.generator = generator or FormulaGenerator(evaluator=self.evaluator)
        self.review = review or FormulaReviewService()
        self.eligibility = eligibility or EligibilityResolver()
        self.tax_engine = tax_engine or ExtraTaxEngine(
            evaluator=self.evaluator, generator=self.generator, scale=self.scale
        )

    def calculate(self, calc_input: CalculationInput) -> CalculationResult:
        calculation_id = generate_calculation_id()
        try:
            return self._calculate(calculation_id, calc_input)
        except DutyCalcError as e:
            logger.error(f"Calculation {calculation_id} for {calc_input.hts_number} failed: {e}")
            log_calculation_event("calculation_failed", {
                "calculation_id": calculation_id,
                "hts_number": calc_input.hts_number,
                "error_type": e.__class__.__name__,
                "error": str(e),
            })
            raise

    def _calculate(self, calculation_id: str, calc_input: CalculationInput) -> CalculationResult:
        country = (calc_input.country_of_origin or "").upper()
        value = to_decimal(calc_input.declared_value)
        if value < 0:
            raise ValueError("declared_value must not be negative")
        weight = to_decimal(calc_input.weight_kg) if calc_input.weight_kg is not None else None
        quantity = to_decimal(calc_input.quantity) if calc_input.quantity is not None else None

        # Step 1: rate entry
        entry = self.catalog.find_rate_entry(calc_input.hts_number, calc_input.entry_date, country)
        log_calculation_event("rate_selected", {
            "calculation_id": calculation_id,
            "hts_number": calc_input.hts_number,
            "rate_entry_id": entry.id,
            "matched_hts": entry.hts_number,
            "source_version": entry.source_version,
        })

        # Step 2: concrete formula
        category = self.catalog.select_category(entry, country, calc_input.use_chapter99_rate)
        general_formula, provenance = self._resolve_formula(entry, category, calc_input.entry_date)
        log_calculation_event("formula_resolved", {
            "calculation_id": calculation_id,
            "category": category.value,
            "formula": general_formula,
            "source": provenance.get("source"),
            "method": provenance.get("method"),
            "confidence": provenance.get("confidence"),
        })

        # Step 3: base duty
        variables = {"value": value}
        if weight is not None:
            variables["weight"] = weight
        if quantity is not None:
            variables["quantity"] = quantity
        general_duty = self.evaluator.evaluate(general_formula, variables)
        log_calculation_event("duty_evaluated", {
            "calculation_id": calculation_id,
            "general_duty": general_duty,
        })

        # Step 4: preferential treatment (degrades, never raises)
        warnings: List[str] = []
        base_duty = general_duty
        formula_used = general_formula
        eligibility = None
        if calc_input.trade_agreement_code:
            eligibility, preferential_duty, preferential_formula = self._apply_preference(
                calc_input, country, variables, warnings
            )
            if preferential_duty is not None:
                base_duty = preferential_duty
                formula_used = preferential_formula
            log_calculation_event("eligibility_checked", {
                "calculation_id": calculation_id,
                "agreement": calc_input.trade_agreement_code,
                "applied": eligibility.get("applied"),
                "reason": eligibility.get("reason"),
            })

        # Step 5: extra taxes
        stacking = self.tax_engine.apply_extra_taxes(
            BaseAmounts(value=value, duty=base_duty, weight=weight, quantity=quantity),
            calc_input.hts_number,
            country,
            calc_input.entry_date,
            attributes=calc_input.attributes,
        )
        warnings.extend(stacking.warnings)
        log_calculation_event("taxes_stacked", {
            "calculation_id": calculation_id,
            "tax_codes": [line.tax_code for line in stacking.lines],
            "extra_taxes_total": stacking.total,
            "warnings": stacking.warnings,
        })

        # Step 6: totals
        extra_total = stacking.total
        total_duty = base_duty + extra_total

        result = CalculationResult(
            calculation_id=calculation_id,
            hts_number=calc_input.hts_number,
            country_code=country,
            entry_date=calc_input.entry_date,
            currency=calc_input.currency,
            rate_entry_id=entry.id,
            rate_source_version=entry.source_version,
            rate_category=category,
            general_formula=general_formula,
            formula_used=formula_used,
            formula_provenance=provenance,
            general_duty=general_duty,
            base_duty=base_duty,
            eligibility=eligibility,
            tax_lines=stacking.lines,
            warnings=warnings,
            extra_taxes_total=extra_total,
            total_duty=total_duty,
            landed_cost=value + total_duty,
        )

        # Step 7: audit record
        self._persist(result, calc_input)
        log_calculation_event("calculation_completed", {
            "calculation_id": calculation_id,
            "total_duty": total_duty,
            "landed_cost": result.landed_cost,
        })

        # Step 8
        return result

    def _resolve_formula(self, entry: RateEntry, category: RateCategory, entry_date: date):
        column = entry.rate_column(category)

        if column.is_resolved:
            return column.formula, {
                "source": "stored",
                "rate_text": column.rate_text,
                "method": column.method,
                "confidence": column.confidence,
                "variables": column.variables,
            }

        if not column.has_text:
            raise NotFoundError(f"{entry.hts_number} has no {category.value} rate text")

        if is_note_reference(column.rate_text):
            year = self._schedule_year(entry, entry_date)
            resolved = self.note_engine.resolve_note_reference(
                entry.hts_number, column.rate_text, category.value, year, exact_only=True
            )
            return resolved.formula, {
                "source": "note",
                "rate_text": column.rate_text,
                "method": resolved.resolution_method,
                "confidence": resolved.confidence,
                "variables": resolved.variables,
                "note_id": resolved.note_id,
                "note_rate_id": resolved.note_rate_id,
                "reference_id": resolved.reference_id,
                "note": resolved.metadata,
            }

        result = self.generator.generate_formula(column.rate_text, entry.unit_of_quantity)
        outcome = self.review.record_result(entry, category, result)
        if not outcome.applied:
            raise NotFoundError(
                f"Formula for {entry.hts_number} [{category.value}] is pending review "
                f"(candidate {outcome.candidate_id}, confidence {result.confidence})"
            )
        return result.formula, {
            "source": "extracted",
            "rate_text": column.rate_text,
            "method": result.method.value,
            "confidence": result.confidence,
            "variables": result.variables,
            "explanation": result.explanation,
        }

    def _apply_preference(self, calc_input: CalculationInput, country: str, variables, warnings: List[str]):
        try:
            decision = self.eligibility.is_eligible(
                calc_input.hts_number,
                calc_input.trade_agreement_code,
                country,
                claim_preferential=calc_input.claim_preferential,
                entry_date=calc_input.entry_date,
            )
            if not decision.eligible:
                return {**decision.as_dict(), "applied": False}, None, None
            preferential_duty = self.evaluator.evaluate(decision.preferential_formula, variables)
        except DutyCalcError as e:
            message = f"Preferential rate under {calc_input.trade_agreement_code} not applied: {e}"
            logger.warning(message)
            warnings.append(message)
            return {
                "eligible": False,
                "reason": "evaluation-failed",
                "agreement_code": calc_input.trade_agreement_code,
                "error": str(e),
                "applied": False,
            }, None, None

        return {**decision.as_dict(), "applied": True}, preferential_duty, decision.preferential_formula

    def _persist(self, result: CalculationResult, calc_input: CalculationInput) -> CalculationRecord:
        record = CalculationRecord(
            calculation_id=result.calculation_id,
            inputs=calc_input.as_dict(),
            hts_number=result.hts_number,
            country_code=result.country_code,
            entry_date=result.entry_date,
            rate_entry_id=result.rate_entry_id,
            rate_source_version=result.rate_source_version,
            rate_category=result.rate_category.value,
            formula_used=result.formula_used,
            formula_provenance=result.formula_provenance,
            eligibility=result.eligibility,
            tax_lines=[line.as_dict() for line in result.tax_lines],
            warnings=list(result.warnings),
            base_duty=result.base_duty,
            extra_taxes_total=result.extra_taxes_total,
            total_duty=result.total_duty,
            landed_cost=result.landed_cost,
            breakdown=result.as_dict(),
            engine_version=result.engine_version,
        )
        db.session.add(record)
        db.session.commit()
        return record

    @staticmethod
    def _schedule_year(entry: RateEntry, entry_date: date) -> int:
        match = YEAR_RE.search(entry.source_version or "")
        return int(match.group(0)) if match else entry_date.year
