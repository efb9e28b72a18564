"""
Extra Tax Stacking - fees and additional tariffs on top of the base duty.

Selection: a rule applies when it is active on the entry date, its scope
(HTS prefix, chapter, or ALL) and country (or ALL) match, and its
conditions predicate holds for the calculation context.

Ordering: (priority, tax_code). Lower priority numbers apply first.

Application modes:
- STANDALONE        computed from the untouched base amounts
- ADD_ON            computed against the running duty, then added to it
- CONDITIONAL       like ADD_ON; only present when its predicate holds
- POST_CALCULATION  computed after every ADD_ON, against the
                    post-ADD_ON running duty

Amount: percentage rules multiply the selected base by `rate`; other
rules evaluate rate_formula (or the pattern formula of rate_text). The
result is clamped to [minimum_amount, maximum_amount], then quantized.

A rule that fails to compute is dropped with a warning; the rest of the
stack still applies.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import or_

from dutycalc.config import setting
from dutycalc.errors import DutyCalcError, FormulaSyntaxError
from dutycalc.services.formula_evaluator import FormulaEvaluator, quantize_money, to_decimal
from dutycalc.services.formula_generator import FormulaGenerator
from dutycalc.web.db.models import ApplicationMode, BaseValue, ExtraTax, normalize_hts

logger = logging.getLogger(__name__)

SCOPE_ALL = ("", "ALL", "*")


@dataclass
class BaseAmounts:
    """Amounts a tax may be computed from."""
    value: Decimal
    duty: Decimal = Decimal(0)
    weight: Optional[Decimal] = None
    quantity: Optional[Decimal] = None

    @property
    def total(self) -> Decimal:
        return self.value + self.duty

    def with_duty(self, duty: Decimal) -> "BaseAmounts":
        return BaseAmounts(value=self.value, duty=duty, weight=self.weight, quantity=self.quantity)

    def variables(self) -> Dict[str, Decimal]:
        bound = {"value": self.value, "duty": self.duty, "total": self.total}
        if self.weight is not None:
            bound["weight"] = self.weight
        if self.quantity is not None:
            bound["quantity"] = self.quantity
        return bound


@dataclass
class TaxLine:
    tax_code: str
    tax_name: str
    amount: Decimal
    mode: ApplicationMode
    base: BaseValue
    base_amount: Optional[Decimal] = None
    priority: int = 50
    legal_reference: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tax_code": self.tax_code,
            "tax_name": self.tax_name,
            "amount": str(self.amount),
            "mode": self.mode.value,
            "base": self.base.value,
            "base_amount": str(self.base_amount) if self.base_amount is not None else None,
            "priority": self.priority,
            "legal_reference": self.legal_reference,
        }


@dataclass
class StackingResult:
    lines: List[TaxLine] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return sum((line.amount for line in self.lines), Decimal(0))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "lines": [line.as_dict() for line in self.lines],
            "warnings": list(self.warnings),
            "total": str(self.total),
        }


class ExtraTaxEngine:
    """
    Usage:
        engine = ExtraTaxEngine()
        result = engine.apply_extra_taxes(
            BaseAmounts(value=Decimal("10000"), duty=Decimal("260.00")),
            "8544.42.90.90", "CN", date(2025, 6, 1),
        )
        for line in result.lines:
            print(line.tax_code, line.amount)
    """

    def __init__(
        self,
        evaluator: Optional[FormulaEvaluator] = None,
        generator: Optional[FormulaGenerator] = None,
        scale: Optional[int] = None,
    ):
        self.evaluator = evaluator or FormulaEvaluator()
        self.generator = generator or FormulaGenerator(evaluator=self.evaluator)
        self.scale = setting("MONEY_SCALE") if scale is None else scale

    def apply_extra_taxes(
        self,
        base_amounts: BaseAmounts,
        hts_number: str,
        country_code: str,
        entry_date: date,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> StackingResult:
        result = StackingResult()
        context = self._context(base_amounts, hts_number, country_code, attributes)

        running_duty = base_amounts.duty
        deferred: List[ExtraTax] = []

        for tax in self.select_taxes(hts_number, country_code, entry_date):
            try:
                if not self.conditions_match(tax.conditions, context):
                    logger.debug(f"{tax.tax_code}: conditions not met, skipped")
                    continue
                mode = tax.mode

                if mode == ApplicationMode.POST_CALCULATION:
                    deferred.append(tax)
                    continue
                if mode == ApplicationMode.STANDALONE:
                    line = self._compute(tax, mode, base_amounts)
                elif mode in (ApplicationMode.ADD_ON, ApplicationMode.CONDITIONAL):
                    line = self._compute(tax, mode, base_amounts.with_duty(running_duty))
                    running_duty += line.amount
                else:
                    raise ValueError(f"Unhandled application mode {mode}")
            except (DutyCalcError, ValueError) as e:
                self._warn(result, tax, e)
                continue
            result.lines.append(line)

        post_base = base_amounts.with_duty(running_duty)
        for tax in deferred:
            try:
                line = self._compute(tax, ApplicationMode.POST_CALCULATION, post_base)
            except (DutyCalcError, ValueError) as e:
                self._warn(result, tax, e)
                continue
            result.lines.append(line)

        logger.info(
            f"Stacked {len(result.lines)} extra taxes on {hts_number} ({country_code}): "
            f"total={result.total}, warnings={len(result.warnings)}"
        )
        return result

    def select_taxes(self, hts_number: str, country_code: str, entry_date: date) -> List[ExtraTax]:
        """Active, in-scope rules in application order."""
        country = (country_code or "").upper()
        candidates = (
            ExtraTax.query
            .filter(
                ExtraTax.is_active_flag.is_(True),
                ExtraTax.effective_date <= entry_date,
                or_(ExtraTax.expiration_date.is_(None), ExtraTax.expiration_date > entry_date),
                ExtraTax.country_code.in_([country, "ALL"]),
            )
            .all()
        )
        digits = normalize_hts(hts_number)
        in_scope = [tax for tax in candidates if self._scope_matches(tax, digits)]
        return sorted(in_scope, key=lambda t: (t.priority, t.tax_code, t.id))

    def conditions_match(self, conditions: Optional[Mapping[str, Any]], context: Mapping[str, Any]) -> bool:
        """
        Evaluate a flat predicate against the context.

        Keys: min_<field>, max_<field>, <field>_in, <field>_not_in, or a
        plain field for equality. A field missing from the context makes
        the predicate false.
        """
        for key, expected in (conditions or {}).items():
            if key.startswith("min_"):
                actual = context.get(key[4:])
                if actual is None or to_decimal(actual) < to_decimal(expected):
                    return False
            elif key.startswith("max_"):
                actual = context.get(key[4:])
                if actual is None or to_decimal(actual) > to_decimal(expected):
                    return False
            elif key.endswith("_not_in"):
                actual = context.get(key[:-7])
                if actual is None or _contains(expected, actual):
                    return False
            elif key.endswith("_in"):
                actual = context.get(key[:-3])
                if actual is None or not _contains(expected, actual):
                    return False
            else:
                actual = context.get(key)
                if actual is None or not _equals(actual, expected):
                    return False
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _compute(self, tax: ExtraTax, mode: ApplicationMode, amounts: BaseAmounts) -> TaxLine:
        base = tax.base_value
        base_amount = None

        if tax.is_percentage:
            if tax.rate is None:
                raise FormulaSyntaxError(f"Percentage tax {tax.tax_code} has no rate")
            base_amount = amounts.variables().get(base.value.lower())
            if base_amount is None:
                raise FormulaSyntaxError(f"Base '{base.value.lower()}' is not available for {tax.tax_code}")
            raw = base_amount * to_decimal(tax.rate)
        else:
            formula = tax.rate_formula or self._formula_from_text(tax)
            raw = self.evaluator.evaluate_raw(formula, amounts.variables())

        if tax.minimum_amount is not None and raw < to_decimal(tax.minimum_amount):
            raw = to_decimal(tax.minimum_amount)
        if tax.maximum_amount is not None and raw > to_decimal(tax.maximum_amount):
            raw = to_decimal(tax.maximum_amount)

        return TaxLine(
            tax_code=tax.tax_code,
            tax_name=tax.tax_name,
            amount=quantize_money(raw, self.scale),
            mode=mode,
            base=base,
            base_amount=base_amount,
            priority=tax.priority,
            legal_reference=tax.legal_reference,
        )

    def _formula_from_text(self, tax: ExtraTax) -> str:
        if not tax.rate_text:
            raise FormulaSyntaxError(f"Tax {tax.tax_code} has neither a rate, a formula nor rate text")
        extracted = self.generator.generate_formula_by_pattern(tax.rate_text)
        if extracted is None:
            raise FormulaSyntaxError(f"Cannot read rate text '{tax.rate_text}' for {tax.tax_code}")
        return extracted.formula

    @staticmethod
    def _scope_matches(tax: ExtraTax, hts_digits: str) -> bool:
        if tax.hts_number and tax.hts_number.strip().upper() not in SCOPE_ALL:
            scope_digits = normalize_hts(tax.hts_number)
            return bool(scope_digits) and hts_digits.startswith(scope_digits)
        if tax.hts_chapter and tax.hts_chapter.strip().upper() not in SCOPE_ALL:
            return hts_digits[:2] == tax.hts_chapter.strip().zfill(2)
        return True

    @staticmethod
    def _context(
        amounts: BaseAmounts,
        hts_number: str,
        country_code: str,
        attributes: Optional[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        digits = normalize_hts(hts_number)
        context: Dict[str, Any] = dict(attributes or {})
        context.update(amounts.variables())
        context.update({
            "country_code": (country_code or "").upper(),
            "hts_number": hts_number,
            "chapter": digits[:2],
        })
        return context

    @staticmethod
    def _warn(result: StackingResult, tax: ExtraTax, error: Exception) -> None:
        message = f"{tax.tax_code}: {error}"
        result.warnings.append(message)
        logger.warning(f"Extra tax skipped - {message}")


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.strip().lower() == expected.strip().lower()
    if isinstance(actual, bool) or isinstance(expected, bool):
        return actual == expected
    if isinstance(actual, (int, float, Decimal)) and isinstance(expected, (int, float, Decimal)):
        return to_decimal(actual) == to_decimal(expected)
    return actual == expected


def _contains(collection: Any, actual: Any) -> bool:
    if not isinstance(collection, (list, tuple, set)):
        collection = [collection]
    return any(_equals(actual, item) for item in collection)
