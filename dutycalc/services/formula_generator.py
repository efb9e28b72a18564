"""
Formula Extraction - turn free-text HTS rate descriptions into formulas.

Pattern library first, AI second:

1. PATTERN - deterministic regexes over normalized text. A match is
   always confidence 1.
       "Free"                      -> 0
       "5%" / "5 percent ad val."  -> value * 0.05
       "$2.50/kg"                  -> weight * 2.5
       "25¢/kg" / "0.9 cents each" -> weight * 0.25 / quantity * 0.009
       "89.6 cents/1000"           -> quantity * 0.000896
       "3.2¢/kg + 4.4%"            -> weight * 0.032 + value * 0.044
2. AI - everything else goes to FormulaLLM. Its confidence is reported
   verbatim; whether it is good enough to apply is the review service's
   decision, not ours.

Note pointers ("See U.S. note 20(r) to chapter 99") are never pattern
matched; the orchestrator routes them to note resolution.

Batch extraction runs entries on a bounded thread pool. Entries are
independent: a failure is captured on that entry's item and never
affects its neighbours. Workers do not touch the database.
"""

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from dutycalc.config import setting
from dutycalc.errors import DutyCalcError, ExternalServiceError
from dutycalc.services.formula_evaluator import FormulaEvaluator, decimal_literal
from dutycalc.services.formula_llm import FormulaLLM

logger = logging.getLogger(__name__)


FORMULA_VARIABLES = {"value", "weight", "quantity"}

NOTE_REFERENCE_RE = re.compile(r"\bnotes?\s+\d", re.IGNORECASE)

# Words that make a compound rate depend on a component we cannot value
AMBIGUOUS_CONTEXT = ("case", "strap", "band", "bracelet", "battery", "movement", "jewel", "lead content")

FREE_RE = re.compile(r"^(?:free|none|nil|0+(?:\.0+)?\s*(?:%|percent)?)$")
PERCENT_RE = re.compile(r"^(?P<pct>\d+(?:\.\d+)?)\s*(?:%|percent)(?:\s+ad\s+valorem)?$")
SPECIFIC_RE = re.compile(
    r"^(?:\$\s*(?P<dollars>\d+(?:\.\d+)?)|(?P<cents>\d+(?:\.\d+)?)\s*(?:¢|cents?))"
    r"\s*(?:/|per\s+|\s)\s*"
    r"(?P<denominator>\d+(?:,\d{3})*\s+|\d+(?:,\d{3})*$)?"
    r"(?P<unit>[a-z][a-z.²³ ]*?)?\.?"
    r"(?:\s+(?:on|of)\s+.*)?$"
)

# Rates per weight unit; weight is bound in kilograms
WEIGHT_UNITS = {
    "kg": Decimal("1"),
    "kilogram": Decimal("1"),
    "kilograms": Decimal("1"),
    "g": Decimal("1000"),
    "gram": Decimal("1000"),
    "grams": Decimal("1000"),
    "t": Decimal("0.001"),
    "ton": Decimal("0.001"),
    "tonne": Decimal("0.001"),
    "clean kg": Decimal("1"),
}

# Rates per counted unit; quantity is bound in the entry's unit of quantity
QUANTITY_UNITS = {
    "each", "no", "number", "pc", "pcs", "piece", "pieces", "unit", "units",
    "doz", "dozen", "pr", "pair", "pairs", "gross", "head",
    "l", "liter", "liters", "litre", "litres", "pf liter", "pf. liter", "proof liter",
    "m", "m2", "m²", "m3", "m³", "sq m", "linear m", "carat", "thousand",
}


class ExtractionMethod(str, Enum):
    PATTERN = "pattern"
    AI = "ai"


@dataclass
class FormulaResult:
    """Outcome of extracting one rate text."""
    formula: str
    variables: List[str]
    confidence: float
    method: ExtractionMethod
    explanation: Optional[str] = None
    rate_text: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "formula": self.formula,
            "variables": self.variables,
            "confidence": self.confidence,
            "method": self.method.value,
            "explanation": self.explanation,
            "rate_text": self.rate_text,
        }


@dataclass
class FormulaRequest:
    rate_text: Optional[str]
    unit_of_quantity: Optional[str] = None


@dataclass
class FormulaBatchItem:
    """One slot of a batch result; exactly one of result/error/cancelled is set."""
    index: int
    rate_text: Optional[str]
    result: Optional[FormulaResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.result is not None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "rate_text": self.rate_text,
            "result": self.result.as_dict() if self.result else None,
            "error": self.error,
            "error_type": self.error_type,
            "cancelled": self.cancelled,
        }


def normalize_rate_text(text: str) -> str:
    normalized = " ".join((text or "").lower().split())
    normalized = normalized.replace("ad val.", "ad valorem")
    normalized = normalized.replace("per cent", "percent")
    normalized = re.sub(r"\bkgs\b", "kg", normalized)
    return normalized


def is_note_reference(rate_text: Optional[str]) -> bool:
    """True when the rate text points at a legal note instead of stating a rate."""
    return bool(rate_text and NOTE_REFERENCE_RE.search(rate_text))


class FormulaGenerator:
    """
    Extract formulas from rate text.

    Usage:
        generator = FormulaGenerator()
        result = generator.generate_formula("2.6%")
        # FormulaResult(formula="value * 0.026", method=PATTERN, confidence=1.0)
    """

    def __init__(
        self,
        llm: Optional[FormulaLLM] = None,
        evaluator: Optional[FormulaEvaluator] = None,
        max_workers: Optional[int] = None,
    ):
        self.llm = llm or FormulaLLM()
        self.evaluator = evaluator or FormulaEvaluator()
        self.max_workers = max_workers or setting("FORMULA_BATCH_WORKERS")

    def generate_formula(self, rate_text: Optional[str], unit_of_quantity: Optional[str] = None) -> FormulaResult:
        if rate_text is None or not rate_text.strip():
            return FormulaResult(
                formula="0",
                variables=[],
                confidence=1.0,
                method=ExtractionMethod.PATTERN,
                explanation="No rate text; no duty",
                rate_text=rate_text,
            )

        if not is_note_reference(rate_text):
            result = self.generate_formula_by_pattern(rate_text)
            if result is not None:
                logger.debug(f"Pattern matched '{rate_text}' -> {result.formula}")
                return result

        return self._generate_formula_by_ai(rate_text, unit_of_quantity)

    def generate_formula_by_pattern(self, rate_text: str) -> Optional[FormulaResult]:
        """Deterministic extraction; None when no pattern applies."""
        text = normalize_rate_text(rate_text)
        if not text:
            return None

        if FREE_RE.match(text):
            return self._pattern_result("0", [], "Duty free", rate_text)

        match = PERCENT_RE.match(text)
        if match:
            fraction = Decimal(match.group("pct")) / 100
            if fraction == 0:
                return self._pattern_result("0", [], "Duty free", rate_text)
            return self._pattern_result(
                f"value * {decimal_literal(fraction)}", ["value"], f"{match.group('pct')}% ad valorem", rate_text
            )

        if any(word in text for word in AMBIGUOUS_CONTEXT):
            return None

        if "+" in text:
            return self._compound(text, rate_text)

        term = self._specific_term(text)
        if term is not None:
            formula, variable = term
            return self._pattern_result(formula, [variable], "Specific rate", rate_text)

        return None

    def generate_formula_batch(
        self,
        entries: Sequence[Union[FormulaRequest, Mapping[str, Any], str]],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[FormulaBatchItem]:
        """
        Extract many rate texts in parallel.

        Results are 1:1 with `entries` and in input order. Once
        `cancel_event` is set, entries that have not started are returned
        as cancelled; finished entries keep their results.
        """
        requests = [self._as_request(entry) for entry in entries]
        if not requests:
            return []

        workers = max(1, min(self.max_workers, len(requests)))
        logger.info(f"Formula batch: {len(requests)} entries on {workers} workers")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="formula-batch") as executor:
            futures = [
                executor.submit(self._run_batch_entry, index, request, cancel_event)
                for index, request in enumerate(requests)
            ]
            items = [future.result() for future in futures]

        failed = sum(1 for item in items if item.error)
        cancelled = sum(1 for item in items if item.cancelled)
        logger.info(f"Formula batch done: {len(items) - failed - cancelled} ok, {failed} failed, {cancelled} cancelled")
        return items

    def validate_formula(self, formula: str) -> List[str]:
        return self.evaluator.validate_formula(formula, allowed_variables=FORMULA_VARIABLES)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_batch_entry(
        self,
        index: int,
        request: FormulaRequest,
        cancel_event: Optional[threading.Event],
    ) -> FormulaBatchItem:
        if cancel_event is not None and cancel_event.is_set():
            return FormulaBatchItem(index=index, rate_text=request.rate_text, cancelled=True)
        try:
            result = self.generate_formula(request.rate_text, request.unit_of_quantity)
            return FormulaBatchItem(index=index, rate_text=request.rate_text, result=result)
        except DutyCalcError as e:
            logger.warning(f"Formula batch entry {index} ('{request.rate_text}') failed: {e}")
            return FormulaBatchItem(
                index=index, rate_text=request.rate_text, error=str(e), error_type=e.__class__.__name__
            )
        except Exception as e:
            logger.exception(f"Formula batch entry {index} ('{request.rate_text}') raised unexpectedly")
            return FormulaBatchItem(
                index=index, rate_text=request.rate_text, error=str(e), error_type=e.__class__.__name__
            )

    def _generate_formula_by_ai(self, rate_text: str, unit_of_quantity: Optional[str]) -> FormulaResult:
        proposal = self.llm.propose(rate_text, unit_of_quantity)

        problems = self.validate_formula(proposal.formula)
        if problems:
            raise ExternalServiceError(f"AI proposed an unusable formula '{proposal.formula}': {'; '.join(problems)}")

        return FormulaResult(
            formula=proposal.formula,
            variables=sorted(self.evaluator.referenced_variables(proposal.formula)),
            confidence=proposal.confidence,
            method=ExtractionMethod.AI,
            explanation=proposal.explanation,
            rate_text=rate_text,
        )

    def _compound(self, text: str, rate_text: str) -> Optional[FormulaResult]:
        parts = [p.strip() for p in text.split("+")]
        if not 2 <= len(parts) <= 3 or any(not p for p in parts):
            return None

        terms = []
        variables = []
        percent_parts = 0
        for part in parts:
            match = PERCENT_RE.match(part)
            if match:
                percent_parts += 1
                fraction = Decimal(match.group("pct")) / 100
                terms.append(f"value * {decimal_literal(fraction)}")
                variable = "value"
            else:
                term = self._specific_term(part)
                if term is None:
                    return None
                terms.append(term[0])
                variable = term[1]
            if variable not in variables:
                variables.append(variable)

        if percent_parts != 1:
            return None
        return self._pattern_result(" + ".join(terms), variables, "Compound rate", rate_text)

    def _specific_term(self, text: str) -> Optional[tuple]:
        match = SPECIFIC_RE.match(text)
        if not match:
            return None

        if match.group("dollars") is not None:
            amount = Decimal(match.group("dollars"))
        else:
            amount = Decimal(match.group("cents")) / 100

        unit = (match.group("unit") or "").strip().rstrip(".")
        denominator = match.group("denominator")
        if denominator:
            amount = amount / Decimal(denominator.strip().replace(",", ""))
            if not unit:
                unit = "thousand"

        if unit in WEIGHT_UNITS:
            return f"weight * {decimal_literal(amount * WEIGHT_UNITS[unit])}", "weight"
        if unit in QUANTITY_UNITS:
            return f"quantity * {decimal_literal(amount)}", "quantity"
        return None

    def _pattern_result(self, formula: str, variables: List[str], explanation: str, rate_text: str) -> FormulaResult:
        return FormulaResult(
            formula=formula,
            variables=variables,
            confidence=1.0,
            method=ExtractionMethod.PATTERN,
            explanation=explanation,
            rate_text=rate_text,
        )

    @staticmethod
    def _as_request(entry) -> FormulaRequest:
        if isinstance(entry, FormulaRequest):
            return entry
        if isinstance(entry, str):
            return FormulaRequest(rate_text=entry)
        return FormulaRequest(rate_text=entry.get("rate_text"), unit_of_quantity=entry.get("unit_of_quantity"))
