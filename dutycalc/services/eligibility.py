"""
Trade Agreement Eligibility - does a preferential rate apply?

Checks, in order:
1. agreement exists and is active on the entry date
2. origin country is a partner
3. an eligibility record covers the HTS number (10 -> 8 -> 6 digit prefix)
4. the record marks the goods eligible
5. a required certificate has been claimed by the importer

The first failing check becomes the decision's reason. The resolver never
raises for a "no"; callers keep the general rate and record the reason.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from dutycalc.services.formula_evaluator import decimal_literal
from dutycalc.web.db.models import TradeAgreement, TradeAgreementEligibility, normalize_hts

logger = logging.getLogger(__name__)


class EligibilityReason(str, Enum):
    ELIGIBLE = "eligible"
    AGREEMENT_NOT_FOUND = "agreement-not-found"
    AGREEMENT_INACTIVE = "agreement-inactive"
    COUNTRY_NOT_PARTNER = "country-not-partner"
    HTS_NOT_COVERED = "hts-not-covered"
    NOT_ELIGIBLE = "not-eligible"
    CERTIFICATE_NOT_CLAIMED = "certificate-not-claimed"


@dataclass
class EligibilityDecision:
    eligible: bool
    reason: EligibilityReason
    agreement_code: Optional[str] = None
    preferential_rate: Optional[Decimal] = None
    rate_type: Optional[str] = None
    certificate_required: bool = False
    certificate_type: Optional[str] = None
    preferential_formula: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "reason": self.reason.value,
            "agreement_code": self.agreement_code,
            "preferential_rate": str(self.preferential_rate) if self.preferential_rate is not None else None,
            "rate_type": self.rate_type,
            "certificate_required": self.certificate_required,
            "certificate_type": self.certificate_type,
            "preferential_formula": self.preferential_formula,
        }


def preferential_formula_for(record: TradeAgreementEligibility) -> str:
    if record.preferential_formula:
        return record.preferential_formula

    rate = record.preferential_rate if record.preferential_rate is not None else Decimal(0)
    if rate == 0:
        return "0"
    literal = decimal_literal(Decimal(rate))
    if record.rate_type == "specific":
        return f"weight * {literal}"
    if record.rate_type == "amount":
        return literal
    return f"value * {literal}"


class EligibilityResolver:
    """
    Usage:
        resolver = EligibilityResolver()
        decision = resolver.is_eligible("8544.42.90.90", "USMCA", "MX", claim_preferential=True)
        if decision.eligible:
            formula = decision.preferential_formula
    """

    def is_eligible(
        self,
        hts_number: str,
        agreement_code: str,
        country_code: str,
        claim_preferential: bool = False,
        entry_date: Optional[date] = None,
    ) -> EligibilityDecision:
        code = (agreement_code or "").upper()
        agreement = TradeAgreement.find_by(code=code)
        if agreement is None:
            return self._deny(EligibilityReason.AGREEMENT_NOT_FOUND, code)

        if not agreement.is_active(entry_date):
            return self._deny(EligibilityReason.AGREEMENT_INACTIVE, code)

        if not agreement.covers_country(country_code):
            return self._deny(EligibilityReason.COUNTRY_NOT_PARTNER, code)

        record = self._find_record(hts_number, code)
        if record is None:
            return self._deny(EligibilityReason.HTS_NOT_COVERED, code)

        certificate_required = (
            record.certificate_required
            if record.certificate_required is not None
            else agreement.certificate_required
        )
        decision = EligibilityDecision(
            eligible=False,
            reason=EligibilityReason.NOT_ELIGIBLE,
            agreement_code=code,
            preferential_rate=record.preferential_rate,
            rate_type=record.rate_type,
            certificate_required=bool(certificate_required),
            certificate_type=record.certificate_type,
            preferential_formula=preferential_formula_for(record),
        )

        if not record.is_eligible:
            return self._log(decision, hts_number)

        if certificate_required and not claim_preferential:
            decision.reason = EligibilityReason.CERTIFICATE_NOT_CLAIMED
            return self._log(decision, hts_number)

        decision.eligible = True
        decision.reason = EligibilityReason.ELIGIBLE
        return self._log(decision, hts_number)

    @staticmethod
    def _find_record(hts_number: str, agreement_code: str) -> Optional[TradeAgreementEligibility]:
        digits = normalize_hts(hts_number)
        for length in (10, 8, 6):
            if len(digits) < length:
                continue
            record = TradeAgreementEligibility.find_by(hts_digits=digits[:length], agreement_code=agreement_code)
            if record is not None:
                return record
        return None

    @staticmethod
    def _deny(reason: EligibilityReason, agreement_code: str) -> EligibilityDecision:
        logger.info(f"Preferential treatment under {agreement_code or '?'} denied: {reason.value}")
        return EligibilityDecision(eligible=False, reason=reason, agreement_code=agreement_code or None)

    @staticmethod
    def _log(decision: EligibilityDecision, hts_number: str) -> EligibilityDecision:
        logger.info(
            f"Eligibility {hts_number} under {decision.agreement_code}: "
            f"eligible={decision.eligible} reason={decision.reason.value}"
        )
        return decision
