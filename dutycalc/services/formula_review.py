"""
Formula Review Gate - decides whether an extracted formula may be applied.

Results at or above FORMULA_CONFIDENCE_THRESHOLD are written to the rate
entry's category column. Anything below is parked as a PENDING
FormulaCandidate and the rate entry is left untouched until a reviewer
approves it.

The threshold is a plain comparison on the reported confidence, so an
AI confidence of 0 always lands in the review queue.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from dutycalc.config import setting
from dutycalc.errors import NotFoundError
from dutycalc.services.formula_generator import FormulaResult
from dutycalc.web.db import db
from dutycalc.web.db.models import CandidateStatus, FormulaCandidate, RateCategory, RateEntry

logger = logging.getLogger(__name__)


@dataclass
class ReviewOutcome:
    applied: bool
    candidate_id: Optional[int] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "candidate_id": self.candidate_id,
            "reason": self.reason,
        }


class FormulaReviewService:
    """
    Usage:
        review = FormulaReviewService()
        outcome = review.record_result(entry, RateCategory.GENERAL, result)
        if not outcome.applied:
            print(f"Queued as candidate {outcome.candidate_id}")
    """

    def __init__(self, min_confidence: Optional[float] = None):
        self.min_confidence = setting("FORMULA_CONFIDENCE_THRESHOLD") if min_confidence is None else min_confidence

    def record_result(
        self,
        rate_entry: RateEntry,
        category: RateCategory,
        result: FormulaResult,
        commit: bool = True,
    ) -> ReviewOutcome:
        if result.confidence >= self.min_confidence:
            rate_entry.apply_formula(
                category,
                formula=result.formula,
                variables=result.variables,
                method=result.method.value,
                confidence=result.confidence,
            )
            db.session.add(rate_entry)
            if commit:
                db.session.commit()
            logger.info(
                f"Applied {result.method.value} formula '{result.formula}' to "
                f"{rate_entry.hts_number} [{category.value}] (confidence={result.confidence:.2f})"
            )
            return ReviewOutcome(applied=True, reason="confidence-above-threshold")

        candidate = self._find_pending(rate_entry.id, category, result.formula)
        if candidate is None:
            candidate = FormulaCandidate(
                rate_entry_id=rate_entry.id,
                hts_number=rate_entry.hts_number,
                country_code=rate_entry.country_code,
                rate_category=category.value,
                rate_text=result.rate_text,
                current_formula=rate_entry.rate_column(category).formula,
                proposed_formula=result.formula,
                proposed_variables=list(result.variables),
                confidence=Decimal(str(result.confidence)),
                method=result.method.value,
                reasoning=result.explanation,
                status=CandidateStatus.PENDING.value,
            )
            db.session.add(candidate)
            if commit:
                db.session.commit()
            else:
                db.session.flush()

        logger.warning(
            f"Formula '{result.formula}' for {rate_entry.hts_number} [{category.value}] below threshold "
            f"({result.confidence:.2f} < {self.min_confidence:.2f}); queued as candidate {candidate.id}"
        )
        return ReviewOutcome(applied=False, candidate_id=candidate.id, reason="confidence-below-threshold")

    def approve(self, candidate_id: int, reviewed_by: str, comment: Optional[str] = None) -> FormulaCandidate:
        candidate = self._get_pending(candidate_id)
        entry = candidate.rate_entry
        if entry is None:
            raise NotFoundError(f"Candidate {candidate_id} is not linked to a rate entry")

        entry.apply_formula(
            RateCategory(candidate.rate_category),
            formula=candidate.proposed_formula,
            variables=candidate.proposed_variables or [],
            method=candidate.method,
            confidence=float(candidate.confidence),
        )
        self._close(candidate, CandidateStatus.APPROVED, reviewed_by, comment)
        db.session.commit()

        logger.info(f"Candidate {candidate_id} approved by {reviewed_by}; formula applied to {entry.hts_number}")
        return candidate

    def reject(self, candidate_id: int, reviewed_by: str, comment: Optional[str] = None) -> FormulaCandidate:
        candidate = self._get_pending(candidate_id)
        self._close(candidate, CandidateStatus.REJECTED, reviewed_by, comment)
        db.session.commit()

        logger.info(f"Candidate {candidate_id} rejected by {reviewed_by}")
        return candidate

    def pending_candidates(self, limit: Optional[int] = None) -> List[FormulaCandidate]:
        query = (
            FormulaCandidate.query
            .filter_by(status=CandidateStatus.PENDING.value)
            .order_by(FormulaCandidate.confidence.desc(), FormulaCandidate.id)
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def _find_pending(self, rate_entry_id: Optional[int], category: RateCategory, formula: str):
        return FormulaCandidate.query.filter_by(
            rate_entry_id=rate_entry_id,
            rate_category=category.value,
            proposed_formula=formula,
            status=CandidateStatus.PENDING.value,
        ).first()

    def _get_pending(self, candidate_id: int) -> FormulaCandidate:
        candidate = db.session.get(FormulaCandidate, candidate_id)
        if candidate is None:
            raise NotFoundError(f"Formula candidate {candidate_id} not found")
        if candidate.status != CandidateStatus.PENDING.value:
            raise ValueError(f"Formula candidate {candidate_id} is already {candidate.status}")
        return candidate

    @staticmethod
    def _close(candidate: FormulaCandidate, status: CandidateStatus, reviewed_by: str, comment: Optional[str]):
        candidate.status = status.value
        candidate.reviewed_by = reviewed_by
        candidate.review_comment = comment
        candidate.reviewed_at = datetime.utcnow()
