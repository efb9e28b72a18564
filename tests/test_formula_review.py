"""
Tests for the formula review gate and candidate queue.
"""

from decimal import Decimal

import pytest

from dutycalc.errors import NotFoundError
from dutycalc.services.formula_generator import ExtractionMethod, FormulaResult
from dutycalc.services.formula_review import FormulaReviewService
from dutycalc.web.db.models import CandidateStatus, FormulaCandidate, RateCategory


def _result(formula="value * 0.05", confidence=1.0, method=ExtractionMethod.PATTERN):
    return FormulaResult(
        formula=formula,
        variables=["value"],
        confidence=confidence,
        method=method,
        explanation="test",
        rate_text="5%",
    )


class TestRecordResult:

    def test_confident_result_is_applied(self, app, make_rate_entry):
        entry = make_rate_entry()
        review = FormulaReviewService(min_confidence=0.85)

        outcome = review.record_result(entry, RateCategory.GENERAL, _result())

        assert outcome.applied
        column = entry.rate_column(RateCategory.GENERAL)
        assert column.formula == "value * 0.05"
        assert column.method == "pattern"
        assert column.confidence == 1.0
        assert FormulaCandidate.query.count() == 0

    def test_threshold_is_inclusive(self, app, make_rate_entry):
        entry = make_rate_entry()
        review = FormulaReviewService(min_confidence=0.85)

        outcome = review.record_result(entry, RateCategory.GENERAL, _result(confidence=0.85, method=ExtractionMethod.AI))

        assert outcome.applied

    def test_low_confidence_becomes_pending_candidate(self, db_session, make_rate_entry):
        entry = make_rate_entry(general_rate_text="subject to alternate rates")
        review = FormulaReviewService(min_confidence=0.85)

        outcome = review.record_result(
            entry, RateCategory.GENERAL, _result(confidence=0.6, method=ExtractionMethod.AI)
        )

        assert not outcome.applied
        assert entry.general_formula is None
        candidate = db_session.get(FormulaCandidate, outcome.candidate_id)
        assert candidate.status == CandidateStatus.PENDING.value
        assert candidate.proposed_formula == "value * 0.05"
        assert candidate.confidence == Decimal("0.6")
        assert candidate.method == "ai"
        assert candidate.rate_category == "general"

    def test_zero_confidence_is_queued_not_applied(self, db_session, make_rate_entry):
        entry = make_rate_entry()
        review = FormulaReviewService(min_confidence=0.0001)

        outcome = review.record_result(entry, RateCategory.GENERAL, _result(confidence=0, method=ExtractionMethod.AI))

        assert not outcome.applied
        assert db_session.get(FormulaCandidate, outcome.candidate_id).confidence == Decimal("0")

    def test_same_proposal_is_not_queued_twice(self, app, make_rate_entry):
        entry = make_rate_entry()
        review = FormulaReviewService(min_confidence=0.85)
        low = _result(confidence=0.3, method=ExtractionMethod.AI)

        first = review.record_result(entry, RateCategory.GENERAL, low)
        second = review.record_result(entry, RateCategory.GENERAL, low)

        assert first.candidate_id == second.candidate_id
        assert FormulaCandidate.query.count() == 1


class TestReview:

    def _queue(self, entry, category=RateCategory.GENERAL):
        review = FormulaReviewService(min_confidence=0.85)
        outcome = review.record_result(entry, category, _result(confidence=0.5, method=ExtractionMethod.AI))
        return review, outcome.candidate_id

    def test_approve_applies_formula(self, app, make_rate_entry):
        entry = make_rate_entry(other_rate_text="see schedule")
        review, candidate_id = self._queue(entry, RateCategory.OTHER)

        candidate = review.approve(candidate_id, reviewed_by="analyst@example.com", comment="checked")

        assert candidate.status == CandidateStatus.APPROVED.value
        assert candidate.reviewed_by == "analyst@example.com"
        assert candidate.reviewed_at is not None
        assert entry.rate_column(RateCategory.OTHER).formula == "value * 0.05"
        assert entry.rate_column(RateCategory.GENERAL).formula is None

    def test_reject_leaves_entry_untouched(self, app, make_rate_entry):
        entry = make_rate_entry()
        review, candidate_id = self._queue(entry)

        candidate = review.reject(candidate_id, reviewed_by="analyst@example.com", comment="wrong unit")

        assert candidate.status == CandidateStatus.REJECTED.value
        assert candidate.review_comment == "wrong unit"
        assert entry.general_formula is None

    def test_only_pending_candidates_can_be_reviewed(self, app, make_rate_entry):
        entry = make_rate_entry()
        review, candidate_id = self._queue(entry)
        review.reject(candidate_id, reviewed_by="a")

        with pytest.raises(ValueError):
            review.approve(candidate_id, reviewed_by="b")

    def test_unknown_candidate(self, app):
        with pytest.raises(NotFoundError):
            FormulaReviewService().approve(999, reviewed_by="a")

    def test_pending_queue_ordered_by_confidence(self, app, make_rate_entry):
        review = FormulaReviewService(min_confidence=0.85)
        low = make_rate_entry(hts_number="0101.21.00.10")
        high = make_rate_entry(hts_number="0101.29.00.10")
        review.record_result(low, RateCategory.GENERAL, _result(confidence=0.2, method=ExtractionMethod.AI))
        review.record_result(high, RateCategory.GENERAL, _result(confidence=0.7, method=ExtractionMethod.AI))

        pending = review.pending_candidates()

        assert [c.hts_number for c in pending] == ["0101.29.00.10", "0101.21.00.10"]
