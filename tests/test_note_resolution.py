"""
Tests for note-reference resolution.

Covers:
- explicit "to chapter 99" overriding the HTS chapter
- superseded note versions (latest processed document wins)
- ambiguity when two versions tie
- rate preference (verified, then confidence)
- exact-only vs similarity fallback
- caching and the concurrent-insert path
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from dutycalc.errors import AmbiguousResolutionError, NotFoundError
from dutycalc.services.note_resolution import NoteResolutionEngine, normalize_note_number
from dutycalc.web import create_app
from dutycalc.web.db import db
from dutycalc.web.db.models import HtsDocument, HtsNote, HtsNoteRate, HtsNoteReference


CH99_TEXT = "See U.S. note 20(r) to chapter 99"


class TestParsing:

    def test_explicit_chapter_overrides_hts_chapter(self):
        parsed = NoteResolutionEngine().parse_reference(CH99_TEXT, "1202.41.80.00")

        assert parsed.chapter == "99"
        assert parsed.explicit_chapter
        assert parsed.note_number == "20(r)"
        assert parsed.note_type == "additional_us_note"

    def test_chapter_defaults_to_hts_chapter(self):
        parsed = NoteResolutionEngine().parse_reference("See general note 3", "1202.41.80.00")

        assert parsed.chapter == "12"
        assert not parsed.explicit_chapter
        assert parsed.note_type == "general_note"

    def test_note_number_normalization(self):
        assert normalize_note_number(" 20 (R) ") == "20(r)"


class TestExactResolution:

    def test_resolves_chapter_99_note_for_other_chapter(self, app, make_note):
        make_note(chapter="12", rates=(("value * 0.10", 0.99, True),))
        target = make_note(chapter="99", rates=(("value * 0.25", 0.95, False),))

        resolved = NoteResolutionEngine().resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)

        assert resolved.formula == "value * 0.25"
        assert resolved.note_id == target.id
        assert resolved.resolution_method == "exact"
        assert not resolved.cached
        assert resolved.metadata["chapter"] == "99"
        assert resolved.metadata["reference_text"] == CH99_TEXT

    def test_latest_processed_document_wins(self, app, make_note):
        old = make_note(processed_at=datetime(2025, 1, 1), rates=(("value * 0.10", 0.99, True),))
        new = make_note(processed_at=datetime(2025, 6, 1), rates=(("value * 0.25", 0.90, False),))

        resolved = NoteResolutionEngine().resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)

        assert resolved.note_id == new.id
        assert resolved.formula == "value * 0.25"
        assert resolved.metadata["superseded_note_ids"] == [old.id]

    def test_tie_is_ambiguous(self, app, make_note):
        first = make_note()
        second = make_note()

        with pytest.raises(AmbiguousResolutionError) as excinfo:
            NoteResolutionEngine().resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)

        assert [c["note_id"] for c in excinfo.value.candidates] == [first.id, second.id]
        assert HtsNoteReference.query.count() == 0

    def test_typed_match_preferred(self, app, make_note):
        make_note(chapter="12", note_number="3", note_type="chapter_note", rates=(("value * 0.5", 1.0, True),))
        typed = make_note(chapter="12", note_number="3", rates=(("value * 0.04", 0.9, False),))

        resolved = NoteResolutionEngine().resolve_note_reference(
            "1202.41.80.00", "The rate in additional U.S. note 3 to this chapter", "general", 2025
        )

        assert resolved.note_id == typed.id
        assert resolved.formula == "value * 0.04"

    def test_newer_untyped_republication_beats_older_typed_note(self, app, make_note):
        old = make_note(processed_at=datetime(2025, 1, 1), rates=(("value * 0.10", 0.99, True),))
        new = make_note(processed_at=datetime(2025, 6, 1), note_type=None, rates=(("value * 0.25", 0.90, False),))

        resolved = NoteResolutionEngine().resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)

        assert resolved.note_id == new.id
        assert resolved.formula == "value * 0.25"
        assert resolved.metadata["superseded_note_ids"] == [old.id]

    def test_type_breaks_tie_only_within_latest_publication(self, app, make_note):
        make_note(processed_at=datetime(2025, 6, 1), note_type=None, rates=(("value * 0.30", 0.9, False),))
        typed = make_note(processed_at=datetime(2025, 6, 1), rates=(("value * 0.25", 0.9, False),))
        make_note(processed_at=datetime(2025, 1, 1), rates=(("value * 0.10", 0.9, False),))

        resolved = NoteResolutionEngine().resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)

        assert resolved.note_id == typed.id

    def test_verified_rate_preferred_over_confidence(self, app, make_note):
        make_note(rates=(("value * 0.30", 0.99, False), ("value * 0.25", 0.80, True)))

        resolved = NoteResolutionEngine().resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)

        assert resolved.formula == "value * 0.25"
        assert resolved.metadata["rate_verified"] is True

    def test_highest_confidence_among_unverified(self, app, make_note):
        make_note(rates=(("value * 0.30", 0.70, False), ("value * 0.25", 0.95, False)))

        resolved = NoteResolutionEngine().resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)

        assert resolved.formula == "value * 0.25"

    def test_note_without_formula(self, app, make_note):
        make_note(rates=())

        with pytest.raises(NotFoundError):
            NoteResolutionEngine().resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)

    def test_other_year_not_used(self, app, make_note):
        make_note(year=2024)

        with pytest.raises(NotFoundError):
            NoteResolutionEngine().resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)

    def test_text_without_note_number(self, app):
        with pytest.raises(NotFoundError):
            NoteResolutionEngine().resolve_note_reference("1202.41.80.00", "See chapter 99", "general", 2025)


class TestSimilarityFallback:

    def test_exact_only_never_consults_similarity(self, app, make_note):
        note = make_note(note_number="21")
        search = Mock(return_value=[(note, 0.99)])

        with pytest.raises(NotFoundError):
            NoteResolutionEngine(similarity_search=search).resolve_note_reference(
                "1202.41.80.00", CH99_TEXT, "general", 2025, exact_only=True
            )

        search.assert_not_called()
        assert HtsNoteReference.query.count() == 0

    def test_similarity_used_when_allowed(self, app, make_note):
        note = make_note(note_number="21")
        search = Mock(return_value=[(note, 0.91)])

        resolved = NoteResolutionEngine(similarity_search=search).resolve_note_reference(
            "1202.41.80.00", CH99_TEXT, "general", 2025, exact_only=False
        )

        assert resolved.resolution_method == "semantic"
        assert resolved.note_id == note.id
        assert resolved.metadata["similarity"] == 0.91
        search.assert_called_once_with(CH99_TEXT, "99", 2025)

    def test_weak_similarity_ignored(self, app, make_note):
        note = make_note(note_number="21")
        search = Mock(return_value=[(note, 0.79)])

        with pytest.raises(NotFoundError):
            NoteResolutionEngine(similarity_search=search).resolve_note_reference(
                "1202.41.80.00", CH99_TEXT, "general", 2025, exact_only=False
            )


class TestPersistence:

    def test_second_call_returns_cached_row(self, app, make_note):
        make_note()
        engine = NoteResolutionEngine()

        first = engine.resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)
        second = engine.resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)

        assert second.cached
        assert second.reference_id == first.reference_id
        assert second.formula == first.formula
        assert HtsNoteReference.query.count() == 1

    def test_columns_and_years_are_cached_separately(self, app, make_note):
        make_note()
        engine = NoteResolutionEngine()

        engine.resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)
        engine.resolve_note_reference("1202.41.80.00", CH99_TEXT, "other", 2025)

        assert HtsNoteReference.query.count() == 2

    def test_concurrent_insert_returns_winner(self, app, make_note):
        make_note()
        winner = HtsNoteReference.create(
            hts_number="1202.41.80.00",
            source_column="general",
            year=2025,
            reference_text=CH99_TEXT,
            resolved_formula="value * 0.25",
            variables=["value"],
            resolution_method="exact",
            is_resolved=True,
        )
        engine = NoteResolutionEngine()
        real_find = engine._find_reference
        calls = []

        def find_after_race(*args):
            calls.append(args)
            if len(calls) == 1:
                return None
            return real_find(*args)

        with patch.object(engine, "_find_reference", side_effect=find_after_race):
            resolved = engine.resolve_note_reference("1202.41.80.00", CH99_TEXT, "general", 2025)

        assert resolved.reference_id == winner.id
        assert resolved.cached
        assert HtsNoteReference.query.count() == 1

    def test_parallel_resolvers_share_one_row(self, tmp_path):
        workers = 6
        app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'notes.db'}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30, "check_same_thread": False}},
        })
        with app.app_context():
            db.create_all()
            document = HtsDocument.create(chapter="99", year=2025, processed_at=datetime(2025, 1, 15))
            note = HtsNote.create(
                document_id=document.id, chapter="99", note_type="additional_us_note",
                note_number="20(r)", content="Note 20(r) text", year=2025, has_rate=True,
            )
            HtsNoteRate.create(note_id=note.id, formula="value * 0.25", variables=["value"],
                               confidence=Decimal("0.95"), verified=True)

        barrier = threading.Barrier(workers)

        def resolve(_):
            with app.app_context():
                barrier.wait(timeout=10)
                resolved = NoteResolutionEngine().resolve_note_reference(
                    "1202.41.80.00", CH99_TEXT, "general", 2025
                )
                return resolved.reference_id, resolved.formula

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(resolve, range(workers)))

        with app.app_context():
            assert HtsNoteReference.query.count() == 1
            assert set(results) == {(HtsNoteReference.query.one().id, "value * 0.25")}
            db.session.remove()
            db.engine.dispose()
