"""
Note Resolution - map "see note N" rate texts to a concrete formula.

Resolution steps:
1. CACHE      - an HtsNoteReference row for (hts_number, source_column, year)
                is returned unchanged.
2. PARSE      - note number ("20(r)"), note type, and target chapter. An
                explicit "... to chapter 99" overrides the HTS chapter.
3. MATCH      - notes for {chapter, note number, year}.
4. SUPERSEDE  - among re-publications the note from the document with the
                latest processed_at wins. Within that newest set a typed
                match (additional / general / ...) breaks a tie; a tie that
                remains is ambiguous.
5. RATE       - verified rate first, then highest confidence, then lowest id.
6. PERSIST    - insert the reference row. Concurrent resolvers race on the
                unique constraint; the loser rolls back and re-reads.

exact_only=True (used by calculations) never substitutes a fuzzy match.
With exact_only=False an injected similarity search may be consulted;
hits under 0.8 similarity are ignored.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError

from dutycalc.errors import AmbiguousResolutionError, NotFoundError
from dutycalc.web.db import db
from dutycalc.web.db.models import HtsNote, HtsNoteRate, HtsNoteReference, normalize_hts

logger = logging.getLogger(__name__)


NOTE_NUMBER_RE = re.compile(r"notes?\s+(\d+[a-z]?(?:\([a-z0-9ivx]+\))*)", re.IGNORECASE)
TARGET_CHAPTER_RE = re.compile(r"\bto\s+chapter\s+(\d{1,2})\b", re.IGNORECASE)

# Checked in order; first hit wins
NOTE_TYPE_PATTERNS = (
    (re.compile(r"\badditional\b", re.IGNORECASE), "additional_us_note"),
    (re.compile(r"\bu\.\s?s\.\s+notes?\b", re.IGNORECASE), "additional_us_note"),
    (re.compile(r"\bgeneral\s+notes?\b", re.IGNORECASE), "general_note"),
    (re.compile(r"\bstatistical\s+notes?\b", re.IGNORECASE), "statistical_note"),
    (re.compile(r"\bsection\s+notes?\b", re.IGNORECASE), "section_note"),
    (re.compile(r"\bchapter\s+notes?\b", re.IGNORECASE), "chapter_note"),
)

SIMILARITY_THRESHOLD = 0.8

# (reference_text, chapter, year) -> [(note, similarity)]
SimilaritySearch = Callable[[str, str, int], Sequence[Tuple[HtsNote, float]]]


def normalize_note_number(note_number: Optional[str]) -> str:
    return "".join((note_number or "").split()).lower()


@dataclass
class ParsedReference:
    note_number: Optional[str]
    chapter: str
    note_type: Optional[str] = None
    explicit_chapter: bool = False


@dataclass
class ResolvedNote:
    """A note reference resolved to a formula, with its provenance."""
    hts_number: str
    source_column: str
    year: int
    formula: str
    variables: List[str]
    confidence: float
    resolution_method: str
    reference_id: Optional[int] = None
    note_id: Optional[int] = None
    note_rate_id: Optional[int] = None
    cached: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "hts_number": self.hts_number,
            "source_column": self.source_column,
            "year": self.year,
            "formula": self.formula,
            "variables": self.variables,
            "confidence": self.confidence,
            "resolution_method": self.resolution_method,
            "reference_id": self.reference_id,
            "note_id": self.note_id,
            "note_rate_id": self.note_rate_id,
            "cached": self.cached,
            "metadata": self.metadata,
        }


class NoteResolutionEngine:
    """
    Usage:
        engine = NoteResolutionEngine()
        resolved = engine.resolve_note_reference(
            "1202.41.80.00", "See U.S. note 20(r) to chapter 99", "general", 2025
        )
        resolved.formula  # "value * 0.25"
    """

    def __init__(self, similarity_search: Optional[SimilaritySearch] = None):
        self.similarity_search = similarity_search

    def resolve_note_reference(
        self,
        hts_number: str,
        reference_text: str,
        source_column: str,
        year: int,
        exact_only: bool = True,
    ) -> ResolvedNote:
        existing = self._find_reference(hts_number, source_column, year)
        if existing is not None:
            logger.debug(f"Note reference cache hit: {hts_number} [{source_column}] {year}")
            return self._from_reference(existing, cached=True)

        parsed = self.parse_reference(reference_text, hts_number)
        if parsed.note_number is None:
            raise NotFoundError(f"No note number found in reference text '{reference_text}'")

        try:
            note, rate, meta = self._resolve_exact(parsed, year)
            method = "exact"
        except NotFoundError:
            if exact_only or self.similarity_search is None:
                logger.warning(
                    f"Note {parsed.note_number} (chapter {parsed.chapter}, {year}) not resolved for {hts_number}"
                )
                raise
            note, rate, meta = self._resolve_by_similarity(reference_text, parsed, year)
            method = "semantic"

        meta["reference_text"] = reference_text
        return self._persist(hts_number, reference_text, source_column, year, note, rate, method, meta)

    def parse_reference(self, reference_text: str, hts_number: str) -> ParsedReference:
        text = reference_text or ""

        number_match = NOTE_NUMBER_RE.search(text)
        note_number = normalize_note_number(number_match.group(1)) if number_match else None

        chapter_match = TARGET_CHAPTER_RE.search(text)
        if chapter_match:
            chapter = chapter_match.group(1).zfill(2)
        else:
            chapter = normalize_hts(hts_number)[:2]

        note_type = None
        for pattern, detected in NOTE_TYPE_PATTERNS:
            if pattern.search(text):
                note_type = detected
                break

        return ParsedReference(
            note_number=note_number,
            chapter=chapter,
            note_type=note_type,
            explicit_chapter=chapter_match is not None,
        )

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _resolve_exact(self, parsed: ParsedReference, year: int) -> Tuple[HtsNote, HtsNoteRate, Dict[str, Any]]:
        notes = HtsNote.query.filter_by(chapter=parsed.chapter, year=year).all()
        matching = [n for n in notes if normalize_note_number(n.note_number) == parsed.note_number]

        if not matching:
            raise NotFoundError(
                f"Note {parsed.note_number} not found in chapter {parsed.chapter} for {year}"
            )

        latest = max(_processed_at(n) for n in matching)
        top = sorted((n for n in matching if _processed_at(n) == latest), key=lambda n: n.id)

        # Note type only breaks ties within the newest publication
        if parsed.note_type and len(top) > 1:
            typed = [n for n in top if n.note_type == parsed.note_type]
            if typed:
                top = typed
        if len(top) > 1:
            raise AmbiguousResolutionError(
                f"{len(top)} notes numbered {parsed.note_number} in chapter {parsed.chapter} "
                f"share the latest processing time",
                candidates=[_note_summary(n) for n in top],
            )

        note = top[0]
        rate = self._select_rate(note)
        meta = {
            "chapter": parsed.chapter,
            "explicit_chapter": parsed.explicit_chapter,
            "note_number": note.note_number,
            "note_type": note.note_type,
            "document_id": note.document_id,
            "document_version": note.document.source_version if note.document else None,
            "processed_at": latest.isoformat() if latest != datetime.min else None,
            "superseded_note_ids": sorted(n.id for n in matching if n.id != note.id),
            "rate_verified": rate.verified,
        }
        return note, rate, meta

    def _resolve_by_similarity(
        self, reference_text: str, parsed: ParsedReference, year: int
    ) -> Tuple[HtsNote, HtsNoteRate, Dict[str, Any]]:
        hits = [
            (note, score)
            for note, score in self.similarity_search(reference_text, parsed.chapter, year)
            if score >= SIMILARITY_THRESHOLD
        ]
        if not hits:
            raise NotFoundError(f"No note similar enough to '{reference_text}' in chapter {parsed.chapter}")

        note, score = sorted(hits, key=lambda h: (-h[1], h[0].id))[0]
        rate = self._select_rate(note)
        meta = {
            "chapter": parsed.chapter,
            "explicit_chapter": parsed.explicit_chapter,
            "note_number": note.note_number,
            "note_type": note.note_type,
            "document_id": note.document_id,
            "similarity": score,
            "rate_verified": rate.verified,
        }
        return note, rate, meta

    @staticmethod
    def _select_rate(note: HtsNote) -> HtsNoteRate:
        usable = [r for r in note.rates if r.formula and r.formula.strip()]
        if not usable:
            raise NotFoundError(f"Note {note.note_number} (chapter {note.chapter}) has no formula")
        return min(usable, key=lambda r: (not r.verified, -(r.confidence or Decimal(0)), r.id))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _find_reference(self, hts_number: str, source_column: str, year: int) -> Optional[HtsNoteReference]:
        return HtsNoteReference.query.filter_by(
            hts_number=hts_number, source_column=source_column, year=year
        ).first()

    def _persist(
        self,
        hts_number: str,
        reference_text: str,
        source_column: str,
        year: int,
        note: HtsNote,
        rate: HtsNoteRate,
        method: str,
        meta: Dict[str, Any],
    ) -> ResolvedNote:
        reference = HtsNoteReference(
            hts_number=hts_number,
            source_column=source_column,
            year=year,
            reference_text=reference_text,
            note_id=note.id,
            note_rate_id=rate.id,
            resolved_formula=rate.formula,
            variables=list(rate.variables or []),
            confidence=rate.confidence,
            resolution_method=method,
            is_resolved=True,
            resolution_metadata=meta,
            resolved_at=datetime.utcnow(),
        )
        db.session.add(reference)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            winner = self._find_reference(hts_number, source_column, year)
            if winner is None:
                raise
            logger.info(f"Note reference for {hts_number} [{source_column}] {year} resolved concurrently; using row {winner.id}")
            return self._from_reference(winner, cached=True)

        logger.info(
            f"Resolved {hts_number} [{source_column}] {year} -> note {note.note_number} "
            f"(chapter {note.chapter}) formula '{rate.formula}' via {method}"
        )
        return self._from_reference(reference, cached=False)

    @staticmethod
    def _from_reference(reference: HtsNoteReference, cached: bool) -> ResolvedNote:
        return ResolvedNote(
            hts_number=reference.hts_number,
            source_column=reference.source_column,
            year=reference.year,
            formula=reference.resolved_formula,
            variables=list(reference.variables or []),
            confidence=float(reference.confidence) if reference.confidence is not None else 0.0,
            resolution_method=reference.resolution_method,
            reference_id=reference.id,
            note_id=reference.note_id,
            note_rate_id=reference.note_rate_id,
            cached=cached,
            metadata=dict(reference.resolution_metadata or {}),
        )


def _processed_at(note: HtsNote) -> datetime:
    if note.document is not None and note.document.processed_at is not None:
        return note.document.processed_at
    return datetime.min


def _note_summary(note: HtsNote) -> Dict[str, Any]:
    return {
        "note_id": note.id,
        "note_number": note.note_number,
        "chapter": note.chapter,
        "document_id": note.document_id,
        "document_version": note.document.source_version if note.document else None,
    }
