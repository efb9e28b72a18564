"""
SQLAlchemy models for the HTS notes knowledgebase.

The document provider publishes chapter documents; each one carries the
chapter's legal notes, and some notes encode a rate (e.g. "Additional
U.S. Note 20(r)"). A document may be re-published for the same
chapter/year, so every note keeps a link to the document that produced
it and resolution picks the latest processed_at.

HtsNoteReference caches the link from an HTS rate text to the note rate
that resolved it, one row per (hts_number, source_column, year).
"""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON, UniqueConstraint

from dutycalc.web.db import db
from dutycalc.web.db.models.base import BaseModel


class HtsDocument(BaseModel):
    """A processed chapter document (one publication of one chapter)."""
    __tablename__ = "hts_documents"

    id = db.Column(db.Integer, primary_key=True)
    chapter = db.Column(db.String(2), nullable=False, index=True)  # "99"
    year = db.Column(db.Integer, nullable=False, index=True)
    document_type = db.Column(db.String(32), nullable=False, default="chapter")
    source_version = db.Column(db.String(64), nullable=True)  # "2025 Revision 3"
    source_url = db.Column(db.String(512), nullable=True)
    file_hash = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="completed")
    processed_at = db.Column(db.DateTime, nullable=True)

    notes = db.relationship("HtsNote", back_populates="document")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chapter": self.chapter,
            "year": self.year,
            "document_type": self.document_type,
            "source_version": self.source_version,
            "source_url": self.source_url,
            "status": self.status,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


class HtsNote(BaseModel):
    """Chapter-scoped legal note text."""
    __tablename__ = "hts_notes"

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("hts_documents.id"), nullable=True)
    chapter = db.Column(db.String(2), nullable=False, index=True)
    note_type = db.Column(db.String(32), nullable=True)  # additional_us_note, general_note, ...
    note_number = db.Column(db.String(32), nullable=False, index=True)  # "20(r)"
    title = db.Column(db.String(256), nullable=True)
    content = db.Column(db.Text, nullable=False, default="")
    year = db.Column(db.Integer, nullable=False, index=True)
    has_rate = db.Column(db.Boolean, nullable=False, default=False)

    document = db.relationship("HtsDocument", back_populates="notes")
    rates = db.relationship("HtsNoteRate", back_populates="note", order_by="HtsNoteRate.id")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "chapter": self.chapter,
            "note_type": self.note_type,
            "note_number": self.note_number,
            "title": self.title,
            "year": self.year,
            "has_rate": self.has_rate,
        }


class HtsNoteRate(BaseModel):
    """A candidate rate formula extracted from a note."""
    __tablename__ = "hts_note_rates"

    id = db.Column(db.Integer, primary_key=True)
    note_id = db.Column(db.Integer, db.ForeignKey("hts_notes.id"), nullable=False, index=True)
    rate_text = db.Column(db.String(512), nullable=True)
    formula = db.Column(db.String(512), nullable=True)
    variables = db.Column(JSON, nullable=True)
    rate_type = db.Column(db.String(16), nullable=True)  # ad_valorem, specific, compound
    confidence = db.Column(db.Numeric(5, 4), nullable=False, default=0)
    verified = db.Column(db.Boolean, nullable=False, default=False)

    note = db.relationship("HtsNote", back_populates="rates")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "note_id": self.note_id,
            "rate_text": self.rate_text,
            "formula": self.formula,
            "variables": self.variables,
            "rate_type": self.rate_type,
            "confidence": float(self.confidence) if self.confidence is not None else None,
            "verified": self.verified,
        }


class HtsNoteReference(BaseModel):
    """
    Resolved link from an HTS rate text to a concrete note formula.

    The unique constraint is what makes resolution single-flight across
    processes: concurrent writers race on insert and the loser re-reads.
    """
    __tablename__ = "hts_note_references"
    __table_args__ = (
        UniqueConstraint('hts_number', 'source_column', 'year', name='uq_note_reference_key'),
    )

    id = db.Column(db.Integer, primary_key=True)
    hts_number = db.Column(db.String(16), nullable=False)
    source_column = db.Column(db.String(16), nullable=False)  # general, other, chapter99
    year = db.Column(db.Integer, nullable=False)
    reference_text = db.Column(db.String(512), nullable=False)
    note_id = db.Column(db.Integer, db.ForeignKey("hts_notes.id"), nullable=True)
    note_rate_id = db.Column(db.Integer, db.ForeignKey("hts_note_rates.id"), nullable=True)
    resolved_formula = db.Column(db.String(512), nullable=True)
    variables = db.Column(JSON, nullable=True)
    confidence = db.Column(db.Numeric(5, 4), nullable=True)
    resolution_method = db.Column(db.String(16), nullable=False, default="exact")  # exact, semantic
    is_resolved = db.Column(db.Boolean, nullable=False, default=True)
    resolution_metadata = db.Column(JSON, nullable=True)
    resolved_at = db.Column(db.DateTime, default=datetime.utcnow)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hts_number": self.hts_number,
            "source_column": self.source_column,
            "year": self.year,
            "reference_text": self.reference_text,
            "note_id": self.note_id,
            "note_rate_id": self.note_rate_id,
            "resolved_formula": self.resolved_formula,
            "variables": self.variables,
            "confidence": float(self.confidence) if self.confidence is not None else None,
            "resolution_method": self.resolution_method,
            "is_resolved": self.is_resolved,
            "resolution_metadata": self.resolution_metadata,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }
