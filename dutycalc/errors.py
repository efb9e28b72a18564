"""
Error taxonomy for the duty calculation core.

Rate lookup, note resolution and base-duty evaluation raise these and
the orchestrator lets them propagate. Eligibility and extra-tax failures
are caught and recorded instead (see calculation_engine).
"""

from typing import Any, Dict, List, Optional


class DutyCalcError(Exception):
    """Base class for all calculation errors."""


class NotFoundError(DutyCalcError):
    """No matching rate, note or eligibility record for the key and date."""


class AmbiguousResolutionError(DutyCalcError):
    """Several equally-ranked note candidates; refusing to pick one."""

    def __init__(self, message: str, candidates: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.candidates = candidates or []


class FormulaSyntaxError(DutyCalcError):
    """Malformed formula, or a reference to an unbound variable."""


class ExternalServiceError(DutyCalcError):
    """AI collaborator timeout, transport failure or contract violation."""


class ImmutableRecordError(DutyCalcError):
    """Attempt to update or delete an append-only audit record."""
