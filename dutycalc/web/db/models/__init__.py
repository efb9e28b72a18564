from .base import BaseModel as Model
from .rate_catalog import (
    RateCategory,
    ApplicationMode,
    BaseValue,
    RateColumn,
    RateEntry,
    ExtraTax,
    TradeAgreement,
    TradeAgreementEligibility,
    normalize_hts,
)
from .knowledgebase import (
    HtsDocument,
    HtsNote,
    HtsNoteRate,
    HtsNoteReference,
)
from .formula_candidate import CandidateStatus, FormulaCandidate
from .calculation import CalculationRecord
