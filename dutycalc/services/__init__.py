"""
Calculation Services

Note: Imports are lazy to avoid circular import issues with the models.
Explicit submodule imports work as well:
    from dutycalc.services.calculation_engine import CalculationEngine
    from dutycalc.services.note_resolution import NoteResolutionEngine
"""

_EXPORTS = {
    "CalculationEngine": "dutycalc.services.calculation_engine",
    "CalculationInput": "dutycalc.services.calculation_engine",
    "NoteResolutionEngine": "dutycalc.services.note_resolution",
    "FormulaGenerator": "dutycalc.services.formula_generator",
    "FormulaEvaluator": "dutycalc.services.formula_evaluator",
    "FormulaReviewService": "dutycalc.services.formula_review",
    "EligibilityResolver": "dutycalc.services.eligibility",
    "ExtraTaxEngine": "dutycalc.services.extra_tax_engine",
    "RateCatalog": "dutycalc.services.rate_catalog",
}


def __getattr__(name):
    """Lazy import to avoid circular imports."""
    if name in _EXPORTS:
        import importlib
        module = importlib.import_module(_EXPORTS[name])
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
