"""
dutycalc - import duty calculation over a versioned HTS rate catalog.

Public entry points:
    from dutycalc.services.calculation_engine import CalculationEngine, CalculationInput
    from dutycalc.services.note_resolution import NoteResolutionEngine
    from dutycalc.services.formula_generator import FormulaGenerator
    from dutycalc.services.extra_tax_engine import ExtraTaxEngine
"""

__version__ = "1.0.0"
