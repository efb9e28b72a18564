"""
Tests for settings lookup: app config overrides reach the services.
"""

from dutycalc.config import Config, setting
from dutycalc.services.calculation_engine import CalculationEngine
from dutycalc.services.extra_tax_engine import ExtraTaxEngine
from dutycalc.services.formula_review import FormulaReviewService
from dutycalc.services.rate_catalog import RateCatalog
from dutycalc.web import create_app


def _app(**overrides):
    return create_app({"TESTING": True, "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:", **overrides})


class TestSetting:

    def test_falls_back_to_config_outside_app_context(self):
        assert setting("MONEY_SCALE") == Config.MONEY_SCALE

    def test_app_default_matches_config(self, app):
        assert setting("FORMULA_CONFIDENCE_THRESHOLD") == Config.FORMULA_CONFIDENCE_THRESHOLD

    def test_overrides_reach_services(self):
        app = _app(
            MONEY_SCALE=4,
            FORMULA_CONFIDENCE_THRESHOLD=0.5,
            NON_NTR_COUNTRIES=("CN",),
        )

        with app.app_context():
            assert CalculationEngine().scale == 4
            assert ExtraTaxEngine().scale == 4
            assert FormulaReviewService().min_confidence == 0.5
            assert RateCatalog().non_ntr_countries == {"CN"}

    def test_explicit_arguments_beat_app_config(self):
        app = _app(FORMULA_CONFIDENCE_THRESHOLD=0.5)

        with app.app_context():
            assert FormulaReviewService(min_confidence=0.9).min_confidence == 0.9
