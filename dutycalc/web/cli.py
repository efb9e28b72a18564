"""
Flask CLI commands.

    flask --app wsgi seed-catalog [--reset]
    flask --app wsgi generate-formulas [--limit N]
    flask --app wsgi calculate 8544.42.90.90 CN 10000 --date 2025-06-01
"""

import json
import logging
from datetime import date

import click
from flask import Flask
from flask.cli import with_appcontext

from dutycalc.errors import DutyCalcError
from dutycalc.web.db import db

logger = logging.getLogger(__name__)


@click.command("init-db")
@with_appcontext
def init_db_command():
    """Create all tables."""
    db.create_all()
    click.echo("Database tables created")


@click.command("seed-catalog")
@click.option("--reset", is_flag=True, help="Delete seeded tables before loading")
@with_appcontext
def seed_catalog_command(reset):
    """Load reference rates, fees and agreements into empty tables."""
    from dutycalc.seed import seed_catalog

    db.create_all()
    inserted = seed_catalog(reset=reset)
    for table, count in inserted.items():
        status = f"{count} rows seeded" if count else "preserved"
        click.echo(f"{table}: {status}")


@click.command("generate-formulas")
@click.option("--limit", type=int, default=None, help="Maximum number of rate columns to process")
@with_appcontext
def generate_formulas_command(limit):
    """Extract formulas for rate columns that do not have one yet."""
    from dutycalc.services.formula_generator import FormulaGenerator, FormulaRequest, is_note_reference
    from dutycalc.services.formula_review import FormulaReviewService
    from dutycalc.web.db.models import RateCategory, RateEntry

    pending = []
    for entry in RateEntry.query.order_by(RateEntry.id).all():
        for category in (RateCategory.GENERAL, RateCategory.OTHER, RateCategory.CHAPTER99):
            column = entry.rate_column(category)
            if column.has_text and not column.is_resolved and not is_note_reference(column.rate_text):
                pending.append((entry, category))
    if limit:
        pending = pending[:limit]

    if not pending:
        click.echo("No unresolved rate columns")
        return

    generator = FormulaGenerator()
    review = FormulaReviewService()
    items = generator.generate_formula_batch([
        FormulaRequest(rate_text=entry.rate_column(category).rate_text, unit_of_quantity=entry.unit_of_quantity)
        for entry, category in pending
    ])

    applied = queued = failed = 0
    for (entry, category), item in zip(pending, items):
        if not item.ok:
            failed += 1
            click.echo(f"  {entry.hts_number} [{category.value}] FAILED: {item.error}")
            continue
        outcome = review.record_result(entry, category, item.result, commit=False)
        if outcome.applied:
            applied += 1
        else:
            queued += 1
    db.session.commit()

    click.echo(f"Processed {len(pending)}: {applied} applied, {queued} queued for review, {failed} failed")


@click.command("calculate")
@click.argument("hts_number")
@click.argument("country")
@click.argument("declared_value")
@click.option("--date", "entry_date", default=None, help="Entry date (YYYY-MM-DD), defaults to today")
@click.option("--weight", default=None, help="Net weight in kg")
@click.option("--quantity", default=None, help="Quantity in the unit of quantity")
@click.option("--agreement", default=None, help="Trade agreement code, e.g. USMCA")
@click.option("--claim", is_flag=True, help="Importer claims preferential treatment with a certificate")
@click.option("--chapter99", is_flag=True, help="Use the chapter 99 rate column")
@click.option("--attr", multiple=True, help="Context attribute key=value, e.g. transport_mode=vessel")
@with_appcontext
def calculate_command(hts_number, country, declared_value, entry_date, weight, quantity, agreement, claim, chapter99, attr):
    """Run one duty calculation and print the breakdown as JSON."""
    from decimal import Decimal

    from dutycalc.services.calculation_engine import CalculationEngine, CalculationInput

    attributes = {}
    for pair in attr:
        key, _, value = pair.partition("=")
        attributes[key.strip()] = value.strip()

    calc_input = CalculationInput(
        hts_number=hts_number,
        country_of_origin=country,
        declared_value=Decimal(declared_value),
        entry_date=date.fromisoformat(entry_date) if entry_date else date.today(),
        weight_kg=Decimal(weight) if weight else None,
        quantity=Decimal(quantity) if quantity else None,
        trade_agreement_code=agreement,
        claim_preferential=claim,
        use_chapter99_rate=chapter99,
        attributes=attributes,
    )
    try:
        result = CalculationEngine().calculate(calc_input)
    except DutyCalcError as e:
        raise click.ClickException(f"{e.__class__.__name__}: {e}")

    click.echo(json.dumps(result.as_dict(), indent=2))


def register_commands(app: Flask) -> None:
    app.cli.add_command(init_db_command)
    app.cli.add_command(seed_catalog_command)
    app.cli.add_command(generate_formulas_command)
    app.cli.add_command(calculate_command)
