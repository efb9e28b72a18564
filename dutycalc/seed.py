"""
Reference data seeding.

Seeding is an explicit, one-time step (`flask --app wsgi seed-catalog`);
nothing in the read path ever inserts rows. Each table is seeded only
when empty, so rates loaded later by ingestion are preserved. Pass
reset=True to wipe and reload the seeded tables.

Seeded data (2025 schedule):
- 8544.42.90.90 insulated conductors: 2.6% general, 60% column 2
- 0702.00.20.10 tomatoes: 2.8 cents/kg
- 6110.20.20.10 cotton sweaters: 16.5%
- MPF 0.3464% ad valorem, min $32.71, max $634.62 (19 CFR 24.23)
- HMF 0.125% ad valorem on vessel shipments (19 CFR 24.24)
- Section 301 List 3: 25% on 8544.42.90 from China (9903.88.03)
- USMCA (MX, CA) with duty-free eligibility for the lines above
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Dict

from dutycalc.web.db import db
from dutycalc.web.db.models import (
    ApplicationMode,
    BaseValue,
    ExtraTax,
    RateEntry,
    TradeAgreement,
    TradeAgreementEligibility,
)

logger = logging.getLogger(__name__)

SCHEDULE_VERSION = "2025 Revision 1"
SCHEDULE_START = date(2025, 1, 1)

RATE_ENTRIES = [
    {
        "hts_number": "8544.42.90.90",
        "description": "Insulated electric conductors, fitted with connectors, other",
        "unit_of_quantity": "kg",
        "general_rate_text": "2.6%",
        "other_rate_text": "60%",
        "special_rate_text": "Free (A,AU,B,BH,CA,CL,CO,D,E,IL,JO,KR,MA,MX,OM,P,PA,PE,S,SG)",
    },
    {
        "hts_number": "0702.00.20.10",
        "description": "Tomatoes, fresh or chilled, cherry tomatoes",
        "unit_of_quantity": "kg",
        "general_rate_text": "2.8¢/kg",
        "other_rate_text": "3.3¢/kg",
        "special_rate_text": "Free (A+,AU,BH,CA,CL,CO,D,E,IL,JO,KR,MA,MX,OM,P,PA,PE,SG)",
    },
    {
        "hts_number": "6110.20.20.10",
        "description": "Sweaters, pullovers and similar articles, of cotton",
        "unit_of_quantity": "doz.",
        "general_rate_text": "16.5%",
        "other_rate_text": "45%",
        "special_rate_text": "Free (AU,BH,CA,CL,CO,IL,JO,KR,MA,MX,OM,P,PA,PE,SG)",
    },
]

EXTRA_TAXES = [
    {
        "tax_code": "MPF",
        "tax_name": "Merchandise Processing Fee",
        "description": "Formal entry MPF, FY2025 limits",
        "country_code": "ALL",
        "application_mode": ApplicationMode.STANDALONE.value,
        "rate": Decimal("0.003464"),
        "is_percentage": True,
        "apply_to": BaseValue.VALUE.value,
        "minimum_amount": Decimal("32.71"),
        "maximum_amount": Decimal("634.62"),
        "priority": 10,
        "effective_date": date(2024, 10, 1),
        "legal_reference": "19 CFR 24.23(b)(1)",
    },
    {
        "tax_code": "HMF",
        "tax_name": "Harbor Maintenance Fee",
        "description": "Charged on commercial cargo arriving by vessel",
        "country_code": "ALL",
        "application_mode": ApplicationMode.CONDITIONAL.value,
        "rate": Decimal("0.00125"),
        "is_percentage": True,
        "apply_to": BaseValue.VALUE.value,
        "conditions": {"transport_mode": "vessel"},
        "priority": 20,
        "effective_date": date(1987, 4, 1),
        "legal_reference": "19 CFR 24.24",
    },
    {
        "tax_code": "S301-L3",
        "tax_name": "Section 301 List 3",
        "description": "Additional duty on products of China, List 3",
        "hts_number": "8544.42.90",
        "country_code": "CN",
        "application_mode": ApplicationMode.ADD_ON.value,
        "rate": Decimal("0.25"),
        "is_percentage": True,
        "apply_to": BaseValue.VALUE.value,
        "priority": 30,
        "effective_date": date(2019, 5, 10),
        "legal_reference": "9903.88.03",
    },
]

TRADE_AGREEMENTS = [
    {
        "code": "USMCA",
        "name": "United States-Mexico-Canada Agreement",
        "partner_countries": ["MX", "CA"],
        "certificate_required": True,
        "origin_rules": "Goods must qualify as originating under USMCA Chapter 4 and Annex 4-B.",
        "effective_date": date(2020, 7, 1),
    },
]

ELIGIBILITY = [
    {
        "hts_number": "8544.42.90",
        "agreement_code": "USMCA",
        "is_eligible": True,
        "preferential_rate": Decimal("0"),
        "rate_type": "percentage",
        "certificate_type": "USMCA certification of origin",
    },
    {
        "hts_number": "6110.20.20",
        "agreement_code": "USMCA",
        "is_eligible": True,
        "preferential_rate": Decimal("0"),
        "rate_type": "percentage",
        "certificate_type": "USMCA certification of origin",
        "origin_requirements": "Yarn-forward rule of origin",
    },
]


def seed_catalog(reset: bool = False) -> Dict[str, int]:
    """
    Seed reference tables that are empty (or all of them with reset=True).

    Returns rows inserted per table; 0 means the table was preserved.
    """
    if reset:
        for model in (TradeAgreementEligibility, TradeAgreement, ExtraTax, RateEntry):
            deleted = model.query.delete()
            logger.info(f"{model.__tablename__}: deleted {deleted} rows (reset)")
        db.session.commit()

    inserted = {
        RateEntry.__tablename__: _seed_table(RateEntry, [
            {**row, "country_code": "ALL", "effective_date": SCHEDULE_START, "source_version": SCHEDULE_VERSION}
            for row in RATE_ENTRIES
        ]),
        ExtraTax.__tablename__: _seed_table(ExtraTax, EXTRA_TAXES),
        TradeAgreement.__tablename__: _seed_table(TradeAgreement, TRADE_AGREEMENTS),
        TradeAgreementEligibility.__tablename__: _seed_table(TradeAgreementEligibility, ELIGIBILITY),
    }
    db.session.commit()
    return inserted


def _seed_table(model, rows) -> int:
    existing = model.query.count()
    if existing > 0:
        logger.info(f"{model.__tablename__} has {existing} rows - preserving")
        return 0

    for row in rows:
        db.session.add(model(**row))
    logger.info(f"{model.__tablename__}: seeded {len(rows)} rows")
    return len(rows)
