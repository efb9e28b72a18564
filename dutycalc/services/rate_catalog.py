"""
Rate Catalog queries - date-window containment over RateEntry.

Selection for (hts_number, entry_date, country):
- HTS hierarchy fallback: exact 10-digit, then 8-digit, then 6-digit.
- Window is end-exclusive: effective_date <= entry_date < expiration_date.
- A country-specific row beats the "ALL" row, then the latest
  effective_date, then the highest id, so exactly one entry is current.
"""

import logging
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import case, or_

from dutycalc.config import setting
from dutycalc.errors import NotFoundError
from dutycalc.web.db.models import RateCategory, RateEntry, normalize_hts

logger = logging.getLogger(__name__)

HTS_FALLBACK_LENGTHS = (10, 8, 6)


class RateCatalog:

    def __init__(self, non_ntr_countries: Optional[Iterable[str]] = None):
        countries = setting("NON_NTR_COUNTRIES") if non_ntr_countries is None else non_ntr_countries
        self.non_ntr_countries = {c.upper() for c in countries}

    def find_rate_entry(self, hts_number: str, entry_date: date, country_code: Optional[str] = None) -> RateEntry:
        digits = normalize_hts(hts_number)
        if len(digits) < 6:
            raise NotFoundError(f"HTS number '{hts_number}' is too short to look up")

        country = (country_code or "ALL").upper()
        for length in HTS_FALLBACK_LENGTHS:
            if len(digits) < length:
                continue
            entry = self._current_entry(digits[:length], entry_date, country)
            if entry is not None:
                if length < len(digits):
                    logger.info(f"Rate for {hts_number} found at {length}-digit level ({entry.hts_number})")
                return entry

        raise NotFoundError(f"No rate entry for HTS {hts_number} effective {entry_date.isoformat()}")

    def select_category(self, entry: RateEntry, country_code: str, use_chapter99: bool = False) -> RateCategory:
        """Which rate column applies to this origin."""
        if (country_code or "").upper() in self.non_ntr_countries:
            if not entry.rate_column(RateCategory.OTHER).has_text:
                raise NotFoundError(f"No column 2 rate for {entry.hts_number} (origin {country_code})")
            return RateCategory.OTHER

        if use_chapter99:
            if entry.rate_column(RateCategory.CHAPTER99).has_text:
                return RateCategory.CHAPTER99
            logger.info(f"Chapter 99 rate requested but {entry.hts_number} has none; using general rate")

        return RateCategory.GENERAL

    @staticmethod
    def _current_entry(hts_digits: str, entry_date: date, country: str) -> Optional[RateEntry]:
        return (
            RateEntry.query
            .filter(
                RateEntry.hts_digits == hts_digits,
                RateEntry.country_code.in_([country, "ALL"]),
                RateEntry.effective_date <= entry_date,
                or_(RateEntry.expiration_date.is_(None), RateEntry.expiration_date > entry_date),
            )
            .order_by(
                case((RateEntry.country_code == "ALL", 1), else_=0),
                RateEntry.effective_date.desc(),
                RateEntry.id.desc(),
            )
            .first()
        )
