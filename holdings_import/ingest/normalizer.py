"""
Row normalizer — maps one raw registry row onto a canonical holding record.

Header labels drift between registry exports (casing, quoting artifacts,
Norwegian vs. English names), so every canonical field is resolved against a
list of aliases in three tiers:

    1. exact, case-sensitive alias match
    2. case-insensitive exact match
    3. case-insensitive substring match, in either direction

Substring candidates come after the exact ones, and a column that exactly
matches one field is not borrowed by another.  For a given row the first
candidate column with a non-empty value wins.
"""

from __future__ import annotations

import logging
import re
from typing import Optional, Union

from holdings_import.config import DEFAULT_COUNTRY_CODE, DEFAULT_SHARE_CLASS
from holdings_import.models import NormalizedRecord, RawRecord, Rejection

logger = logging.getLogger(__name__)

# Canonical field → known header aliases, most specific first
FIELD_ALIASES: dict[str, list[str]] = {
    "company_identifier": [
        "Orgnr", "orgnr", "organisasjonsnummer", "Organisasjonsnummer",
        "org_nr", "org-nr", '"Orgnr', "company_orgnr",
    ],
    "company_name": [
        "Selskap", "selskap", "selskapsnavn", "navn", "company_name",
    ],
    "holder_name": [
        "Navn aksjonær", "navn aksjonær", "navn_aksjonaer", "aksjonaer",
        "eier", "holder", "eier_navn", "Navn aksjonÃ¦r",
    ],
    "holder_identifier": [
        "Fødselsår/orgnr", "fødselsår/orgnr", "fodselsar_orgnr",
        "eier_orgnr", "holder_orgnr", "FÃ¸dselsÃ¥r/orgnr",
    ],
    "holder_country_code": [
        "Landkode", "landkode", "country_code",
    ],
    "share_class": [
        "Aksjeklasse", "aksjeklasse", "share_class",
    ],
    "share_count": [
        "Antall aksjer", "antall aksjer", "antall_aksjer", "aksjer",
        "shares", "andeler",
    ],
}

_NON_DIGITS = re.compile(r"\D")


def _digits(value: str) -> str:
    return _NON_DIGITS.sub("", value or "")


def resolve_columns(headers: list[str]) -> dict[str, list[str]]:
    """
    Return, per canonical field, the header labels that may supply it,
    ordered by match priority (exact → case-insensitive → substring).

    Substring candidates always follow the exact ones, so a blank exact
    column can fall through to a looser match.  A column that is an exact
    match for one field is never a substring candidate for another.
    """
    exact: dict[str, list[str]] = {}
    for field, aliases in FIELD_ALIASES.items():
        candidates: list[str] = []
        # 1. exact
        for alias in aliases:
            if alias in headers and alias not in candidates:
                candidates.append(alias)
        # 2. case-insensitive exact
        for alias in aliases:
            for h in headers:
                if h.lower() == alias.lower() and h not in candidates:
                    candidates.append(h)
        exact[field] = candidates

    owners: dict[str, set[str]] = {}
    for field, candidates in exact.items():
        for h in candidates:
            owners.setdefault(h, set()).add(field)

    resolution: dict[str, list[str]] = {}
    for field, aliases in FIELD_ALIASES.items():
        candidates = list(exact[field])
        # 3. substring, either direction
        for alias in aliases:
            alias = alias.lower()
            for h in headers:
                hl = h.lower()
                if not hl or h in candidates:
                    continue
                if h in owners and field not in owners[h]:
                    continue
                if alias in hl or hl in alias:
                    candidates.append(h)
        resolution[field] = candidates
    return resolution


def find_column_conflicts(headers: list[str]) -> dict[str, list[str]]:
    """
    Columns that are the top candidate of more than one canonical field.

    Returns ``{column: [field, ...]}``.  Nothing is resolved here: callers
    decide whether to warn, stop, or accept the documented priority order.
    """
    claims: dict[str, list[str]] = {}
    for field, candidates in resolve_columns(headers).items():
        if candidates:
            claims.setdefault(candidates[0], []).append(field)
    return {col: fields for col, fields in claims.items() if len(fields) > 1}


class RowNormalizer:
    """Stateless apart from a per-header-set cache of column resolutions."""

    def __init__(
        self,
        default_country: str | None = None,
        default_share_class: str | None = None,
    ):
        self.default_country = default_country or DEFAULT_COUNTRY_CODE
        self.default_share_class = default_share_class or DEFAULT_SHARE_CLASS
        self._cache: dict[tuple[str, ...], dict[str, list[str]]] = {}

    def _columns_for(self, raw: RawRecord) -> dict[str, list[str]]:
        key = tuple(raw.keys())
        resolution = self._cache.get(key)
        if resolution is None:
            headers = list(key)
            resolution = resolve_columns(headers)
            self._cache[key] = resolution
            conflicts = find_column_conflicts(headers)
            for column, fields in conflicts.items():
                logger.warning(
                    "Column %r is the best match for several fields (%s); "
                    "using alias priority order", column, ", ".join(fields),
                )
        return resolution

    def _extract(self, raw: RawRecord, columns: dict[str, list[str]], field: str) -> str:
        for label in columns.get(field, []):
            value = (raw.get(label) or "").strip()
            if value:
                logger.debug("Field %s matched column %r", field, label)
                return value
        return ""

    def normalize_or_reject(self, raw: RawRecord) -> Union[NormalizedRecord, Rejection]:
        columns = self._columns_for(raw)

        company_raw = _digits(self._extract(raw, columns, "company_identifier"))
        if not company_raw:
            return Rejection(reason="missing_company_identifier")
        if len(company_raw) == 8:
            company_raw = "0" + company_raw
        if len(company_raw) != 9:
            return Rejection(
                reason="invalid_company_identifier",
                detail=f"{company_raw} has {len(company_raw)} digits",
            )

        company_name = self._extract(raw, columns, "company_name")
        if not company_name:
            return Rejection(reason="missing_company_name", detail=company_raw)

        holder_name = self._extract(raw, columns, "holder_name")
        if not holder_name:
            return Rejection(reason="missing_holder_name", detail=company_raw)

        holder_raw = _digits(self._extract(raw, columns, "holder_identifier"))
        holder_registry_number: Optional[str] = None
        holder_birth_year: Optional[int] = None
        if len(holder_raw) == 9:
            holder_registry_number = holder_raw
        elif len(holder_raw) == 4 and int(holder_raw) >= 1900:
            holder_birth_year = int(holder_raw)

        country = self._extract(raw, columns, "holder_country_code").upper() or self.default_country
        share_class = self._extract(raw, columns, "share_class") or self.default_share_class
        shares = _digits(self._extract(raw, columns, "share_count"))

        return NormalizedRecord(
            company_identifier=company_raw,
            company_name=company_name,
            holder_name=holder_name,
            holder_registry_number=holder_registry_number,
            holder_birth_year=holder_birth_year,
            holder_country_code=country,
            share_class=share_class,
            share_count=int(shares) if shares else 0,
        )

    def normalize(self, raw: RawRecord) -> Optional[NormalizedRecord]:
        result = self.normalize_or_reject(raw)
        if isinstance(result, Rejection):
            logger.debug("Rejected row: %s %s", result.reason, result.detail)
            return None
        return result


_default = RowNormalizer()


def normalize(raw: RawRecord) -> Optional[NormalizedRecord]:
    """Normalize one raw record, or return ``None`` if it must be rejected."""
    return _default.normalize(raw)


def normalize_or_reject(raw: RawRecord) -> Union[NormalizedRecord, Rejection]:
    return _default.normalize_or_reject(raw)
