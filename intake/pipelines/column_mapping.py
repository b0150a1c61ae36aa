"""Column mapping: raw runlist rows to canonical vehicle drafts.

Two modes:
- explicit: an auction's ColumnMapping names the source column for each
  canonical field;
- heuristic: no mapping exists, so VIN, lane and run columns are located
  from an ordered header-synonym table and everything else stays empty.

Both are pure functions over a single row; file I/O lives in parsers.py.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

from rapidfuzz import fuzz, process
from sqlalchemy import String

from config.header_synonyms import HEURISTIC_HEADERS, SUGGESTION_HEADERS
from registry.vin import clean_vin, is_valid_vin

from .. import models
from ..config import settings
from ..exceptions import RowValidationError

logger = logging.getLogger(__name__)

CANONICAL_FIELDS: tuple[str, ...] = (
    "vin",
    "lane_number",
    "run_number",
    "stock_number",
    "make",
    "model",
    "trim",
    "year",
    "mileage",
    "color",
    "body_type",
    "engine",
    "transmission",
    "auction_price",
)

INTEGER_FIELDS = frozenset({"year", "mileage"})
FLOAT_FIELDS = frozenset({"auction_price"})

# Older mapping documents key fields as "<name>_column"
LEGACY_MAPPING_KEYS = {
    "vin_column": "vin",
    "lane_column": "lane_number",
    "run_column": "run_number",
    "stock_column": "stock_number",
    "make_column": "make",
    "model_column": "model",
    "trim_column": "trim",
    "year_column": "year",
    "mileage_column": "mileage",
    "color_column": "color",
    "body_column": "body_type",
    "engine_column": "engine",
    "transmission_column": "transmission",
    "price_column": "auction_price",
}

RUN_FORMAT_COMBINED = "combined"
_COMBINED_RUN_PATTERN = re.compile(r"^([A-Z]+)-(\d+)$")
_NUMBER_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")

# Signed 32-bit INTEGER, the narrowest integer column type across backends
INTEGER_MIN = -(2**31)
INTEGER_MAX = 2**31 - 1

TEXT_LIMITS: dict[str, int] = {
    column.name: column.type.length
    for column in models.Vehicle.__table__.columns
    if isinstance(column.type, String) and column.type.length and column.name in CANONICAL_FIELDS
}


@dataclass
class VehicleDraft:
    """A vehicle built from one row, before persistence.

    make/model None means unresolved: neither the file nor the registry
    supplied a value.
    """
    raw_data: dict[str, str]
    vin: str | None = None
    make: str | None = None
    model: str | None = None
    trim: str | None = None
    year: int | None = None
    mileage: int | None = None
    color: str | None = None
    body_type: str | None = None
    engine: str | None = None
    transmission: str | None = None
    auction_price: float | None = None
    lane_number: str | None = None
    run_number: str | None = None
    stock_number: str | None = None
    notes: list[str] = field(default_factory=list)

    def to_row(self, runlist_id: int) -> dict[str, Any]:
        """Column values for a Vehicle insert."""
        row = asdict(self)
        row.pop("notes")
        row["runlist_id"] = runlist_id
        return row


def canonicalize_mapping(mapping: Mapping[str, str]) -> dict[str, str]:
    """Normalize mapping keys to canonical field names.

    Accepts canonical keys or legacy ``<field>_column`` keys; blank source
    columns and unknown fields are dropped.
    """
    canonical: dict[str, str] = {}
    for key, column in mapping.items():
        target = LEGACY_MAPPING_KEYS.get(key, key)
        if target not in CANONICAL_FIELDS:
            logger.debug(f"Ignoring unknown mapping key: {key}")
            continue
        if column is None or not str(column).strip():
            continue
        canonical[target] = str(column).strip()
    return canonical


def parse_int(value: str | None) -> int | None:
    """Parse integers such as "2020", "45,120" or "45120.0"; else None."""
    if value is None:
        return None
    text = re.sub(r"[,\s]", "", str(value))
    if not _NUMBER_PATTERN.match(text):
        return None
    try:
        return int(text.split(".", 1)[0])
    except ValueError:
        # More digits than int() will convert
        return None


def parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    text = re.sub(r"[,\s$]", "", str(value))
    if not _NUMBER_PATTERN.match(text):
        return None
    number = float(text)
    return number if math.isfinite(number) else None


def split_combined_run(value: str | None) -> tuple[str | None, str | None]:
    """Split a combined lane-run value like "BB-0123" into ("BB", "123").

    Returns (None, None) when the value is not in combined format.
    """
    if not value:
        return None, None
    match = _COMBINED_RUN_PATTERN.match(value.strip().upper())
    if not match:
        return None, None
    return match.group(1), str(int(match.group(2)))


def _text(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _apply_vin(draft: VehicleDraft, raw_vin: str | None, *, require_vin: bool, row_number: int | None) -> None:
    vin = clean_vin(raw_vin)
    if vin is None:
        if require_vin:
            raise RowValidationError("Missing VIN", row_number=row_number, field="vin")
        return
    if not is_valid_vin(vin):
        if require_vin:
            raise RowValidationError(f"Invalid VIN: {raw_vin!r}", row_number=row_number, field="vin")
        draft.notes.append(f"invalid VIN dropped: {raw_vin!r}")
        return
    draft.vin = vin


def _apply_run_format(draft: VehicleDraft, run_format: str) -> None:
    if run_format != RUN_FORMAT_COMBINED or not draft.run_number:
        return
    lane, run = split_combined_run(draft.run_number)
    if run is None:
        draft.notes.append(f"run number not in combined format: {draft.run_number!r}")
        return
    draft.run_number = run
    if draft.lane_number is None:
        draft.lane_number = lane


def fit_to_columns(draft: VehicleDraft) -> VehicleDraft:
    """Bound draft values to what the vehicles table can store.

    Integers outside the INTEGER range become None and text longer than
    its column is truncated; both leave a note on the draft. Applied after
    mapping and again after enrichment.
    """
    for name in INTEGER_FIELDS:
        value = getattr(draft, name)
        if value is not None and not INTEGER_MIN <= value <= INTEGER_MAX:
            draft.notes.append(f"{name} out of range dropped: {value}")
            setattr(draft, name, None)

    for name, limit in TEXT_LIMITS.items():
        value = getattr(draft, name)
        if value is not None and len(value) > limit:
            draft.notes.append(f"{name} truncated to {limit} characters: {value!r}")
            setattr(draft, name, value[:limit])
    return draft



def map_record(
    record: Mapping[str, str],
    mapping: Mapping[str, str],
    *,
    require_vin: bool = True,
    run_format: str = "separate",
    row_number: int | None = None,
) -> VehicleDraft:
    """Map one raw row using an explicit column mapping.

    Args:
        record: Raw row (column name -> string value)
        mapping: Canonical field -> source column (legacy keys accepted)
        require_vin: Fail the row when the VIN is missing or invalid
        run_format: "combined" splits lane-run values like "BB-0123"
        row_number: 1-based data row number, for error messages

    Returns:
        VehicleDraft with the raw row preserved

    Raises:
        RowValidationError: If a required VIN is missing or invalid
    """
    columns = canonicalize_mapping(mapping)
    values = {name: _text(record.get(column)) for name, column in columns.items()}

    draft = VehicleDraft(raw_data=dict(record))
    _apply_vin(draft, values.pop("vin", None), require_vin=require_vin, row_number=row_number)

    for name, value in values.items():
        if name in INTEGER_FIELDS:
            parsed = parse_int(value)
            if value is not None and parsed is None:
                logger.debug(f"Row {row_number}: unparseable {name} {value!r}")
            setattr(draft, name, parsed)
        elif name in FLOAT_FIELDS:
            setattr(draft, name, parse_float(value))
        else:
            setattr(draft, name, value)

    _apply_run_format(draft, run_format)
    return fit_to_columns(draft)


def guess_columns(
    headers: list[str],
    table: Mapping[str, list[str]] = HEURISTIC_HEADERS,
) -> dict[str, str]:
    """Locate columns from a priority table of header synonyms.

    For each field the candidates are tried in order, compared
    case-insensitively against the headers; the first hit wins.

    Returns:
        Field -> actual header name, for the fields that were found
    """
    by_lower: dict[str, str] = {}
    for header in headers:
        by_lower.setdefault(header.strip().lower(), header)

    found: dict[str, str] = {}
    for field_name, candidates in table.items():
        for candidate in candidates:
            header = by_lower.get(candidate.lower())
            if header is not None:
                found[field_name] = header
                break
    return found


def guess_record(
    record: Mapping[str, str],
    *,
    require_vin: bool = True,
    run_format: str = "separate",
    row_number: int | None = None,
) -> VehicleDraft:
    """Map one raw row without a configured mapping.

    Only VIN, lane and run are located. Make and model stay unresolved
    (None) until enrichment.
    """
    return map_record(
        record,
        guess_columns(list(record.keys())),
        require_vin=require_vin,
        run_format=run_format,
        row_number=row_number,
    )


def _normalize_header(header: str) -> str:
    text = re.sub(r"[^a-z0-9]+", " ", header.lower())
    return text.strip()


def suggest_mapping(headers: list[str], *, threshold: int | None = None) -> dict[str, str]:
    """Suggest a full field -> column mapping by fuzzy header matching.

    Used to pre-fill the mapping form when an auction has none yet. Each
    header is assigned to at most one field, best score first.
    """
    threshold = settings.ingestion.suggest_threshold if threshold is None else threshold

    vocabulary: dict[str, str] = {}
    for field_name, synonyms in SUGGESTION_HEADERS.items():
        for synonym in synonyms:
            vocabulary.setdefault(_normalize_header(synonym), field_name)

    scored: list[tuple[float, str, str]] = []
    for header in headers:
        normalized = _normalize_header(header)
        if not normalized:
            continue
        best = process.extractOne(normalized, list(vocabulary), scorer=fuzz.ratio, score_cutoff=threshold)
        if best is not None:
            synonym, score, _ = best
            scored.append((score, vocabulary[synonym], header))

    suggestion: dict[str, str] = {}
    used_headers: set[str] = set()
    for score, field_name, header in sorted(scored, key=lambda s: s[0], reverse=True):
        if field_name in suggestion or header in used_headers:
            continue
        suggestion[field_name] = header
        used_headers.add(header)

    logger.debug(f"Suggested mapping for {len(headers)} headers: {suggestion}")
    return suggestion
