"""Runlist file parsing utilities.

Runlists arrive as delimited text. Content is inspected for control bytes
first so spreadsheets and other binary uploads are rejected before pandas
sees them, then the whole file is parsed in memory.
"""
from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field

import pandas as pd

from .config import settings
from .exceptions import BinaryFileError, ParseError

logger = logging.getLogger(__name__)

# Control characters other than tab, LF and CR
_BINARY_PATTERN = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")


@dataclass
class ParsedRunlist:
    """Result of runlist parsing."""
    filename: str
    columns: list[str]
    records: list[dict[str, str]]
    metadata: dict[str, object] = field(default_factory=dict)

    @property
    def sample_record(self) -> dict[str, str] | None:
        return self.records[0] if self.records else None


def is_binary_content(content: bytes, sample_size: int | None = None) -> bool:
    """Detect binary content with a control-byte heuristic.

    Args:
        content: Raw file bytes
        sample_size: Number of leading characters to inspect

    Returns:
        True if the sample contains control bytes typical of binary formats
    """
    sample_size = sample_size or settings.ingestion.binary_sample_size
    sample = content[: sample_size * 4].decode("utf-8", errors="replace")[:sample_size]
    return bool(_BINARY_PATTERN.search(sample))


def _clean(value: object) -> str:
    if value is None or pd.isna(value):
        return ""
    return str(value).strip()


def parse_csv(content: bytes, filename: str) -> ParsedRunlist:
    """Parse CSV bytes into string-valued records.

    All values stay strings; typing happens in the column mapper. A row with
    more fields than the header fails the whole file.

    Args:
        content: File content
        filename: Original filename

    Returns:
        ParsedRunlist with one dict per non-empty row

    Raises:
        ParseError: If CSV parsing fails or the file holds no rows
    """
    try:
        df = pd.read_csv(
            io.BytesIO(content),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            skipinitialspace=True,
            encoding=settings.ingestion.encoding,
            quoting=csv.QUOTE_MINIMAL,
        )
    except pd.errors.EmptyDataError as e:
        raise ParseError("No valid records found in the CSV file") from e
    except (pd.errors.ParserError, UnicodeDecodeError, ValueError) as e:
        logger.error(f"CSV parsing failed for {filename}: {e}")
        raise ParseError(f"Failed to parse CSV: {e}") from e

    df.columns = [_clean(c) for c in df.columns]
    df = df.map(_clean)

    # Drop rows where every cell is blank
    df = df[(df != "").any(axis=1)]

    if df.empty:
        raise ParseError("No valid records found in the CSV file")

    logger.info(f"Parsed CSV {filename} with {len(df)} rows and {len(df.columns)} columns")

    return ParsedRunlist(
        filename=filename,
        columns=list(df.columns),
        records=df.to_dict("records"),
        metadata={"row_count": len(df), "column_count": len(df.columns)},
    )


def parse_runlist(content: bytes, filename: str) -> ParsedRunlist:
    """Parse an uploaded runlist file.

    Raises:
        BinaryFileError: If the content looks binary (e.g. an Excel workbook)
        ParseError: If the text content cannot be parsed
    """
    if is_binary_content(content):
        logger.warning(f"Rejected binary upload: {filename}")
        raise BinaryFileError(
            "Excel or binary files are not supported. Please convert to CSV and try again."
        )
    return parse_csv(content, filename)
