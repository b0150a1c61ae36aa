"""Runlist ingestion orchestration.

Sequences parsing, column mapping, registry enrichment, persistence and
matching for one uploaded batch. The runlist row tracks the batch state:

    UPLOADED -> MAPPED -> ENRICHED -> PERSISTED -> MATCHED -> PROCESSED

with MAPPING_REQUIRED (halt until a mapping is supplied) and FAILED
(file-level failure, stage and cause recorded) as the other outcomes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Mapping

from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from registry.vin_client import RegistryClient, get_registry_client

from .. import models
from ..config import settings
from ..exceptions import (
    BinaryFileError,
    IngestionError,
    NotFoundError,
    PersistenceError,
    RowValidationError,
    ValidationError,
)
from ..parsers import ParsedRunlist, parse_runlist
from .column_mapping import (
    VehicleDraft,
    canonicalize_mapping,
    fit_to_columns,
    guess_record,
    map_record,
    suggest_mapping,
)
from .enrichment import EnrichmentStatus, enrich_draft
from .matching import InspectionTaskSink, TaskSink, match_runlist

logger = logging.getLogger(__name__)


class BatchState(str, Enum):
    """Runlist batch states."""
    UPLOADED = "UPLOADED"
    MAPPING_REQUIRED = "MAPPING_REQUIRED"
    MAPPED = "MAPPED"
    ENRICHED = "ENRICHED"
    PERSISTED = "PERSISTED"
    MATCHED = "MATCHED"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


@dataclass
class SkippedRow:
    row_number: int
    reason: str


@dataclass
class IngestionOutcome:
    """Summary returned to the uploader."""
    runlist_id: int
    state: BatchState
    needs_mapping: bool = False
    columns: list[str] = field(default_factory=list)
    sample_record: dict[str, str] | None = None
    suggested_mapping: dict[str, str] | None = None
    row_count: int = 0
    vehicles_created: int = 0
    rows_skipped: int = 0
    enrichment_failures: int = 0
    vehicles_matched: int = 0
    match_count: int = 0
    work_items_created: int = 0
    work_items_failed: int = 0
    skipped_rows: list[SkippedRow] = field(default_factory=list)


async def get_column_mapping(session: AsyncSession, auction_id: int) -> models.ColumnMapping | None:
    """Most recent column mapping saved for an auction."""
    result = await session.execute(
        select(models.ColumnMapping)
        .where(models.ColumnMapping.auction_id == auction_id)
        .order_by(models.ColumnMapping.id.desc())
        .limit(1)
    )
    return result.scalars().first()


async def save_column_mapping(
    session: AsyncSession,
    auction_id: int,
    mapping: Mapping[str, str],
    *,
    name: str | None = None,
) -> models.ColumnMapping:
    """Create or replace the column mapping for an auction."""
    canonical = canonicalize_mapping(mapping)
    existing = await get_column_mapping(session, auction_id)
    if existing is not None:
        existing.mapping = canonical
        if name:
            existing.name = name
        await session.flush()
        return existing

    column_mapping = models.ColumnMapping(
        auction_id=auction_id,
        name=name or f"Auction {auction_id} mapping",
        mapping=canonical,
    )
    session.add(column_mapping)
    await session.flush()
    return column_mapping


async def persist_drafts(session: AsyncSession, runlist_id: int, drafts: list[VehicleDraft]) -> int:
    """Insert all drafts in one bulk statement.

    Raises:
        PersistenceError: If the insert fails
    """
    if not drafts:
        return 0
    try:
        await session.execute(insert(models.Vehicle), [d.to_row(runlist_id) for d in drafts])
        await session.flush()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to insert {len(drafts)} vehicles: {e}") from e
    return len(drafts)


async def _set_state(session: AsyncSession, runlist: models.Runlist, state: BatchState) -> None:
    runlist.state = state.value
    await session.commit()
    logger.debug(f"Runlist {runlist.id} -> {state.value}")


async def _fail(
    session: AsyncSession,
    runlist: models.Runlist,
    stage: str,
    cause: Exception,
) -> IngestionError:
    """Roll back partial work, record the failure and build the error to raise."""
    await session.rollback()
    await session.refresh(runlist)
    runlist.state = BatchState.FAILED.value
    runlist.failed_stage = stage
    runlist.error = str(cause)
    await session.commit()
    logger.error(f"Runlist {runlist.id} failed at {stage}: {cause}")
    return IngestionError(stage, cause, runlist_id=runlist.id)


def _mapping_required(runlist: models.Runlist, parsed: ParsedRunlist) -> IngestionOutcome:
    return IngestionOutcome(
        runlist_id=runlist.id,
        state=BatchState.MAPPING_REQUIRED,
        needs_mapping=True,
        columns=parsed.columns,
        sample_record=parsed.sample_record,
        suggested_mapping=suggest_mapping(parsed.columns),
        row_count=len(parsed.records),
    )


async def ingest_runlist(
    session: AsyncSession,
    *,
    content: bytes,
    filename: str,
    auction_id: int,
    inspection_date: date | None,
    inspector_id: int | None = None,
    mapping: Mapping[str, str] | None = None,
    registry: RegistryClient | None = None,
    task_sink: TaskSink | None = None,
) -> IngestionOutcome:
    """Run one uploaded runlist through the whole pipeline.

    Args:
        session: Database session
        content: Raw uploaded file bytes
        filename: Original filename
        auction_id: Auction the runlist belongs to
        inspection_date: Date inspections are scheduled for
        inspector_id: Inspector assigned to generated inspections
        mapping: Column mapping supplied with the upload; saved for the auction
        registry: Registry client (default: process-wide client)
        task_sink: Receiver of work items (default: InspectionTaskSink)

    Returns:
        IngestionOutcome; state MAPPING_REQUIRED carries a sample row

    Raises:
        NotFoundError: If the auction does not exist
        ValidationError: If the supplied mapping is unusable
        IngestionError: If the batch failed; the runlist is marked FAILED
    """
    auction = await session.get(models.Auction, auction_id)
    if auction is None:
        raise NotFoundError(f"Auction {auction_id} not found")

    if mapping is not None:
        canonical = canonicalize_mapping(mapping)
        if not canonical:
            raise ValidationError("Column mapping does not name any known field")
        if auction.requires_vin and "vin" not in canonical:
            raise ValidationError("Column mapping must include a VIN column")

    registry = registry or get_registry_client()
    task_sink = task_sink or InspectionTaskSink(session)

    runlist = models.Runlist(
        auction_id=auction_id,
        filename=filename,
        inspection_date=inspection_date,
        inspector_id=inspector_id,
        state=BatchState.UPLOADED.value,
    )
    session.add(runlist)
    await session.commit()
    logger.info(f"Runlist {runlist.id} uploaded: {filename} for auction {auction_id}")

    # UPLOADED: reject binary files, then parse the whole file
    try:
        parsed = parse_runlist(content, filename)
    except BinaryFileError as e:
        raise await _fail(session, runlist, "upload", e)
    except ValidationError as e:
        raise await _fail(session, runlist, "parse", e)

    runlist.row_count = len(parsed.records)

    # UPLOADED -> MAPPED
    if mapping:
        column_mapping = await save_column_mapping(session, auction_id, mapping)
    else:
        column_mapping = await get_column_mapping(session, auction_id)

    if column_mapping is None and not settings.ingestion.heuristic_fallback:
        await _set_state(session, runlist, BatchState.MAPPING_REQUIRED)
        logger.info(f"Runlist {runlist.id}: no column mapping for auction {auction_id}")
        return _mapping_required(runlist, parsed)

    active_mapping: dict[str, str] | None = dict(column_mapping.mapping) if column_mapping else None
    if active_mapping:
        missing = sorted(set(active_mapping.values()) - set(parsed.columns))
        if missing:
            logger.warning(f"Runlist {runlist.id}: mapped columns not in file: {missing}")
    else:
        logger.info(f"Runlist {runlist.id}: no column mapping, guessing VIN/lane/run headers")
    await _set_state(session, runlist, BatchState.MAPPED)

    outcome = IngestionOutcome(runlist_id=runlist.id, state=BatchState.MAPPED, row_count=len(parsed.records))

    # MAPPED -> ENRICHED: row by row, sequentially
    drafts: list[VehicleDraft] = []
    try:
        for row_number, record in enumerate(parsed.records, start=1):
            try:
                if active_mapping:
                    draft = map_record(
                        record,
                        active_mapping,
                        require_vin=auction.requires_vin,
                        run_format=auction.run_format,
                        row_number=row_number,
                    )
                else:
                    draft = guess_record(
                        record,
                        require_vin=auction.requires_vin,
                        run_format=auction.run_format,
                        row_number=row_number,
                    )
            except RowValidationError as e:
                logger.warning(f"Runlist {runlist.id}: skipping row {row_number}: {e}")
                outcome.skipped_rows.append(SkippedRow(row_number, str(e)))
                continue

            if await enrich_draft(draft, registry) == EnrichmentStatus.FAILED:
                outcome.enrichment_failures += 1
            fit_to_columns(draft)

            for note in draft.notes:
                logger.warning(f"Runlist {runlist.id}, row {row_number}: {note}")
            drafts.append(draft)

        outcome.rows_skipped = len(outcome.skipped_rows)
        runlist.skipped_count = outcome.rows_skipped
        runlist.enrichment_failures = outcome.enrichment_failures
        await _set_state(session, runlist, BatchState.ENRICHED)
    except Exception as e:
        raise await _fail(session, runlist, "enrich", e)

    # ENRICHED -> PERSISTED: all or nothing
    try:
        outcome.vehicles_created = await persist_drafts(session, runlist.id, drafts)
        runlist.vehicle_count = outcome.vehicles_created
        await _set_state(session, runlist, BatchState.PERSISTED)
    except PersistenceError as e:
        raise await _fail(session, runlist, "persist", e)
    except Exception as e:
        raise await _fail(session, runlist, "persist", PersistenceError(f"Failed to persist vehicles: {e}"))

    # PERSISTED -> MATCHED
    try:
        summary = await match_runlist(session, runlist, task_sink=task_sink)

        outcome.vehicles_matched = summary.vehicles_matched
        outcome.match_count = summary.match_count
        outcome.work_items_created = summary.work_items_created
        outcome.work_items_failed = summary.work_items_failed
        runlist.match_count = summary.match_count
        runlist.work_item_count = summary.work_items_created
        await _set_state(session, runlist, BatchState.MATCHED)
    except SQLAlchemyError as e:
        raise await _fail(session, runlist, "match", PersistenceError(f"Matching failed: {e}"))
    except Exception as e:
        raise await _fail(session, runlist, "match", e)

    await _set_state(session, runlist, BatchState.PROCESSED)
    outcome.state = BatchState.PROCESSED

    logger.info(
        f"Runlist {runlist.id} processed: {outcome.vehicles_created} vehicles from {outcome.row_count} rows, "
        f"{outcome.rows_skipped} skipped, {outcome.enrichment_failures} enrichment failures, "
        f"{outcome.match_count} matches"
    )
    return outcome


def outcome_to_dict(outcome: IngestionOutcome) -> dict[str, Any]:
    """Plain dict view of an outcome, for logging and API responses."""
    return {
        "runlist_id": outcome.runlist_id,
        "state": outcome.state.value,
        "needs_mapping": outcome.needs_mapping,
        "columns": outcome.columns,
        "sample_record": outcome.sample_record,
        "suggested_mapping": outcome.suggested_mapping,
        "row_count": outcome.row_count,
        "vehicles_created": outcome.vehicles_created,
        "rows_skipped": outcome.rows_skipped,
        "enrichment_failures": outcome.enrichment_failures,
        "vehicles_matched": outcome.vehicles_matched,
        "match_count": outcome.match_count,
        "work_items_created": outcome.work_items_created,
        "work_items_failed": outcome.work_items_failed,
        "skipped_rows": [{"row_number": s.row_number, "reason": s.reason} for s in outcome.skipped_rows],
    }
