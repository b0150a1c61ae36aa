"""Matching pipeline: persisted runlist vehicles -> buy box items -> work items.

Runs once per batch against a snapshot of the active criteria and of the
auction's alias table. Each (vehicle, criterion) match becomes a WorkItem
handed to a TaskSink; the default sink records a pending inspection.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..config import settings
from ..exceptions import PersistenceError
from ..rules import BuyBoxCriterion, RuleEngine, RuleTrace, VehicleFacts
from .normalization import load_alias_index

logger = logging.getLogger(__name__)


@dataclass
class WorkItem:
    """Downstream task for one (vehicle, criterion) match."""
    vehicle_id: int
    criterion_id: int
    dealer_id: int
    runlist_id: int
    scheduled_date: date | None = None
    inspector_id: int | None = None
    notes: str | None = None


class TaskSink(Protocol):
    """Receiver of work items produced by matching."""

    async def submit(self, item: WorkItem) -> None:
        ...


class InspectionTaskSink:
    """Records each work item as a pending Inspection row.

    Every item is written inside its own savepoint, so a failing item is
    rolled back without discarding the ones already written.
    """

    def __init__(self, session: AsyncSession, *, status: str | None = None):
        self.session = session
        self.status = status or settings.matching.work_item_status

    async def submit(self, item: WorkItem) -> None:
        try:
            async with self.session.begin_nested():
                self.session.add(
                    models.Inspection(
                        vehicle_id=item.vehicle_id,
                        buy_box_item_id=item.criterion_id,
                        dealer_id=item.dealer_id,
                        runlist_id=item.runlist_id,
                        inspector_id=item.inspector_id,
                        status=self.status,
                        scheduled_date=item.scheduled_date,
                        notes=item.notes,
                    )
                )
                await self.session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to create inspection for vehicle {item.vehicle_id}, "
                f"buy box item {item.criterion_id}: {e}"
            ) from e


@dataclass
class MatchResult:
    """A vehicle and the criteria it satisfied."""
    vehicle_id: int
    criteria: list[BuyBoxCriterion]
    traces: list[RuleTrace] = field(default_factory=list)


@dataclass
class MatchSummary:
    """Counts and results for one matching run."""
    vehicles_evaluated: int = 0
    vehicles_matched: int = 0
    match_count: int = 0
    work_items_created: int = 0
    work_items_failed: int = 0
    results: list[MatchResult] = field(default_factory=list)


async def load_active_criteria(session: AsyncSession, status: str | None = None) -> list[BuyBoxCriterion]:
    """Load the buy box items active right now."""
    status = status or settings.matching.active_status
    result = await session.execute(
        select(models.BuyBoxItem)
        .where(models.BuyBoxItem.status == status)
        .order_by(models.BuyBoxItem.id)
    )
    criteria = [BuyBoxCriterion.from_model(item) for item in result.scalars().all()]
    logger.info(f"Loaded {len(criteria)} active buy box items")
    return criteria


async def load_runlist_vehicles(session: AsyncSession, runlist_id: int) -> list[models.Vehicle]:
    result = await session.execute(
        select(models.Vehicle)
        .where(models.Vehicle.runlist_id == runlist_id)
        .order_by(models.Vehicle.id)
    )
    return list(result.scalars().all())


async def match_runlist(
    session: AsyncSession,
    runlist: models.Runlist,
    *,
    task_sink: TaskSink | None = None,
    engine: RuleEngine | None = None,
) -> MatchSummary:
    """Match every vehicle of a persisted runlist and emit work items.

    Args:
        session: Database session
        runlist: Runlist whose vehicles are already persisted
        task_sink: Receiver of work items (default: InspectionTaskSink)
        engine: Rule engine (default: RuleEngine from settings)

    Returns:
        MatchSummary with per-vehicle results and counts

    Raises:
        SQLAlchemyError: If vehicles, aliases or criteria cannot be loaded
    """
    task_sink = task_sink or InspectionTaskSink(session)
    engine = engine or RuleEngine()

    vehicles = await load_runlist_vehicles(session, runlist.id)
    aliases = await load_alias_index(session, runlist.auction_id)
    criteria = await load_active_criteria(session, engine.active_status)

    summary = MatchSummary()

    for vehicle in vehicles:
        facts = VehicleFacts.from_model(vehicle, aliases.normalize)
        summary.vehicles_evaluated += 1

        matched: list[BuyBoxCriterion] = []
        traces: list[RuleTrace] = []
        for evaluation in engine.evaluate_all(facts, criteria):
            if evaluation.passed:
                matched.append(evaluation.criterion)
                traces.extend(evaluation.traces)

        if not matched:
            continue

        summary.vehicles_matched += 1
        summary.match_count += len(matched)
        summary.results.append(MatchResult(vehicle_id=vehicle.id, criteria=matched, traces=traces))

        for criterion in matched:
            item = WorkItem(
                vehicle_id=vehicle.id,
                criterion_id=criterion.id,
                dealer_id=criterion.dealer_id,
                runlist_id=runlist.id,
                scheduled_date=runlist.inspection_date,
                inspector_id=runlist.inspector_id,
                notes=f"Matched buy box item {criterion.id}: {criterion.make} {criterion.model}",
            )
            try:
                await task_sink.submit(item)
                summary.work_items_created += 1
            except Exception as e:
                # Not retried; the rest of the batch continues
                summary.work_items_failed += 1
                logger.error(f"Work item failed for vehicle {vehicle.id}, buy box item {criterion.id}: {e}")

    logger.info(
        f"Runlist {runlist.id}: {summary.vehicles_matched}/{summary.vehicles_evaluated} vehicles matched, "
        f"{summary.work_items_created} work items created, {summary.work_items_failed} failed"
    )
    return summary
