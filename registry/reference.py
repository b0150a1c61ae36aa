"""Read-through cache for registry reference data (makes, models per make).

Storage is the database; freshness is tracked per key on this object with
an injectable clock. Within the freshness window reads are served from
storage. Otherwise the registry is called, names not yet stored
(case-insensitively) are inserted, and the timestamp is refreshed.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from intake import models
from intake.config import settings
from intake.exceptions import RegistryError

from .clock import Clock, SystemClock
from .vin_client import RegistryClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferenceEntry:
    """A make or model name with the registry's identifier."""
    name: str
    external_id: str | None = None


class ReferenceDataCache:
    """24h read-through cache of makes and models backed by storage."""

    def __init__(
        self,
        client: RegistryClient,
        *,
        ttl: timedelta | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.client = client
        self.ttl = ttl or timedelta(seconds=settings.registry.reference_ttl_seconds)
        self.clock = clock or SystemClock()
        self._makes_fetched_at: datetime | None = None
        self._models_fetched_at: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _is_fresh(self, fetched_at: datetime | None) -> bool:
        return fetched_at is not None and self.clock.now() - fetched_at < self.ttl

    def makes_fresh(self) -> bool:
        with self._lock:
            return self._is_fresh(self._makes_fetched_at)

    def models_fresh(self, make_name: str) -> bool:
        with self._lock:
            return self._is_fresh(self._models_fetched_at.get(make_name.lower()))

    async def get_all_makes(self, session: AsyncSession) -> list[ReferenceEntry]:
        """Return every known make, refreshing from the registry when stale."""
        if self.makes_fresh():
            stored = await self._stored_makes(session)
            if stored:
                return stored

        try:
            results = await self.client.fetch_all_makes()
        except RegistryError as e:
            logger.warning(f"Make list refresh failed, serving stored makes: {e}")
            return await self._stored_makes(session)

        entries = _entries(results, "Make_Name", "Make_ID")
        added = await self._merge_makes(session, entries)
        with self._lock:
            self._makes_fetched_at = self.clock.now()
        logger.info(f"Refreshed make list: {len(entries)} from registry, {added} new")
        return entries

    async def get_models_for_make(self, session: AsyncSession, make_name: str) -> list[ReferenceEntry]:
        """Return known models for a make, refreshing from the registry when stale."""
        make = await self._get_or_create_make(session, make_name)

        if self.models_fresh(make_name):
            stored = await self._stored_models(session, make.id)
            if stored:
                return stored

        try:
            results = await self.client.fetch_models_for_make(make_name)
        except RegistryError as e:
            logger.warning(f"Model list refresh for {make_name} failed, serving stored models: {e}")
            return await self._stored_models(session, make.id)

        entries = _entries(results, "Model_Name", "Model_ID")
        added = await self._merge_models(session, make.id, entries)
        with self._lock:
            self._models_fetched_at[make_name.lower()] = self.clock.now()
        logger.info(f"Refreshed models for {make_name}: {len(entries)} from registry, {added} new")
        return entries

    async def _stored_makes(self, session: AsyncSession) -> list[ReferenceEntry]:
        result = await session.execute(select(models.VehicleMake).order_by(models.VehicleMake.name))
        return [ReferenceEntry(m.name, m.external_id) for m in result.scalars().all()]

    async def _stored_models(self, session: AsyncSession, make_id: int) -> list[ReferenceEntry]:
        result = await session.execute(
            select(models.VehicleModel)
            .where(models.VehicleModel.make_id == make_id)
            .order_by(models.VehicleModel.name)
        )
        return [ReferenceEntry(m.name, m.external_id) for m in result.scalars().all()]

    async def _get_or_create_make(self, session: AsyncSession, make_name: str) -> models.VehicleMake:
        result = await session.execute(
            select(models.VehicleMake).where(func.lower(models.VehicleMake.name) == make_name.lower())
        )
        make = result.scalars().first()
        if make is None:
            make = models.VehicleMake(name=make_name)
            session.add(make)
            await session.flush()
        return make

    async def _merge_makes(self, session: AsyncSession, entries: list[ReferenceEntry]) -> int:
        result = await session.execute(select(models.VehicleMake.name))
        existing = {name.lower() for name in result.scalars().all()}

        added = 0
        for entry in entries:
            key = entry.name.lower()
            if key in existing:
                continue
            existing.add(key)
            session.add(models.VehicleMake(name=entry.name, external_id=entry.external_id))
            added += 1

        await session.commit()
        return added

    async def _merge_models(self, session: AsyncSession, make_id: int, entries: list[ReferenceEntry]) -> int:
        result = await session.execute(
            select(models.VehicleModel.name).where(models.VehicleModel.make_id == make_id)
        )
        existing = {name.lower() for name in result.scalars().all()}

        added = 0
        for entry in entries:
            key = entry.name.lower()
            if key in existing:
                continue
            existing.add(key)
            session.add(models.VehicleModel(make_id=make_id, name=entry.name, external_id=entry.external_id))
            added += 1

        await session.commit()
        return added


def _entries(results: list[dict[str, Any]], name_key: str, id_key: str) -> list[ReferenceEntry]:
    entries = []
    for item in results:
        name = (str(item.get(name_key) or "")).strip()
        if not name:
            continue
        external_id = item.get(id_key)
        entries.append(ReferenceEntry(name, str(external_id) if external_id is not None else None))
    return entries
