"""Make/model normalization through administrator-managed aliases.

Lookup order is the same everywhere: an alias scoped to the auction, then
a general alias (auction_id NULL), then the input unchanged. Lookups are
exact string matches and single-hop: a canonical value is never fed back
through the table.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models

logger = logging.getLogger(__name__)


@dataclass
class AliasIndex:
    """In-memory snapshot of the alias rows visible to one auction.

    A batch loads this once so every vehicle in it sees the same table.
    """
    auction_id: int | None = None
    scoped_makes: dict[str, str] = field(default_factory=dict)
    general_makes: dict[str, str] = field(default_factory=dict)
    scoped_models: dict[tuple[str, str], str] = field(default_factory=dict)
    general_models: dict[tuple[str, str], str] = field(default_factory=dict)

    def add_make_alias(self, alias: str, canonical: str, *, scoped: bool = False) -> None:
        target = self.scoped_makes if scoped else self.general_makes
        target.setdefault(alias, canonical)

    def add_model_alias(self, make: str, alias: str, canonical: str, *, scoped: bool = False) -> None:
        target = self.scoped_models if scoped else self.general_models
        target.setdefault((make, alias), canonical)

    def normalize_make(self, make: str | None) -> str | None:
        """Canonical make for ``make``, or ``make`` itself if no alias applies."""
        if not make:
            return make
        if make in self.scoped_makes:
            return self.scoped_makes[make]
        return self.general_makes.get(make, make)

    def normalize_model(self, make: str | None, model: str | None) -> str | None:
        """Canonical model, keyed by the canonical make."""
        if not make or not model:
            return model
        key = (self.normalize_make(make), model)
        if key in self.scoped_models:
            return self.scoped_models[key]
        return self.general_models.get(key, model)

    def normalize(self, make: str | None, model: str | None) -> tuple[str | None, str | None]:
        return self.normalize_make(make), self.normalize_model(make, model)


async def load_alias_index(session: AsyncSession, auction_id: int | None) -> AliasIndex:
    """Load scoped and general alias rows for one auction.

    Args:
        session: Database session
        auction_id: Scope; None loads the general aliases only

    Returns:
        AliasIndex snapshot
    """
    index = AliasIndex(auction_id=auction_id)

    scope_filter = models.VehicleMakeAlias.auction_id.is_(None)
    if auction_id is not None:
        scope_filter = scope_filter | (models.VehicleMakeAlias.auction_id == auction_id)
    result = await session.execute(
        select(models.VehicleMakeAlias).where(scope_filter).order_by(models.VehicleMakeAlias.id)
    )
    for row in result.scalars().all():
        index.add_make_alias(row.alias, row.canonical_make, scoped=row.auction_id is not None)

    scope_filter = models.VehicleModelAlias.auction_id.is_(None)
    if auction_id is not None:
        scope_filter = scope_filter | (models.VehicleModelAlias.auction_id == auction_id)
    result = await session.execute(
        select(models.VehicleModelAlias).where(scope_filter).order_by(models.VehicleModelAlias.id)
    )
    for row in result.scalars().all():
        index.add_model_alias(row.make, row.alias, row.canonical_model, scoped=row.auction_id is not None)

    logger.debug(
        f"Loaded alias index for auction {auction_id}: "
        f"{len(index.scoped_makes) + len(index.general_makes)} make, "
        f"{len(index.scoped_models) + len(index.general_models)} model aliases"
    )
    return index


async def normalize_vehicle_make(
    session: AsyncSession,
    make: str | None,
    auction_id: int | None = None,
) -> str | None:
    """Resolve a make against the alias table with two queries at most."""
    if not make:
        return make

    if auction_id is not None:
        result = await session.execute(
            select(models.VehicleMakeAlias.canonical_make).where(
                models.VehicleMakeAlias.alias == make,
                models.VehicleMakeAlias.auction_id == auction_id,
            ).limit(1)
        )
        canonical = result.scalars().first()
        if canonical is not None:
            return canonical

    result = await session.execute(
        select(models.VehicleMakeAlias.canonical_make).where(
            models.VehicleMakeAlias.alias == make,
            models.VehicleMakeAlias.auction_id.is_(None),
        ).limit(1)
    )
    canonical = result.scalars().first()
    return canonical if canonical is not None else make


async def normalize_vehicle_model(
    session: AsyncSession,
    make: str | None,
    model: str | None,
    auction_id: int | None = None,
) -> str | None:
    """Resolve a model; the make is normalized first and keys the lookup."""
    if not make or not model:
        return model

    canonical_make = await normalize_vehicle_make(session, make, auction_id)

    if auction_id is not None:
        result = await session.execute(
            select(models.VehicleModelAlias.canonical_model).where(
                models.VehicleModelAlias.make == canonical_make,
                models.VehicleModelAlias.alias == model,
                models.VehicleModelAlias.auction_id == auction_id,
            ).limit(1)
        )
        canonical = result.scalars().first()
        if canonical is not None:
            return canonical

    result = await session.execute(
        select(models.VehicleModelAlias.canonical_model).where(
            models.VehicleModelAlias.make == canonical_make,
            models.VehicleModelAlias.alias == model,
            models.VehicleModelAlias.auction_id.is_(None),
        ).limit(1)
    )
    canonical = result.scalars().first()
    return canonical if canonical is not None else model
