"""
Tests for the make/model reference data cache.

Storage is the test database; freshness runs on a manual clock.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from intake import models
from registry.reference import ReferenceDataCache


@pytest.fixture
def reference(registry, clock):
    return ReferenceDataCache(registry, ttl=timedelta(hours=24), clock=clock)


async def _make_names(session):
    result = await session.execute(select(models.VehicleMake.name).order_by(models.VehicleMake.name))
    return list(result.scalars().all())


class TestAllMakes:

    async def test_first_call_fetches_and_stores(self, session, reference, registry_api):
        registry_api.makes = ["HONDA", "TOYOTA"]

        entries = await reference.get_all_makes(session)

        assert [e.name for e in entries] == ["HONDA", "TOYOTA"]
        assert [e.external_id for e in entries] == ["1", "2"]
        assert await _make_names(session) == ["HONDA", "TOYOTA"]
        assert reference.makes_fresh()

    async def test_fresh_reads_are_served_from_storage(self, session, reference, registry_api, clock):
        registry_api.makes = ["HONDA", "TOYOTA"]
        await reference.get_all_makes(session)

        registry_api.makes = ["HONDA", "TOYOTA", "FORD"]
        clock.advance(hours=23)
        entries = await reference.get_all_makes(session)

        assert [e.name for e in entries] == ["HONDA", "TOYOTA"]
        assert len(registry_api.requests) == 1

    async def test_stale_reads_refresh_and_merge_new_names(self, session, reference, registry_api, clock):
        registry_api.makes = ["HONDA"]
        await reference.get_all_makes(session)

        registry_api.makes = ["HONDA", "FORD"]
        clock.advance(hours=24, seconds=1)
        await reference.get_all_makes(session)

        assert len(registry_api.requests) == 2
        assert await _make_names(session) == ["FORD", "HONDA"]

    async def test_merge_is_case_insensitive(self, session, reference, registry_api):
        session.add(models.VehicleMake(name="Honda"))
        await session.commit()
        registry_api.makes = ["HONDA", "TOYOTA"]

        await reference.get_all_makes(session)

        assert await _make_names(session) == ["Honda", "TOYOTA"]

    async def test_registry_failure_falls_back_to_storage(self, session, reference, registry_api):
        session.add(models.VehicleMake(name="Honda", external_id="474"))
        await session.commit()
        registry_api.status_code = 500

        entries = await reference.get_all_makes(session)

        assert [e.name for e in entries] == ["Honda"]
        assert not reference.makes_fresh()


class TestModelsForMake:

    async def test_fetches_models_for_stored_make(self, session, reference, registry_api):
        session.add(models.VehicleMake(name="Honda"))
        await session.commit()
        registry_api.models["HONDA"] = ["Accord", "Civic"]

        entries = await reference.get_models_for_make(session, "HONDA")

        assert [e.name for e in entries] == ["Accord", "Civic"]
        count = await session.scalar(select(func.count()).select_from(models.VehicleMake))
        assert count == 1

    async def test_unknown_make_is_created(self, session, reference, registry_api):
        registry_api.models["SCOUT"] = ["Terra"]

        await reference.get_models_for_make(session, "Scout")

        assert await _make_names(session) == ["Scout"]

    async def test_models_freshness_is_per_make(self, session, reference, registry_api, clock):
        registry_api.models["HONDA"] = ["Accord"]
        registry_api.models["TOYOTA"] = ["Camry"]

        await reference.get_models_for_make(session, "Honda")
        await reference.get_models_for_make(session, "honda")
        await reference.get_models_for_make(session, "Toyota")

        assert len(registry_api.requests) == 2
        assert reference.models_fresh("HONDA")
        clock.advance(days=2)
        assert not reference.models_fresh("Toyota")

    async def test_model_merge_skips_existing_names(self, session, reference, registry_api, clock):
        registry_api.models["HONDA"] = ["Accord"]
        await reference.get_models_for_make(session, "Honda")

        registry_api.models["HONDA"] = ["ACCORD", "Civic"]
        clock.advance(days=1, seconds=1)
        await reference.get_models_for_make(session, "Honda")

        result = await session.execute(select(models.VehicleModel.name).order_by(models.VehicleModel.name))
        assert list(result.scalars().all()) == ["Accord", "Civic"]
