"""
Tests for the runlist ingestion orchestrator.

Each test runs a whole upload against the in-memory database and the fake
registry API from conftest.
"""

from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy import func, select

from intake import models
from intake.config import settings
from intake.exceptions import IngestionError, NotFoundError, PersistenceError, ValidationError
from intake.pipelines import ingest as ingest_module
from intake.pipelines.ingest import BatchState, ingest_runlist
from intake.pipelines.matching import InspectionTaskSink, WorkItem

HONDA_VIN = "1HGCM82633A004352"
CHEVY_VIN = "1GCUYDED5LZ123456"
INSPECTION_DATE = date(2024, 6, 3)

FULL_MAPPING = {
    "vin": "VIN",
    "make": "Make",
    "model": "Model",
    "year": "Year",
    "mileage": "Miles",
    "lane_number": "Lane",
    "run_number": "Run",
}


async def _vehicles(session, runlist_id):
    result = await session.execute(
        select(models.Vehicle).where(models.Vehicle.runlist_id == runlist_id).order_by(models.Vehicle.id)
    )
    return list(result.scalars().all())


async def _count(session, model):
    return await session.scalar(select(func.count()).select_from(model))


async def _ingest(session, auction, registry, content, **kwargs):
    return await ingest_runlist(
        session,
        content=content,
        filename="runlist.csv",
        auction_id=auction.id,
        inspection_date=INSPECTION_DATE,
        registry=registry,
        **kwargs,
    )


class TestMappingRequired:

    async def test_upload_without_mapping_halts_with_sample(self, session, auction, registry):
        content = b"VIN,Lane,Run\n1HGCM82633A004352,5,12\n1GCUYDED5LZ123456,5,13\n"

        outcome = await _ingest(session, auction, registry, content)

        assert outcome.state == BatchState.MAPPING_REQUIRED
        assert outcome.needs_mapping
        assert outcome.sample_record == {"VIN": HONDA_VIN, "Lane": "5", "Run": "12"}
        assert outcome.columns == ["VIN", "Lane", "Run"]
        assert outcome.suggested_mapping == {"vin": "VIN", "lane_number": "Lane", "run_number": "Run"}
        assert await _count(session, models.Vehicle) == 0

        runlist = await session.get(models.Runlist, outcome.runlist_id)
        assert runlist.state == BatchState.MAPPING_REQUIRED.value
        assert runlist.row_count == 2

    async def test_supplied_mapping_is_saved_and_reused(self, session, auction, registry):
        content = b"VIN,Make,Model,Year,Miles,Lane,Run\n1GCUYDED5LZ123456,Chevy,Silverado,2020,,7,1\n"

        first = await _ingest(session, auction, registry, content, mapping=FULL_MAPPING)
        second = await _ingest(session, auction, registry, content)

        assert first.state == BatchState.PROCESSED
        assert second.state == BatchState.PROCESSED
        assert second.vehicles_created == 1

        saved = (await session.execute(select(models.ColumnMapping))).scalars().all()
        assert len(saved) == 1
        assert saved[0].mapping == FULL_MAPPING

    async def test_mapping_without_vin_is_rejected_before_upload(self, session, auction, registry):
        with pytest.raises(ValidationError, match="VIN"):
            await _ingest(session, auction, registry, b"VIN\nX\n", mapping={"make": "Make"})
        assert await _count(session, models.Runlist) == 0

    async def test_unknown_auction(self, session, registry):
        with pytest.raises(NotFoundError):
            await ingest_runlist(
                session,
                content=b"VIN\n",
                filename="runlist.csv",
                auction_id=999,
                inspection_date=INSPECTION_DATE,
                registry=registry,
            )


class TestHeuristicMode:

    async def test_unmapped_row_takes_make_from_registry(self, session, auction, registry, monkeypatch):
        monkeypatch.setattr(settings.ingestion, "heuristic_fallback", True)
        content = b"Vin,Lane,Run,Make\n1HGCM82633A004352,5,12,Hnda\n"

        outcome = await _ingest(session, auction, registry, content)

        assert outcome.state == BatchState.PROCESSED
        [vehicle] = await _vehicles(session, outcome.runlist_id)
        assert vehicle.make == "HONDA"
        assert vehicle.model == "Accord"
        assert vehicle.year == 2003
        assert (vehicle.lane_number, vehicle.run_number) == ("5", "12")
        assert vehicle.raw_data["Make"] == "Hnda"

    async def test_unresolved_make_stays_none(self, session, auction, registry, monkeypatch):
        monkeypatch.setattr(settings.ingestion, "heuristic_fallback", True)
        content = b"VIN,Lane\n1GCUYDED5LZ123456,5\n"

        outcome = await _ingest(session, auction, registry, content)

        [vehicle] = await _vehicles(session, outcome.runlist_id)
        assert vehicle.make is None
        assert vehicle.model is None


class TestRowHandling:

    async def test_rows_failing_validation_are_skipped(self, session, auction, registry):
        content = (
            b"VIN,Make,Model,Year,Miles,Lane,Run\n"
            b"1HGCM82633A004352,Honda,Accord,2003,120000,1,1\n"
            b",Ford,F-150,2019,,1,2\n"
            b"1HGCM82633A00435O,Ford,F-150,2019,,1,3\n"
        )

        outcome = await _ingest(session, auction, registry, content, mapping=FULL_MAPPING)

        assert outcome.row_count == 3
        assert outcome.vehicles_created == 1
        assert outcome.rows_skipped == 2
        assert [s.row_number for s in outcome.skipped_rows] == [2, 3]

        runlist = await session.get(models.Runlist, outcome.runlist_id)
        assert runlist.skipped_count == 2
        assert runlist.vehicle_count == 1

    async def test_invalid_vin_dropped_when_not_required(self, session, auction, registry):
        auction.requires_vin = False
        await session.commit()
        content = b"VIN,Make,Model,Year,Miles,Lane,Run\nBADVIN,Ford,F-150,2019,,1,2\n"

        outcome = await _ingest(session, auction, registry, content, mapping=FULL_MAPPING)

        [vehicle] = await _vehicles(session, outcome.runlist_id)
        assert vehicle.vin is None
        assert vehicle.make == "Ford"
        assert registry.request_count == 0

    async def test_registry_values_override_mapped_values(self, session, auction, registry):
        content = b"VIN,Make,Model,Year,Miles,Lane,Run\n1HGCM82633A004352,Hnda,Acord,2004,98000,1,1\n"

        outcome = await _ingest(session, auction, registry, content, mapping=FULL_MAPPING)

        [vehicle] = await _vehicles(session, outcome.runlist_id)
        assert (vehicle.make, vehicle.model, vehicle.year) == ("HONDA", "Accord", 2003)
        assert vehicle.mileage == 98000
        assert vehicle.trim == "EX-V6"
        assert vehicle.body_type == "Coupe"

    async def test_enrichment_failure_keeps_mapped_values(self, session, auction, registry, registry_api):
        registry_api.status_code = 503
        content = b"VIN,Make,Model,Year,Miles,Lane,Run\n1HGCM82633A004352,Honda,Accord,2003,,1,1\n"

        outcome = await _ingest(session, auction, registry, content, mapping=FULL_MAPPING)

        assert outcome.state == BatchState.PROCESSED
        assert outcome.enrichment_failures == 1
        [vehicle] = await _vehicles(session, outcome.runlist_id)
        assert (vehicle.make, vehicle.model) == ("Honda", "Accord")

    async def test_out_of_range_values_do_not_sink_the_batch(self, session, auction, registry):
        content = (
            b"VIN,Make,Model,Year,Miles,Lane,Run\n"
            b"1HGCM82633A004352,Honda,Accord,2003,120000,1,1\n"
            b"1GCUYDED5LZ123456,Chevy,Silverado,2020,99999999999999999999,LANE-NAME-LONGER-THAN-TWENTY,2\n"
        )

        outcome = await _ingest(session, auction, registry, content, mapping=FULL_MAPPING)

        assert outcome.state == BatchState.PROCESSED
        assert outcome.vehicles_created == 2
        assert outcome.rows_skipped == 0
        honda, chevy = await _vehicles(session, outcome.runlist_id)
        assert honda.mileage == 120000
        assert chevy.mileage is None
        assert chevy.lane_number == "LANE-NAME-LONGER-THA"
        assert chevy.raw_data["Miles"] == "99999999999999999999"

    async def test_combined_run_format(self, session, auction, registry):
        auction.run_format = "combined"
        await session.commit()
        content = b"VIN,Run\n1HGCM82633A004352,BB-0123\n"

        outcome = await _ingest(session, auction, registry, content, mapping={"vin": "VIN", "run_number": "Run"})

        [vehicle] = await _vehicles(session, outcome.runlist_id)
        assert (vehicle.lane_number, vehicle.run_number) == ("BB", "123")


class TestFailures:

    async def test_binary_upload_fails_at_upload_stage(self, session, auction, registry):
        with pytest.raises(IngestionError) as exc_info:
            await _ingest(session, auction, registry, b"PK\x03\x04\x14\x00\x06\x00", mapping=FULL_MAPPING)

        assert exc_info.value.stage == "upload"
        runlist = await session.get(models.Runlist, exc_info.value.runlist_id)
        assert runlist.state == BatchState.FAILED.value
        assert runlist.failed_stage == "upload"
        assert "convert to CSV" in runlist.error

    async def test_broken_csv_persists_nothing(self, session, auction, registry):
        content = b'VIN,Make,Model,Year,Miles,Lane,Run\n1HGCM82633A004352,Honda,Accord,2003,,1,1\n"broken\n'

        with pytest.raises(IngestionError) as exc_info:
            await _ingest(session, auction, registry, content, mapping=FULL_MAPPING)

        assert exc_info.value.stage == "parse"
        assert await _count(session, models.Vehicle) == 0
        assert registry.request_count == 0

    async def test_persistence_failure_marks_batch_failed(self, session, auction, registry, monkeypatch):
        async def failing_persist(session, runlist_id, drafts):
            raise PersistenceError("disk full")

        monkeypatch.setattr(ingest_module, "persist_drafts", failing_persist)
        content = b"VIN,Make,Model,Year,Miles,Lane,Run\n1HGCM82633A004352,Honda,Accord,2003,,1,1\n"

        with pytest.raises(IngestionError) as exc_info:
            await _ingest(session, auction, registry, content, mapping=FULL_MAPPING)

        assert exc_info.value.stage == "persist"
        assert isinstance(exc_info.value.cause, PersistenceError)
        runlist = await session.get(models.Runlist, exc_info.value.runlist_id)
        assert runlist.state == BatchState.FAILED.value
        assert runlist.error == "disk full"
        assert await _count(session, models.Vehicle) == 0

    async def test_unexpected_insert_error_marks_batch_failed(self, session, auction, registry, monkeypatch):
        async def overflowing_persist(session, runlist_id, drafts):
            raise OverflowError("Python int too large to convert to SQLite INTEGER")

        monkeypatch.setattr(ingest_module, "persist_drafts", overflowing_persist)
        content = b"VIN,Make,Model,Year,Miles,Lane,Run\n1HGCM82633A004352,Honda,Accord,2003,,1,1\n"

        with pytest.raises(IngestionError) as exc_info:
            await _ingest(session, auction, registry, content, mapping=FULL_MAPPING)

        assert exc_info.value.stage == "persist"
        assert isinstance(exc_info.value.cause, PersistenceError)
        runlist = await session.get(models.Runlist, exc_info.value.runlist_id)
        assert runlist.state == BatchState.FAILED.value
        assert runlist.failed_stage == "persist"
        assert "too large" in runlist.error

    async def test_unexpected_enrichment_error_marks_batch_failed(self, session, auction, registry, monkeypatch):
        async def broken_enrich(draft, registry):
            raise RuntimeError("decoder crashed")

        monkeypatch.setattr(ingest_module, "enrich_draft", broken_enrich)
        content = b"VIN,Make,Model,Year,Miles,Lane,Run\n1HGCM82633A004352,Honda,Accord,2003,,1,1\n"

        with pytest.raises(IngestionError) as exc_info:
            await _ingest(session, auction, registry, content, mapping=FULL_MAPPING)

        assert exc_info.value.stage == "enrich"
        runlist = await session.get(models.Runlist, exc_info.value.runlist_id)
        assert runlist.state == BatchState.FAILED.value
        assert runlist.error == "decoder crashed"
        assert await _count(session, models.Vehicle) == 0



@pytest.fixture
async def silverado_box(session, auction):
    session.add_all(
        [
            models.VehicleMakeAlias(alias="Chevy", canonical_make="Chevrolet", auction_id=auction.id),
            models.BuyBoxItem(
                dealer_id=7, make="Chevrolet", model="Silverado", year_min=2018, mileage_max=60000, status="active"
            ),
            models.BuyBoxItem(dealer_id=8, make="Chevrolet", model="Silverado", status="active"),
            models.BuyBoxItem(dealer_id=9, make="Chevrolet", model="Silverado", status="inactive"),
        ]
    )
    await session.commit()


class TestMatching:

    CONTENT = (
        b"VIN,Make,Model,Year,Miles,Lane,Run\n"
        b"1GCUYDED5LZ123456,Chevy,Silverado,2020,,7,1\n"
        b"1HGCM82633A004352,Honda,Accord,2003,,7,2\n"
    )

    async def test_matches_create_pending_inspections(self, session, auction, registry, silverado_box):
        outcome = await _ingest(session, auction, registry, self.CONTENT, mapping=FULL_MAPPING, inspector_id=42)

        assert outcome.state == BatchState.PROCESSED
        assert outcome.vehicles_matched == 1
        assert outcome.match_count == 2
        assert outcome.work_items_created == 2

        result = await session.execute(select(models.Inspection).order_by(models.Inspection.dealer_id))
        inspections = result.scalars().all()
        assert [i.dealer_id for i in inspections] == [7, 8]
        assert all(i.status == "pending" for i in inspections)
        assert all(i.scheduled_date == INSPECTION_DATE for i in inspections)
        assert all(i.inspector_id == 42 for i in inspections)
        assert all(i.runlist_id == outcome.runlist_id for i in inspections)

    async def test_stored_vehicle_keeps_file_make(self, session, auction, registry, silverado_box):
        outcome = await _ingest(session, auction, registry, self.CONTENT, mapping=FULL_MAPPING)

        vehicles = await _vehicles(session, outcome.runlist_id)
        assert vehicles[0].make == "Chevy"

    async def test_sink_failures_are_per_item(self, session, auction, registry, silverado_box):
        class FlakySink:
            def __init__(self):
                self.items: list[WorkItem] = []

            async def submit(self, item: WorkItem) -> None:
                if item.dealer_id == 7:
                    raise RuntimeError("notification service down")
                self.items.append(item)

        sink = FlakySink()
        outcome = await _ingest(session, auction, registry, self.CONTENT, mapping=FULL_MAPPING, task_sink=sink)

        assert outcome.state == BatchState.PROCESSED
        assert outcome.work_items_failed == 1
        assert outcome.work_items_created == 1
        assert [i.dealer_id for i in sink.items] == [8]

    async def test_duplicate_inspection_is_rolled_back_alone(self, session, auction, registry, silverado_box):
        outcome = await _ingest(session, auction, registry, self.CONTENT, mapping=FULL_MAPPING)
        [vehicle, _] = await _vehicles(session, outcome.runlist_id)

        sink = InspectionTaskSink(session)
        items = [
            WorkItem(vehicle_id=vehicle.id, criterion_id=1, dealer_id=7, runlist_id=outcome.runlist_id),
            WorkItem(vehicle_id=vehicle.id, criterion_id=99, dealer_id=7, runlist_id=outcome.runlist_id),
        ]
        with pytest.raises(PersistenceError):
            await sink.submit(items[0])
        await sink.submit(items[1])
        await session.commit()

        assert await _count(session, models.Inspection) == 3
