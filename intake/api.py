"""FastAPI app with health, runlist upload and vehicle data endpoints.

Runlist upload is wired to the full ingestion pipeline; the remaining
endpoints expose the normalization, VIN decoding and reference data
operations the pipeline is built from.
"""
from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import date
from functools import lru_cache

from fastapi import Depends, FastAPI, File, Form, HTTPException, Response, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from registry.reference import ReferenceDataCache
from registry.vin_client import DecodedVehicle, RegistryClient, get_registry_client

from . import models
from .config import settings
from .db import get_session
from .exceptions import (
    ExternalServiceError,
    IngestionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .logging_config import setup_logging
from .pipelines.ingest import BatchState, ingest_runlist, outcome_to_dict
from .pipelines.normalization import normalize_vehicle_make, normalize_vehicle_model

logger = logging.getLogger(__name__)


# Pydantic response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None
    stage: str | None = None


class SkippedRowDTO(BaseModel):
    row_number: int
    reason: str


class UploadRunlistResponse(BaseModel):
    """Runlist upload response."""
    status: str
    runlist_id: int
    state: str
    needs_mapping: bool = False
    columns: list[str] = Field(default_factory=list)
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
    skipped_rows: list[SkippedRowDTO] = Field(default_factory=list)
    message: str


class RunlistSummaryResponse(BaseModel):
    """Stored batch summary."""
    runlist_id: int
    auction_id: int
    filename: str
    state: str
    failed_stage: str | None = None
    error: str | None = None
    inspection_date: date | None = None
    row_count: int
    vehicle_count: int
    skipped_count: int
    enrichment_failures: int
    match_count: int
    work_item_count: int


class NormalizeVehicleRequest(BaseModel):
    """Make/model normalization request."""
    make: str | None = None
    model: str | None = None
    auction_id: int | None = None


class NormalizeVehicleResponse(BaseModel):
    original_make: str | None
    original_model: str | None
    make: str | None
    model: str | None


class DecodedVinResponse(BaseModel):
    """Decoded VIN response."""
    vin: str
    make: str | None = None
    model: str | None = None
    year: int | None = None
    trim: str | None = None
    body_style: str | None = None
    engine: str | None = None
    transmission: str | None = None
    attributes: dict[str, str] = Field(default_factory=dict)


class ReferenceEntryDTO(BaseModel):
    name: str
    external_id: str | None = None


@lru_cache(maxsize=1)
def get_reference_cache() -> ReferenceDataCache:
    """Process-wide make/model reference cache."""
    return ReferenceDataCache(get_registry_client())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info(f"{settings.app_name} v{settings.version} starting up")

    yield

    # Shutdown
    if get_registry_client.cache_info().currsize:
        await get_registry_client().aclose()
    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Vehicle runlist ingestion, enrichment and buy box matching",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, error: str, exc: Exception, stage: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc), stage=stage).model_dump(),
    )


# Exception handlers
@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc: ValidationError):
    """Handle file, row and identifier validation errors."""
    logger.warning(f"Validation error: {exc}")
    return _error(status.HTTP_400_BAD_REQUEST, "validation_error", exc)


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request, exc: NotFoundError):
    return _error(status.HTTP_404_NOT_FOUND, "not_found", exc)


@app.exception_handler(IngestionError)
async def ingestion_error_handler(request, exc: IngestionError):
    """Handle batch failures; the runlist is already marked FAILED."""
    logger.error(f"Ingestion error: {exc}")
    if isinstance(exc.cause, ValidationError):
        return _error(status.HTTP_400_BAD_REQUEST, "ingestion_error", exc.cause, stage=exc.stage)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "ingestion_error", exc.cause, stage=exc.stage)


@app.exception_handler(ExternalServiceError)
async def external_service_error_handler(request, exc: ExternalServiceError):
    """Handle registry failures."""
    logger.error(f"External service error: {exc}")
    return _error(status.HTTP_502_BAD_GATEWAY, "registry_error", exc)


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request, exc: PersistenceError):
    logger.error(f"Persistence error: {exc}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "persistence_error", exc)


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        version=settings.version,
    )


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "upload_runlist": "/runlists/upload",
            "get_runlist": "/runlists/{runlist_id}",
            "normalize_vehicle": "/normalize-vehicle",
            "decode_vin": "/vin/{vin}",
            "makes": "/reference/makes",
            "models": "/reference/makes/{make}/models",
            "docs": "/docs",
        },
    }


@app.post(
    "/runlists/upload",
    response_model=UploadRunlistResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_runlist(
    response: Response,
    file: UploadFile = File(..., description="Runlist CSV file"),
    auction_id: int = Form(...),
    inspection_date: date = Form(...),
    inspector_id: int | None = Form(None),
    mapping: str | None = Form(None, description="Column mapping as a JSON object"),
    session: AsyncSession = Depends(get_session),
    registry: RegistryClient = Depends(get_registry_client),
) -> UploadRunlistResponse:
    """Upload and process a runlist.

    This endpoint:
    1. Rejects binary files and parses the CSV
    2. Maps columns (saving a supplied mapping for the auction)
    3. Decodes VINs against the registry
    4. Persists vehicles
    5. Matches them against active buy box items and creates inspections

    If the auction has no column mapping yet, nothing is processed and the
    response carries ``needs_mapping`` with a sample row and a suggestion.
    """
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required",
        )

    column_mapping = None
    if mapping:
        try:
            column_mapping = json.loads(mapping)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Column mapping is not valid JSON: {e}") from e
        if not isinstance(column_mapping, dict):
            raise ValidationError("Column mapping must be a JSON object")

    logger.info(f"Received runlist upload: {file.filename} for auction {auction_id}")

    try:
        content = await file.read()
        outcome = await ingest_runlist(
            session,
            content=content,
            filename=file.filename,
            auction_id=auction_id,
            inspection_date=inspection_date,
            inspector_id=inspector_id,
            mapping=column_mapping,
            registry=registry,
        )
    finally:
        await file.close()

    if outcome.state == BatchState.MAPPING_REQUIRED:
        response.status_code = status.HTTP_200_OK
        message = "Column mapping required for this auction"
    else:
        message = (
            f"Processed {outcome.vehicles_created} vehicles, "
            f"created {outcome.work_items_created} inspections"
        )

    return UploadRunlistResponse(
        status="mapping_required" if outcome.needs_mapping else "success",
        message=message,
        **outcome_to_dict(outcome),
    )


@app.get("/runlists/{runlist_id}", response_model=RunlistSummaryResponse)
async def get_runlist(
    runlist_id: int,
    session: AsyncSession = Depends(get_session),
) -> RunlistSummaryResponse:
    """Retrieve the stored state and counts of a runlist batch."""
    runlist = await session.get(models.Runlist, runlist_id)
    if runlist is None:
        raise NotFoundError(f"Runlist {runlist_id} not found")

    return RunlistSummaryResponse(
        runlist_id=runlist.id,
        auction_id=runlist.auction_id,
        filename=runlist.filename,
        state=runlist.state,
        failed_stage=runlist.failed_stage,
        error=runlist.error,
        inspection_date=runlist.inspection_date,
        row_count=runlist.row_count,
        vehicle_count=runlist.vehicle_count,
        skipped_count=runlist.skipped_count,
        enrichment_failures=runlist.enrichment_failures,
        match_count=runlist.match_count,
        work_item_count=runlist.work_item_count,
    )


@app.post("/normalize-vehicle", response_model=NormalizeVehicleResponse)
async def normalize_vehicle(
    request: NormalizeVehicleRequest,
    session: AsyncSession = Depends(get_session),
) -> NormalizeVehicleResponse:
    """Resolve a make/model pair through the alias tables."""
    make = await normalize_vehicle_make(session, request.make, request.auction_id)
    model = await normalize_vehicle_model(session, request.make, request.model, request.auction_id)
    return NormalizeVehicleResponse(
        original_make=request.make,
        original_model=request.model,
        make=make,
        model=model,
    )


@app.get("/vin/{vin}", response_model=DecodedVinResponse)
async def decode_vin(
    vin: str,
    registry: RegistryClient = Depends(get_registry_client),
) -> DecodedVinResponse:
    """Decode a VIN against the registry."""
    attributes = await registry.decode_identifier(vin)
    info = DecodedVehicle.from_attributes(attributes)
    return DecodedVinResponse(
        vin=vin.strip().upper(),
        make=info.make,
        model=info.model,
        year=info.year,
        trim=info.trim,
        body_style=info.body_style,
        engine=info.engine,
        transmission=info.transmission,
        attributes=attributes,
    )


@app.get("/reference/makes", response_model=list[ReferenceEntryDTO])
async def list_makes(
    session: AsyncSession = Depends(get_session),
    reference: ReferenceDataCache = Depends(get_reference_cache),
) -> list[ReferenceEntryDTO]:
    """All vehicle makes, refreshed from the registry at most daily."""
    entries = await reference.get_all_makes(session)
    return [ReferenceEntryDTO(name=e.name, external_id=e.external_id) for e in entries]


@app.get("/reference/makes/{make}/models", response_model=list[ReferenceEntryDTO])
async def list_models(
    make: str,
    session: AsyncSession = Depends(get_session),
    reference: ReferenceDataCache = Depends(get_reference_cache),
) -> list[ReferenceEntryDTO]:
    """Models for a make, refreshed from the registry at most daily."""
    entries = await reference.get_models_for_make(session, make)
    return [ReferenceEntryDTO(name=e.name, external_id=e.external_id) for e in entries]
