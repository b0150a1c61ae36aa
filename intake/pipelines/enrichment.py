"""Best-effort enrichment of vehicle drafts from the registry."""
from __future__ import annotations

import logging
from enum import Enum

from registry.vin_client import DecodedVehicle, RegistryClient

from ..exceptions import ExternalServiceError, InvalidIdentifierError
from .column_mapping import VehicleDraft

logger = logging.getLogger(__name__)


class EnrichmentStatus(str, Enum):
    ENRICHED = "enriched"
    SKIPPED = "skipped"  # no VIN to decode
    FAILED = "failed"


def apply_decoded(draft: VehicleDraft, decoded: DecodedVehicle) -> VehicleDraft:
    """Overwrite draft fields with registry values that are present.

    Make and model are replaced together or not at all, so a draft never
    ends up with a registry make paired with a file model.
    """
    if decoded.make and decoded.model:
        draft.make = decoded.make
        draft.model = decoded.model
    if decoded.year is not None:
        draft.year = decoded.year
    if decoded.body_style:
        draft.body_type = decoded.body_style
    if decoded.trim:
        draft.trim = decoded.trim
    if decoded.engine:
        draft.engine = decoded.engine
    if decoded.transmission:
        draft.transmission = decoded.transmission
    return draft


async def enrich_draft(draft: VehicleDraft, registry: RegistryClient) -> EnrichmentStatus:
    """Decode the draft's VIN and merge the result into it.

    Registry failures never propagate: the draft keeps its mapped values.
    """
    if not draft.vin:
        return EnrichmentStatus.SKIPPED

    try:
        decoded = await registry.get_vehicle_info(draft.vin)
    except (ExternalServiceError, InvalidIdentifierError) as e:
        logger.warning(f"VIN enrichment failed for {draft.vin}: {e}")
        draft.notes.append(f"enrichment failed: {e}")
        return EnrichmentStatus.FAILED

    apply_decoded(draft, decoded)
    return EnrichmentStatus.ENRICHED
