"""Client for the vehicle registry (NHTSA vPIC).

Wraps httpx with retry on transport errors, VIN validation ahead of any
network call, and a self-limiting decode cache owned by the client.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Any
from urllib.parse import quote

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from intake.config import settings
from intake.exceptions import InvalidIdentifierError, RegistryError

from .cache import DecodeCache
from .clock import Clock
from .vin import clean_vin, is_valid_vin

logger = logging.getLogger(__name__)


@dataclass
class DecodedVehicle:
    """The subset of decoded attributes the pipeline uses.

    Fields are None when the registry did not return a value, which is
    distinct from any literal string the registry may return.
    """
    make: str | None = None
    model: str | None = None
    year: int | None = None
    trim: str | None = None
    body_style: str | None = None
    engine: str | None = None
    transmission: str | None = None

    @classmethod
    def from_attributes(cls, attributes: dict[str, str]) -> DecodedVehicle:
        def text(key: str) -> str | None:
            value = (attributes.get(key) or "").strip()
            return value or None

        year_text = text("Model Year")
        return cls(
            make=text("Make"),
            model=text("Model"),
            year=int(year_text) if year_text and year_text.isdigit() else None,
            trim=text("Trim"),
            body_style=text("Body Class"),
            engine=text("Engine Configuration"),
            transmission=text("Transmission Style"),
        )


class RegistryClient:
    """Async client for VIN decoding and registry reference data.

    Args:
        base_url: Registry API root (defaults to REGISTRY_BASE_URL)
        timeout: Request timeout in seconds
        max_attempts: Attempts per call on transport errors
        retry_wait: Exponential backoff multiplier in seconds
        cache: Decode cache; a fresh one is built from settings if None
        clock: Clock for the default cache
        transport: Optional httpx transport (tests inject a MockTransport)
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_wait: float | None = None,
        cache: DecodeCache | None = None,
        clock: Clock | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or settings.registry.base_url
        self.max_attempts = max_attempts or settings.registry.max_attempts
        self.retry_wait = settings.registry.retry_wait_seconds if retry_wait is None else retry_wait
        if cache is None:
            cache = DecodeCache(
                max_entries=settings.registry.cache_max_entries,
                sweep_interval=timedelta(seconds=settings.registry.cache_sweep_interval_seconds),
                clock=clock,
            )
        self.cache = cache
        self.request_count = 0
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout or settings.registry.timeout_seconds),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> RegistryClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def _get_results(self, path: str) -> list[dict[str, Any]]:
        """GET a registry endpoint and return its ``Results`` array.

        Raises:
            RegistryError: On transport failure, non-2xx status or bad payload
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_wait, max=10),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    self.request_count += 1
                    response = await self._http.get(path, params={"format": "json"})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Registry API error for {path}: {e.response.status_code}")
            raise RegistryError(f"Registry API error: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"Registry connection error for {path}: {e}")
            raise RegistryError(f"Registry unreachable: {e}") from e
        except ValueError as e:
            raise RegistryError(f"Invalid JSON from registry: {e}") from e

        results = data.get("Results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise RegistryError("Invalid response format from registry")
        return results

    async def decode_identifier(self, vin: str) -> dict[str, str]:
        """Decode a VIN into a flat attribute mapping.

        Args:
            vin: Vehicle identification number

        Returns:
            Mapping of registry variable name (e.g. "Make", "Model Year") to value

        Raises:
            InvalidIdentifierError: If the VIN is malformed (no request is made)
            RegistryError: If the registry call fails
        """
        cleaned = clean_vin(vin)
        if not is_valid_vin(cleaned):
            raise InvalidIdentifierError(vin)

        self.cache.sweep()

        cached = self.cache.get(cleaned)
        if cached is not None:
            logger.debug(f"VIN decode cache hit: {cleaned}")
            return cached

        results = await self._get_results(f"/vehicles/decodevin/{cleaned}")

        attributes: dict[str, str] = {}
        for item in results:
            variable = item.get("Variable")
            value = item.get("Value")
            if variable and value not in (None, ""):
                attributes[variable] = str(value)

        self.cache.put(cleaned, attributes)
        logger.debug(f"Decoded VIN {cleaned}: {len(attributes)} attributes")
        return dict(attributes)

    async def get_vehicle_info(self, vin: str) -> DecodedVehicle:
        """Decode a VIN and extract the fields used for enrichment."""
        return DecodedVehicle.from_attributes(await self.decode_identifier(vin))

    async def fetch_all_makes(self) -> list[dict[str, Any]]:
        """Fetch the full make list (``Make_ID``, ``Make_Name``)."""
        return await self._get_results("/vehicles/getallmakes")

    async def fetch_models_for_make(self, make_name: str) -> list[dict[str, Any]]:
        """Fetch models for a make (``Model_ID``, ``Model_Name``)."""
        return await self._get_results(f"/vehicles/getmodelsformake/{quote(make_name, safe='')}")


@lru_cache(maxsize=1)
def get_registry_client() -> RegistryClient:
    """Process-wide registry client (and therefore decode cache)."""
    logger.info(f"Initializing registry client for {settings.registry.base_url}")
    return RegistryClient()
