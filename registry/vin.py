"""VIN format helpers."""
from __future__ import annotations

import re

# 17 characters, letters I, O and Q excluded
VIN_PATTERN = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")


def clean_vin(value: str | None) -> str | None:
    """Strip whitespace and upper-case a VIN candidate; blank becomes None."""
    if value is None:
        return None
    cleaned = str(value).strip().upper()
    return cleaned or None


def is_valid_vin(vin: str | None) -> bool:
    """Check that a VIN is correctly formatted.

    Validation is applied to the value as given; callers that accept user
    input should pass it through ``clean_vin`` first.
    """
    return bool(vin) and VIN_PATTERN.match(vin) is not None
