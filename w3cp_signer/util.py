"""
Utility functions for the W3CP signer.

Provides hex encoding, time, and masking helpers shared by the pipeline,
the ledger adapter, and the logging layer.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union


def now_epoch() -> int:
    """Get current Unix timestamp as integer."""
    return int(time.time())


def utc_iso_millis(dt: Optional[datetime] = None) -> str:
    """
    Render a UTC timestamp as ISO-8601 with millisecond precision.

    Matches the ``Date.toISOString()`` shape used by existing lift clients,
    e.g. ``2025-01-15T12:00:00.000Z``.
    """
    if dt is None:
        dt = datetime.now(timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_hex(value: Union[bytes, bytearray, str, None]) -> Optional[str]:
    """Normalize bytes or a hex string to a ``0x``-prefixed lowercase hex string."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    value = str(value)
    if not value.startswith("0x"):
        value = "0x" + value
    return value.lower()


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Useful for logging.
    """
    if len(value) <= visible_chars:
        return '*' * len(value)
    return '*' * (len(value) - visible_chars) + value[-visible_chars:]
