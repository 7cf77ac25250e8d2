"""Identifier parsing."""
import uuid
from typing import Any, Optional


def coerce_uuid(value: Any) -> Optional[uuid.UUID]:
    """Parse a UUID from a path or payload value; None when malformed."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None
