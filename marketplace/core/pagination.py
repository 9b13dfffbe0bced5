"""Opaque cursor encoding for keyset pagination."""

import base64
import binascii
import json
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def encode_cursor(value: datetime) -> str:
    """Wrap a ``created_at`` boundary into an opaque url-safe cursor."""
    payload = json.dumps({"value": value.isoformat()}, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str | None) -> datetime | None:
    """Decode a cursor produced by ``encode_cursor``.

    Malformed cursors decode to ``None`` so the caller falls back to the
    first page instead of failing the request.
    """
    if not cursor:
        return None
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        value = datetime.fromisoformat(payload["value"])
    except (binascii.Error, ValueError, KeyError, TypeError, UnicodeError) as e:
        logger.debug("Ignoring malformed cursor %r: %s", cursor, e)
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value
