"""
Append-only event log.

Events are never updated or deleted. The ``data`` map is stored as JSON
text and only interpreted where it is read (the click heatmap).
"""
import json
import logging
import math
from datetime import datetime
from typing import Any, Optional

from .database import D1Database, to_db_timestamp
from .models import Event

logger = logging.getLogger(__name__)

PAGE_VIEW_NAME = "Page View"


def _finite(value: Any) -> Any:
    """Replace NaN and infinities (accepted by lenient JSON parsers) with None."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {key: _finite(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_finite(item) for item in value]
    return value


class EventStore:
    """Writes to the events table."""

    def __init__(self, db: D1Database):
        self.db = db

    async def append(
        self,
        session_id: str,
        visitor_id: int,
        event_type: str,
        url: Optional[str],
        timestamp: datetime,
        data: Optional[dict[str, Any]] = None,
        event_name: Optional[str] = None,
    ) -> Event:
        """Append one event. ``data`` is stored as-is apart from non-finite numbers, which become null."""
        rows = await self.db.query(
            """
            INSERT INTO events (session_id, visitor_id, type, url, event_name, timestamp, data)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            RETURNING *
            """,
            [
                session_id, visitor_id, event_type, url, event_name,
                to_db_timestamp(timestamp), json.dumps(_finite(data or {}), allow_nan=False),
            ],
        )
        return Event(**rows[0])

    async def append_pageview(
        self, session_id: str, visitor_id: int, url: str, timestamp: datetime
    ) -> Event:
        return await self.append(
            session_id, visitor_id, "pageview", url, timestamp, event_name=PAGE_VIEW_NAME
        )

