"""
Visitor and session persistence.

Visitors are keyed by the client-generated ``visitor_unique_id``; sessions
belong to exactly one visitor. Session openness is never stored: a session
is "open" while its start_time falls inside the sticky window, and every
caller passes the cutoff it computed from its own clock.

All counter changes are single-statement ``col = col + n`` updates so
concurrent requests for the same session never lose increments.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from ..geo import Location
from ..user_agent import UserAgentInfo
from ..utm import UTMParams
from .database import D1Database, to_db_timestamp
from .models import Session, Visitor

logger = logging.getLogger(__name__)


class IdentityStore:
    """Reads and writes the visitors and sessions tables."""

    def __init__(self, db: D1Database):
        self.db = db

    # =========================================================================
    # VISITORS
    # =========================================================================

    async def get_visitor_by_key(self, visitor_unique_id: str) -> Optional[Visitor]:
        """Find a visitor by its client-persisted key."""
        rows = await self.db.query(
            "SELECT * FROM visitors WHERE visitor_unique_id = ?",
            [visitor_unique_id],
        )
        return Visitor(**rows[0]) if rows else None

    async def create_visitor(
        self,
        visitor_unique_id: str,
        ip_address: str,
        location: Location,
        ua: UserAgentInfo,
        now: datetime,
    ) -> tuple[Visitor, bool]:
        """Create a visitor, or return the existing one if the key was taken.

        Concurrent creates for the same key collapse onto a single row.

        Returns:
            (visitor, created) where created is False if another request won the race
        """
        ts = to_db_timestamp(now)
        technology = ua.to_dict()
        rows = await self.db.query(
            """
            INSERT INTO visitors (
                visitor_unique_id, ip_address, first_seen, last_seen, total_visits,
                country, city, region, device_type, browser, os
            )
            VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(visitor_unique_id) DO NOTHING
            RETURNING *
            """,
            [
                visitor_unique_id, ip_address, ts, ts,
                location.country, location.city, location.region,
                technology["device_type"], technology["browser"], technology["os"],
            ],
        )
        if rows:
            return Visitor(**rows[0]), True

        existing = await self.get_visitor_by_key(visitor_unique_id)
        if existing is None:
            # Not reachable unless rows are deleted concurrently
            raise LookupError(f"Visitor {visitor_unique_id} vanished after insert conflict")
        return existing, False

    async def record_visit(
        self,
        visitor_id: int,
        ip_address: str,
        location: Location,
        now: datetime,
        new_visit_before: datetime,
    ) -> Optional[Visitor]:
        """Touch a returning visitor on session-init.

        ``total_visits`` increments only if the *previous* last_seen is older
        than ``new_visit_before``. SQLite evaluates every SET expression
        against the pre-update row, so the CASE reads last_seen before the
        same statement overwrites it.
        """
        rows = await self.db.query(
            """
            UPDATE visitors SET
                total_visits = total_visits + CASE WHEN last_seen < ? THEN 1 ELSE 0 END,
                last_seen = ?,
                ip_address = ?,
                country = ?,
                city = ?,
                region = ?
            WHERE id = ?
            RETURNING *
            """,
            [
                to_db_timestamp(new_visit_before), to_db_timestamp(now), ip_address,
                location.country, location.city, location.region,
                visitor_id,
            ],
        )
        return Visitor(**rows[0]) if rows else None

    async def add_lead_score(self, visitor_id: int, increment: int) -> None:
        """Atomically add to a visitor's lead score."""
        await self.db.execute(
            "UPDATE visitors SET lead_score = lead_score + ? WHERE id = ?",
            [increment, visitor_id],
        )

    async def identify_session_visitor(
        self, session_id: str, email: str, name: Optional[str] = None
    ) -> bool:
        """Attach an email (and optionally a name) to the visitor owning a session.

        Returns:
            False if the session doesn't exist
        """
        rows = await self.db.query(
            """
            UPDATE visitors SET
                identified_email = ?,
                identified_name = COALESCE(?, identified_name)
            WHERE id = (SELECT visitor_id FROM sessions WHERE id = ?)
            RETURNING id
            """,
            [email, name, session_id],
        )
        return bool(rows)

    # =========================================================================
    # SESSIONS
    # =========================================================================

    async def get_session(self, session_id: str) -> Optional[Session]:
        rows = await self.db.query("SELECT * FROM sessions WHERE id = ?", [session_id])
        return Session(**rows[0]) if rows else None

    async def find_open_session(self, visitor_id: int, started_after: datetime) -> Optional[Session]:
        """The visitor's most recent session started at or after the cutoff."""
        rows = await self.db.query(
            """
            SELECT * FROM sessions
            WHERE visitor_id = ? AND start_time >= ?
            ORDER BY start_time DESC, rowid DESC
            LIMIT 1
            """,
            [visitor_id, to_db_timestamp(started_after)],
        )
        return Session(**rows[0]) if rows else None

    async def create_session(
        self,
        visitor_id: int,
        url: str,
        referrer: Optional[str],
        referrer_type: str,
        utm: UTMParams,
        ua: UserAgentInfo,
        screen_resolution: Optional[str],
        timezone: Optional[str],
        now: datetime,
    ) -> Session:
        """Open a new session; the triggering page counts as its first pageview."""
        session_id = str(uuid.uuid4())
        session_unique_id = str(uuid.uuid4())
        utm_columns = utm.to_columns()
        technology = ua.to_dict()

        rows = await self.db.query(
            """
            INSERT INTO sessions (
                id, session_unique_id, visitor_id, start_time,
                referrer_url, referrer_type, landing_page, exit_page,
                utm_source, utm_medium, utm_campaign, utm_term, utm_content,
                device_type, browser, os, screen_resolution, timezone,
                page_views, events_count, duration
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, 0, 0)
            RETURNING *
            """,
            [
                session_id, session_unique_id, visitor_id, to_db_timestamp(now),
                referrer, referrer_type, url, url,
                utm_columns["utm_source"], utm_columns["utm_medium"], utm_columns["utm_campaign"],
                utm_columns["utm_term"], utm_columns["utm_content"],
                technology["device_type"], technology["browser"], technology["os"],
                screen_resolution, timezone,
            ],
        )
        logger.debug(f"Created session {session_id} for visitor {visitor_id}")
        return Session(**rows[0])

    async def record_session_pageview(self, session_id: str, url: str) -> bool:
        """Count a pageview on a session and move its exit page."""
        rows = await self.db.query(
            "UPDATE sessions SET page_views = page_views + 1, exit_page = ? WHERE id = ? RETURNING id",
            [url, session_id],
        )
        return bool(rows)

    async def record_session_event(self, session_id: str, url: str) -> bool:
        """Count a non-pageview event on a session and move its exit page."""
        rows = await self.db.query(
            "UPDATE sessions SET events_count = events_count + 1, exit_page = ? WHERE id = ? RETURNING id",
            [url, session_id],
        )
        return bool(rows)

    async def record_pulse(
        self, session_id: str, duration: int, is_bounce: bool, now: datetime
    ) -> bool:
        """Store a heartbeat: end_time, duration and bounce flag.

        Returns:
            False if the session doesn't exist
        """
        rows = await self.db.query(
            """
            UPDATE sessions SET end_time = ?, duration = ?, is_bounce = ?
            WHERE id = ?
            RETURNING id
            """,
            [to_db_timestamp(now), duration, 1 if is_bounce else 0, session_id],
        )
        return bool(rows)
