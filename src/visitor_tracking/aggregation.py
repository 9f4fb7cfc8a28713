"""
Read-only analytics over visitors, sessions and events.

Everything is computed at query time from the raw tables; there are no
rollups. "Local" means the configured site timezone: the today range starts
at local midnight and chart buckets are local hours or local calendar days.
"""
import json
import logging
import math
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional

from .config import TrackingConfig
from .core.database import D1Database, from_db_timestamp, to_db_timestamp, utc_now
from .core.models import (
    ChartPoint,
    ContactActivity,
    ContactStats,
    DeviceSlice,
    GeoStat,
    HeatmapClick,
    HeatmapPage,
    Session,
    SessionActivity,
    Summary,
    TimelineEvent,
    Viewport,
    Visitor,
    VisitorSessions,
)
from .geo import UNKNOWN
from .referrer import lead_source

logger = logging.getLogger(__name__)

DEFAULT_RANGE = "today"

# range -> (label, days back; None means since local midnight)
RANGES = {
    "today": ("Today", None),
    "week": ("Last 7 Days", 7),
    "month": ("Last 30 Days", 30),
}

_SESSION_ACTIVITY_SELECT = """
    SELECT s.*, v.country, v.city, v.region, v.ip_address,
           v.identified_name, v.identified_email
    FROM sessions s
    JOIN visitors v ON v.id = s.visitor_id
"""


def resolve_range(range_name: str | None) -> str:
    """Normalize a range name; unrecognized values fall back to today."""
    if range_name and range_name.lower() in RANGES:
        return range_name.lower()
    return DEFAULT_RANGE


def _placeholders(values: list) -> str:
    return ", ".join("?" for _ in values)


def _number(value: Any) -> float | None:
    """Coerce a JSON value to a finite float, or None if it isn't one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


class AggregationEngine:
    """Dashboard, contact and heatmap queries."""

    def __init__(
        self,
        db: D1Database,
        config: TrackingConfig,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.config = config
        self.clock = clock or utc_now

    # =========================================================================
    # DATE RANGES
    # =========================================================================

    def range_start(self, range_name: str, now: datetime) -> datetime:
        """Start of a summary range as an aware datetime.

        Examples:
            today -> local midnight
            week  -> now - 7 days
            month -> now - 30 days
        """
        _, days = RANGES[resolve_range(range_name)]
        if days is None:
            local_now = now.astimezone(self.config.tzinfo)
            return local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        return now - timedelta(days=days)

    # =========================================================================
    # SUMMARY
    # =========================================================================

    async def summary(self, range_name: str | None = DEFAULT_RANGE) -> Summary:
        """Headline numbers, realtime/history lists and charts for a range."""
        range_name = resolve_range(range_name)
        label, days = RANGES[range_name]
        now = self.clock()
        start = to_db_timestamp(self.range_start(range_name, now))
        realtime_cutoff = to_db_timestamp(now - timedelta(minutes=self.config.realtime_window_minutes))

        visitor_rows = await self.db.query(
            "SELECT COUNT(*) AS count FROM visitors WHERE last_seen >= ?", [start]
        )
        pageview_rows = await self.db.query(
            "SELECT COUNT(*) AS count FROM events WHERE type = 'pageview' AND timestamp >= ?",
            [start],
        )
        session_rows = await self.db.query(
            """
            SELECT
                COUNT(*) AS sessions,
                AVG(duration) AS avg_duration,
                SUM(CASE WHEN page_views = 1 THEN 1 ELSE 0 END) AS single_page
            FROM sessions
            WHERE start_time >= ?
            """,
            [start],
        )

        realtime = await self._realtime_sessions(realtime_cutoff)
        history = await self._recent_history(realtime_cutoff)

        stats = session_rows[0] if session_rows else {}
        session_count = stats.get("sessions") or 0
        single_page = stats.get("single_page") or 0
        bounce_rate = round(single_page / session_count * 100) if session_count else 0

        return Summary(
            range=range_name,
            period_label=label,
            total_visitors=visitor_rows[0]["count"] if visitor_rows else 0,
            active_sessions=len(realtime),
            total_page_views=pageview_rows[0]["count"] if pageview_rows else 0,
            avg_duration=round(stats.get("avg_duration") or 0, 1),
            bounce_rate=bounce_rate,
            realtime=realtime,
            history=history,
            device_chart=await self._device_chart(start),
            traffic_chart=await self._traffic_chart(start, now, days),
        )

    async def _realtime_sessions(self, cutoff: str) -> list[SessionActivity]:
        """Sessions started or pulsed inside the realtime window, newest activity first."""
        rows = await self.db.query(
            _SESSION_ACTIVITY_SELECT + """
            WHERE s.start_time >= ? OR s.end_time >= ?
            ORDER BY COALESCE(s.end_time, s.start_time) DESC, s.rowid DESC
            """,
            [cutoff, cutoff],
        )
        return [SessionActivity(**r) for r in rows]

    async def _recent_history(self, cutoff: str) -> list[SessionActivity]:
        rows = await self.db.query(
            _SESSION_ACTIVITY_SELECT + """
            WHERE s.end_time < ?
            ORDER BY s.end_time DESC, s.rowid DESC
            LIMIT ?
            """,
            [cutoff, self.config.recent_history_limit],
        )
        return [SessionActivity(**r) for r in rows]

    async def _device_chart(self, start: str) -> list[DeviceSlice]:
        rows = await self.db.query(
            """
            SELECT COALESCE(device_type, 'unknown') AS device_type, COUNT(*) AS count
            FROM sessions
            WHERE start_time >= ?
            GROUP BY COALESCE(device_type, 'unknown')
            ORDER BY count DESC, device_type ASC
            """,
            [start],
        )
        return [DeviceSlice(name=r["device_type"].capitalize(), value=r["count"]) for r in rows]

    async def _traffic_chart(self, start: str, now: datetime, days: int | None) -> list[ChartPoint]:
        """Sessions per local hour (today) or per local day (week/month), zero-filled."""
        rows = await self.db.query(
            "SELECT start_time FROM sessions WHERE start_time >= ?", [start]
        )
        tz = self.config.tzinfo
        local_starts = [from_db_timestamp(r["start_time"]).astimezone(tz) for r in rows]

        if days is None:
            counts = Counter(dt.hour for dt in local_starts)
            return [ChartPoint(name=f"{hour:02d}:00", visitors=counts[hour]) for hour in range(24)]

        today = now.astimezone(tz).date()
        counts = Counter(dt.date() for dt in local_starts)
        buckets: list[date] = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
        return [ChartPoint(name=day.strftime("%m-%d"), visitors=counts[day]) for day in buckets]

    # =========================================================================
    # CONTACTS
    # =========================================================================

    async def _visitors_for_email(self, email: str) -> list[Visitor]:
        rows = await self.db.query(
            "SELECT * FROM visitors WHERE identified_email = ? ORDER BY last_seen DESC, id DESC",
            [email],
        )
        return [Visitor(**r) for r in rows]

    async def _contact_stats(self, visitors: list[Visitor]) -> ContactStats:
        """Rollup across every visitor sharing an identified email."""
        ids = [v.id for v in visitors]
        marks = _placeholders(ids)

        first_session = await self.db.query(
            f"""
            SELECT utm_source, referrer_url FROM sessions
            WHERE visitor_id IN ({marks})
            ORDER BY start_time ASC, rowid ASC
            LIMIT 1
            """,
            ids,
        )
        if first_session:
            source = lead_source(first_session[0]["utm_source"], first_session[0]["referrer_url"])
        else:
            source = lead_source(None, None)

        device_rows = await self.db.query(
            f"""
            SELECT COALESCE(device_type, 'unknown') AS device_type, COUNT(*) AS count
            FROM sessions
            WHERE visitor_id IN ({marks})
            GROUP BY COALESCE(device_type, 'unknown')
            ORDER BY count DESC, device_type ASC
            LIMIT 1
            """,
            ids,
        )

        return ContactStats(
            lead_source=source,
            first_visit=min(v.first_seen for v in visitors),
            last_visit=max(v.last_seen for v in visitors),
            total_sessions=sum(v.total_visits for v in visitors),
            device_type=device_rows[0]["device_type"] if device_rows else UNKNOWN,
            location=visitors[0].country or UNKNOWN,
        )

    async def contact_activity(self, email: str) -> ContactActivity:
        """Stats and recent event timeline for a CRM contact."""
        visitors = await self._visitors_for_email(email)
        if not visitors:
            return ContactActivity(stats=None, events=[])

        ids = [v.id for v in visitors]
        rows = await self.db.query(
            f"""
            SELECT e.*, s.device_type, s.browser, s.os, v.country, v.city
            FROM events e
            LEFT JOIN sessions s ON s.id = e.session_id
            LEFT JOIN visitors v ON v.id = e.visitor_id
            WHERE e.visitor_id IN ({_placeholders(ids)})
            ORDER BY e.timestamp DESC, e.id DESC
            LIMIT ?
            """,
            [*ids, self.config.contact_event_limit],
        )
        return ContactActivity(
            stats=await self._contact_stats(visitors),
            events=[TimelineEvent(**r) for r in rows],
        )

    async def visitor_sessions(self, email: str) -> VisitorSessions:
        """Stats and most recent full session records for a CRM contact."""
        visitors = await self._visitors_for_email(email)
        if not visitors:
            return VisitorSessions(stats=None, sessions=[])

        ids = [v.id for v in visitors]
        rows = await self.db.query(
            f"""
            SELECT * FROM sessions
            WHERE visitor_id IN ({_placeholders(ids)})
            ORDER BY start_time DESC, rowid DESC
            LIMIT ?
            """,
            [*ids, self.config.contact_session_limit],
        )
        return VisitorSessions(
            stats=await self._contact_stats(visitors),
            sessions=[Session(**r) for r in rows],
        )

    # =========================================================================
    # HEATMAP / GEO
    # =========================================================================

    async def heatmap_top_pages(self) -> list[HeatmapPage]:
        """Most common landing pages by session count."""
        rows = await self.db.query(
            """
            SELECT landing_page AS url, COUNT(*) AS count
            FROM sessions
            GROUP BY landing_page
            ORDER BY count DESC, landing_page ASC
            LIMIT ?
            """,
            [self.config.heatmap_page_limit],
        )
        return [HeatmapPage(**r) for r in rows]

    async def heatmap_clicks(self, url: str) -> list[HeatmapClick]:
        """Click coordinates on pages whose URL contains ``url`` (case-insensitive).

        Only clicks whose data carries finite numeric x and y are returned;
        rows with malformed JSON are skipped.
        """
        rows = await self.db.query(
            """
            SELECT data FROM events
            WHERE type = 'click'
              AND instr(lower(url), lower(?)) > 0
              AND CASE WHEN json_valid(data) THEN json_type(data, '$.x') END IN ('integer', 'real')
              AND CASE WHEN json_valid(data) THEN json_type(data, '$.y') END IN ('integer', 'real')
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
            """,
            [url, self.config.heatmap_click_limit],
        )

        clicks = []
        for row in rows:
            data = json.loads(row["data"])
            x, y = _number(data.get("x")), _number(data.get("y"))
            if x is None or y is None:
                continue
            clicks.append(HeatmapClick(
                x=x,
                y=y,
                viewport=Viewport(
                    width=_number(data.get("viewport_width")),
                    height=_number(data.get("viewport_height")),
                ),
                selector=_text(data.get("selector")),
                text=_text(data.get("element_text")),
            ))
        return clicks

    async def geo_stats(self) -> list[GeoStat]:
        """Visitor counts per country, largest first, without Unknown."""
        rows = await self.db.query(
            """
            SELECT country AS id, COUNT(*) AS value
            FROM visitors
            WHERE country IS NOT NULL AND country != '' AND country != ?
            GROUP BY country
            ORDER BY value DESC, country ASC
            """,
            [UNKNOWN],
        )
        return [GeoStat(**r) for r in rows]

