"""
Pydantic models for tracking records, requests and responses.
"""
import json
from datetime import datetime, timezone
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, Field, field_validator


def _assume_utc(value: datetime) -> datetime:
    """Stored timestamps are naive UTC text; make them aware."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UTCDateTime = Annotated[datetime, AfterValidator(_assume_utc)]


# =============================================================================
# Stored Records
# =============================================================================

class Visitor(BaseModel):
    """A long-lived anonymous identity keyed by a client-persisted token."""
    id: int
    visitor_unique_id: str
    ip_address: str | None = None

    first_seen: UTCDateTime
    last_seen: UTCDateTime
    total_visits: int = 1

    # Location (re-resolved on every session-init)
    country: str = "Unknown"
    city: str = "Unknown"
    region: str = "Unknown"

    # Technology (captured at creation)
    device_type: str | None = None
    browser: str | None = None
    os: str | None = None

    # Identity (set by identify, never cleared)
    identified_email: str | None = None
    identified_name: str | None = None

    lead_score: int = 0


class Session(BaseModel):
    """A bounded visit window belonging to one visitor."""
    id: str
    session_unique_id: str
    visitor_id: int

    start_time: UTCDateTime
    end_time: UTCDateTime | None = None  # Last pulse

    # Attribution (captured at creation)
    referrer_url: str | None = None
    referrer_type: str | None = None
    landing_page: str | None = None
    exit_page: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None

    # Technology (captured at creation)
    device_type: str | None = None
    browser: str | None = None
    os: str | None = None
    screen_resolution: str | None = None
    timezone: str | None = None

    page_views: int = 0
    events_count: int = 0
    duration: int = 0  # Seconds, from the latest pulse
    is_bounce: bool | None = None  # None until the first pulse


class SessionActivity(Session):
    """A session joined with its visitor, for realtime and history lists."""
    country: str | None = None
    city: str | None = None
    region: str | None = None
    ip_address: str | None = None
    identified_name: str | None = None
    identified_email: str | None = None


class Event(BaseModel):
    """One immutable interaction."""
    id: int
    session_id: str
    visitor_id: int
    type: str  # pageview, click, form_submit, or custom
    url: str | None = None
    event_name: str | None = None
    timestamp: UTCDateTime
    data: dict[str, Any] = Field(default_factory=dict)  # Open extension map

    @field_validator("data", mode="before")
    @classmethod
    def _decode_data(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            return json.loads(value)
        return value


class TimelineEvent(Event):
    """An event enriched with session technology and visitor location."""
    device_type: str | None = None
    browser: str | None = None
    os: str | None = None
    country: str | None = None
    city: str | None = None


# =============================================================================
# Ingestion Requests / Responses
# =============================================================================

class InitSessionRequest(BaseModel):
    """Body of POST /init."""
    visitor_unique_id: str | None = None
    referrer: str | None = None
    url: str
    utm_params: dict[str, Any] | None = None
    screen_resolution: str | None = None
    timezone: str | None = None


class InitSessionResponse(BaseModel):
    session_id: str
    visitor_unique_id: str
    session_unique_id: str | None = None  # None for the dev sentinel
    message: str | None = None


class TrackEventRequest(BaseModel):
    """Body of POST /event."""
    session_id: str
    type: str
    url: str = ""
    data: dict[str, Any] | None = None


class PulseRequest(BaseModel):
    """Body of POST /pulse."""
    session_id: str
    duration: int = Field(ge=0)  # Seconds since the tab opened


class IdentifyRequest(BaseModel):
    """Body of POST /identify."""
    session_id: str
    email: str | None = None
    name: str | None = None


class SuccessResponse(BaseModel):
    success: bool = True


# =============================================================================
# Aggregation Responses
# =============================================================================

class ChartPoint(BaseModel):
    """A traffic chart bucket ("14:00" or "10-19")."""
    name: str
    visitors: int = 0


class DeviceSlice(BaseModel):
    name: str  # "Desktop", "Mobile", ...
    value: int


class Summary(BaseModel):
    """Dashboard summary for a date range."""
    range: str
    period_label: str
    total_visitors: int = 0
    active_sessions: int = 0
    total_page_views: int = 0
    avg_duration: float = 0  # Seconds
    bounce_rate: int = 0  # Percentage of single-pageview sessions
    realtime: list[SessionActivity] = []
    history: list[SessionActivity] = []
    device_chart: list[DeviceSlice] = []
    traffic_chart: list[ChartPoint] = []


class ContactStats(BaseModel):
    """Web activity rollup for a CRM contact (all visitors sharing an email)."""
    lead_source: str
    first_visit: UTCDateTime
    last_visit: UTCDateTime
    total_sessions: int
    device_type: str
    location: str


class ContactActivity(BaseModel):
    stats: ContactStats | None = None
    events: list[TimelineEvent] = []


class VisitorSessions(BaseModel):
    stats: ContactStats | None = None
    sessions: list[Session] = []


class HeatmapPage(BaseModel):
    url: str | None = None
    count: int


class Viewport(BaseModel):
    width: float | None = None
    height: float | None = None


class HeatmapClick(BaseModel):
    x: float
    y: float
    viewport: Viewport
    selector: str | None = None
    text: str | None = None


class HeatmapPages(BaseModel):
    pages: list[HeatmapPage]


class HeatmapClicks(BaseModel):
    clicks: list[HeatmapClick]


class GeoStat(BaseModel):
    """Visitor count for one country."""
    id: str  # ISO country code
    value: int
