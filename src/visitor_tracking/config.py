"""
Configuration for visitor tracking.
"""
import logging
import os
from dataclasses import dataclass, fields
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

# Sentinel identifiers returned for non-production traffic
DEV_SESSION_ID = "dev_session"
DEV_VISITOR_ID = "dev_visitor"


class ConfigError(ValueError):
    """Raised when tracking configuration is invalid."""
    pass


@dataclass
class TrackingConfig:
    """Configuration for a single tracking instance."""

    # Required
    d1_database_id: str
    cf_account_id: str
    cf_api_token: str

    # Aggregation
    timezone: str = "America/New_York"  # Site timezone for hourly/daily buckets

    # Geo lookup (MaxMind City .mmdb, loaded into memory)
    geoip_database: str | None = None

    # Session windows
    session_timeout_minutes: int = 30  # Sticky session window
    realtime_window_minutes: int = 5  # "Currently active" window
    bounce_threshold_seconds: int = 30

    # Query limits
    recent_history_limit: int = 50
    contact_event_limit: int = 50
    contact_session_limit: int = 50
    heatmap_page_limit: int = 10
    heatmap_click_limit: int = 2000

    # Lead scoring
    high_intent_path: str = "pricing"
    pageview_score: int = 20
    form_submit_score: int = 50

    # Use X-Forwarded-For for the caller IP (behind a reverse proxy)
    trust_proxy_headers: bool = False

    def __post_init__(self):
        """Validate configuration after initialization."""
        for name in ("session_timeout_minutes", "realtime_window_minutes", "bounce_threshold_seconds"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

        for name in ("recent_history_limit", "contact_event_limit", "contact_session_limit",
                     "heatmap_page_limit", "heatmap_click_limit"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be at least 1, got {getattr(self, name)}")

        if self.pageview_score < 0 or self.form_submit_score < 0:
            raise ConfigError("Lead score increments cannot be negative")

        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigError(f"Unknown timezone: {self.timezone}") from None

        if not self.geoip_database:
            logger.info("No GeoIP database configured; locations will be recorded as Unknown")

    @property
    def tzinfo(self) -> ZoneInfo:
        """Site timezone as a tzinfo object."""
        return ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls, prefix: str = "TRACKING_") -> "TrackingConfig":
        """Build a config from environment variables.

        Each field maps to ``{prefix}{FIELD_NAME}``, e.g. ``TRACKING_D1_DATABASE_ID``.
        Unset optional fields keep their defaults.

        Raises:
            ConfigError: If a required variable is missing or a value can't be parsed
        """
        values = {}
        for field in fields(cls):
            raw = os.environ.get(f"{prefix}{field.name.upper()}")
            if raw is None:
                continue
            if field.type in (int, "int"):
                try:
                    values[field.name] = int(raw)
                except ValueError:
                    raise ConfigError(f"{prefix}{field.name.upper()} must be an integer") from None
            elif field.type in (bool, "bool"):
                values[field.name] = raw.strip().lower() in ("1", "true", "yes", "on")
            else:
                values[field.name] = raw

        missing = [
            f"{prefix}{name.upper()}"
            for name in ("d1_database_id", "cf_account_id", "cf_api_token")
            if not values.get(name)
        ]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

        return cls(**values)
