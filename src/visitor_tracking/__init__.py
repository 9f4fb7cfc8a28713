"""
Visitor tracking and analytics backed by Cloudflare D1.

Usage:
    from visitor_tracking import TrackingConfig, setup_tracking

    tracking = setup_tracking(TrackingConfig.from_env())
    await tracking.create_schema()

    app.include_router(tracking.router, prefix="/tracking")
"""

from datetime import datetime
from typing import Callable, Optional

import httpx

from .aggregation import AggregationEngine
from .config import ConfigError, TrackingConfig
from .core.database import D1Database
from .core.events import EventStore
from .core.identity import IdentityStore
from .errors import DatabaseError, SessionNotFoundError, TrackingError, TrackingValidationError
from .geo import GeoResolver
from .ingestion import IngestionService
from .routes import create_tracking_router

__version__ = "0.1.0"
__all__ = [
    "setup_tracking",
    "Tracking",
    "TrackingConfig",
    "ConfigError",
    "TrackingError",
    "SessionNotFoundError",
    "TrackingValidationError",
    "DatabaseError",
]


class Tracking:
    """Wired tracking instance: database, services and router."""

    def __init__(
        self,
        config: TrackingConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        geo_reader=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.database = D1Database(
            d1_database_id=config.d1_database_id,
            cf_account_id=config.cf_account_id,
            cf_api_token=config.cf_api_token,
            transport=transport,
        )
        self.geo = GeoResolver(database_path=config.geoip_database, reader=geo_reader)
        self.ingestion = IngestionService(
            IdentityStore(self.database),
            EventStore(self.database),
            self.geo,
            config,
            clock=clock,
        )
        self.aggregation = AggregationEngine(self.database, config, clock=clock)
        self.router = create_tracking_router(self.ingestion, self.aggregation, config)

    async def create_schema(self) -> None:
        """Create the tracking tables in D1 (idempotent)."""
        await self.database.create_schema()

    def close(self) -> None:
        self.geo.close()


def setup_tracking(
    config: TrackingConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    geo_reader=None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Tracking:
    """
    Set up visitor tracking for an app.

    Args:
        config: Tracking configuration
        transport: Optional httpx transport for D1 requests (tests, proxies)
        geo_reader: Optional pre-built GeoIP reader; overrides config.geoip_database
        clock: Optional callable returning the current aware UTC datetime

    Returns:
        Tracking instance with .router and .create_schema()
    """
    return Tracking(config, transport=transport, geo_reader=geo_reader, clock=clock)
