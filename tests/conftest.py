"""Shared fixtures: an in-memory D1 emulator, a frozen clock and a stub GeoIP reader."""

import asyncio
import json
import sqlite3
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import geoip2.errors
import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from visitor_tracking import TrackingConfig, setup_tracking

# 14:00 in America/New_York (EDT)
DEFAULT_NOW = datetime(2026, 6, 15, 18, 0, 0, tzinfo=timezone.utc)

PUBLIC_IP = "203.0.113.7"
UK_IP = "198.51.100.20"
UNMAPPED_IP = "192.0.2.99"

DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
MOBILE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


class FakeD1:
    """Cloudflare D1 query endpoint emulated over an in-memory SQLite database."""

    def __init__(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.requests: list[httpx.Request] = []
        self.fail = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            return httpx.Response(503, json={"success": False, "errors": [{"message": "D1 unavailable"}]})

        payload = json.loads(request.content)
        try:
            cursor = self.conn.execute(payload["sql"], payload.get("params", []))
            rows = [dict(row) for row in cursor.fetchall()]
            self.conn.commit()
        except sqlite3.Error as e:
            return httpx.Response(
                400,
                json={"success": False, "result": [], "errors": [{"code": 7500, "message": str(e)}]},
            )
        return httpx.Response(
            200,
            json={
                "success": True,
                "result": [{"results": rows, "success": True, "meta": {"rows_read": len(rows)}}],
                "errors": [],
            },
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def rows(self, sql: str, params: tuple = ()) -> list[dict]:
        """Read the emulated database directly."""
        return [dict(row) for row in self.conn.execute(sql, params).fetchall()]

    def count(self, table: str) -> int:
        return self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime = DEFAULT_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def set_local(self, hour: int, minute: int = 0, tz=None) -> None:
        """Move to a wall-clock time on the current local day."""
        tz = tz or timezone.utc
        local = self.now.astimezone(tz).replace(hour=hour, minute=minute, second=0, microsecond=0)
        self.now = local.astimezone(timezone.utc)


class StubGeoReader:
    """Stands in for geoip2.database.Reader; unmapped IPs raise AddressNotFoundError."""

    def __init__(self, records: dict[str, tuple[str, str, str]] | None = None):
        self.records = records if records is not None else {
            PUBLIC_IP: ("US", "Tampa", "FL"),
            UK_IP: ("GB", "London", "ENG"),
        }
        self.closed = False

    def city(self, ip: str):
        if ip not in self.records:
            raise geoip2.errors.AddressNotFoundError(f"The address {ip} is not in the database.")
        country, city, region = self.records[ip]
        return SimpleNamespace(
            country=SimpleNamespace(iso_code=country),
            city=SimpleNamespace(name=city),
            subdivisions=SimpleNamespace(most_specific=SimpleNamespace(iso_code=region)),
        )

    def close(self):
        self.closed = True


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


@pytest.fixture
def fake_d1():
    d1 = FakeD1()
    yield d1
    d1.conn.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def config():
    return TrackingConfig(
        d1_database_id="test-db",
        cf_account_id="test-account",
        cf_api_token="test-token",
        timezone="America/New_York",
        trust_proxy_headers=True,
    )


@pytest.fixture
def tracking(config, fake_d1, clock):
    instance = setup_tracking(
        config,
        transport=fake_d1.transport,
        geo_reader=StubGeoReader(),
        clock=clock,
    )
    run_async(instance.create_schema())
    yield instance
    instance.close()


@pytest.fixture
def client(tracking):
    app = FastAPI()
    app.include_router(tracking.router, prefix="/tracking")
    return TestClient(app)
