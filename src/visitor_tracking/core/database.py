"""
HTTP client for the Cloudflare D1 tracking database.

Every statement is a single round trip to the D1 query endpoint. There are
no multi-statement transactions, so writes that must not lose updates are
expressed as single statements (``page_views = page_views + 1``).
"""
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from ..errors import DatabaseError

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Format a datetime as stored UTC text (lexically sortable)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def from_db_timestamp(value: str | None) -> datetime | None:
    """Parse stored UTC text back into an aware datetime."""
    if not value:
        return None
    return datetime.strptime(value[:19], TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS visitors (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        visitor_unique_id TEXT NOT NULL UNIQUE,
        ip_address TEXT,
        first_seen TEXT NOT NULL,
        last_seen TEXT NOT NULL,
        total_visits INTEGER NOT NULL DEFAULT 1,
        country TEXT NOT NULL DEFAULT 'Unknown',
        city TEXT NOT NULL DEFAULT 'Unknown',
        region TEXT NOT NULL DEFAULT 'Unknown',
        device_type TEXT,
        browser TEXT,
        os TEXT,
        identified_email TEXT,
        identified_name TEXT,
        lead_score INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_visitors_email ON visitors(identified_email)",
    "CREATE INDEX IF NOT EXISTS idx_visitors_last_seen ON visitors(last_seen)",
    "CREATE INDEX IF NOT EXISTS idx_visitors_country ON visitors(country)",
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        session_unique_id TEXT NOT NULL UNIQUE,
        visitor_id INTEGER NOT NULL REFERENCES visitors(id),
        start_time TEXT NOT NULL,
        end_time TEXT,
        referrer_url TEXT,
        referrer_type TEXT,
        landing_page TEXT,
        exit_page TEXT,
        utm_source TEXT,
        utm_medium TEXT,
        utm_campaign TEXT,
        utm_term TEXT,
        utm_content TEXT,
        device_type TEXT,
        browser TEXT,
        os TEXT,
        screen_resolution TEXT,
        timezone TEXT,
        page_views INTEGER NOT NULL DEFAULT 0,
        events_count INTEGER NOT NULL DEFAULT 0,
        duration INTEGER NOT NULL DEFAULT 0,
        is_bounce INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_visitor_start ON sessions(visitor_id, start_time)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_start ON sessions(start_time)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_end ON sessions(end_time)",
    """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL REFERENCES sessions(id),
        visitor_id INTEGER NOT NULL REFERENCES visitors(id),
        type TEXT NOT NULL,
        url TEXT,
        event_name TEXT,
        timestamp TEXT NOT NULL,
        data TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_visitor_ts ON events(visitor_id, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_events_type_ts ON events(type, timestamp)",
]


class D1Database:
    """Client for executing SQL against a Cloudflare D1 database."""

    def __init__(
        self,
        d1_database_id: str,
        cf_account_id: str,
        cf_api_token: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.database_id = d1_database_id
        self.account_id = cf_account_id
        self.api_token = cf_api_token
        self.timeout = timeout
        self._transport = transport
        self.base_url = f"https://api.cloudflare.com/client/v4/accounts/{cf_account_id}/d1/database/{d1_database_id}"

    async def query(self, sql: str, params: Optional[list] = None) -> list[dict]:
        """Execute a SQL statement against D1 and return its result rows.

        Raises:
            DatabaseError: On transport failure, non-2xx status, or a D1 error payload
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/query",
                    headers={
                        "Authorization": f"Bearer {self.api_token}",
                        "Content-Type": "application/json",
                    },
                    json={"sql": sql, "params": params or []},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise DatabaseError(f"D1 query failed with HTTP {e.response.status_code}: {_error_detail(e.response)}") from e
        except httpx.HTTPError as e:
            raise DatabaseError(f"D1 request failed: {e}") from e
        except ValueError as e:
            raise DatabaseError("D1 returned a non-JSON response") from e

        if not data.get("success"):
            raise DatabaseError(f"D1 query failed: {data.get('errors')}")

        results = data.get("result", [])
        if results and len(results) > 0:
            return results[0].get("results", [])
        return []

    async def execute(self, sql: str, params: Optional[list] = None) -> None:
        """Execute a SQL statement without returning results."""
        await self.query(sql, params)

    async def create_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        for statement in SCHEMA:
            await self.execute(statement)
        logger.info(f"Tracking schema ready in D1 database {self.database_id}")


def _error_detail(response: httpx.Response) -> str:
    """Best-effort error message from a failed D1 response."""
    try:
        errors = response.json().get("errors")
    except ValueError:
        return response.text[:200]
    return str(errors) if errors else response.text[:200]
