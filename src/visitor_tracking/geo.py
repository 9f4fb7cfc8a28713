"""
IP geolocation for visitor records.

Lookups run against a MaxMind City database held entirely in memory, so
session-init never waits on the network. Internal traffic (loopback and
private ranges) is classified as non-production; callers skip persistence
for it entirely rather than storing a placeholder location.

Any lookup problem (no database configured, address not in the database,
malformed address, corrupt reader) degrades to Unknown/Unknown/Unknown.
"""

import ipaddress
import logging
from dataclasses import dataclass

import geoip2.database
import geoip2.errors
import maxminddb

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"

IPV4_MAPPED_PREFIX = "::ffff:"

NON_PRODUCTION_NETWORKS = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("::1/128"),
]


@dataclass(frozen=True)
class Location:
    """Resolved location for an IP address."""
    country: str = UNKNOWN  # ISO 3166-1 alpha-2 code
    city: str = UNKNOWN
    region: str = UNKNOWN  # Most specific subdivision code


UNKNOWN_LOCATION = Location()


def clean_ip(ip: str | None) -> str:
    """Strip whitespace and the IPv4-in-IPv6 prefix (``::ffff:1.2.3.4``)."""
    if not ip:
        return ""
    ip = ip.strip()
    if ip.lower().startswith(IPV4_MAPPED_PREFIX):
        ip = ip[len(IPV4_MAPPED_PREFIX):]
    return ip


def is_non_production(ip: str | None) -> bool:
    """Check whether traffic from this IP is internal (dev/staging/LAN).

    Unparseable addresses are not treated as internal; they are tracked with
    an Unknown location.
    """
    cleaned = clean_ip(ip)
    if cleaned == "localhost":
        return True
    try:
        address = ipaddress.ip_address(cleaned)
    except ValueError:
        return False
    return any(address in network for network in NON_PRODUCTION_NETWORKS)


class GeoResolver:
    """Resolve client IPs to {country, city, region}."""

    def __init__(self, database_path: str | None = None, reader=None):
        """
        Args:
            database_path: Path to a GeoLite2/GeoIP2 City .mmdb file
            reader: Pre-built reader exposing ``city(ip)``; takes precedence
                over database_path
        """
        self._reader = reader
        if self._reader is None and database_path:
            try:
                self._reader = geoip2.database.Reader(database_path, mode=maxminddb.MODE_MEMORY)
            except (OSError, maxminddb.InvalidDatabaseError) as e:
                logger.warning(f"Could not load GeoIP database {database_path}: {e}")
                self._reader = None

    @property
    def has_database(self) -> bool:
        return self._reader is not None

    def is_non_production(self, ip: str | None) -> bool:
        return is_non_production(ip)

    def resolve(self, ip: str | None) -> Location:
        """Look up the location for an IP, never raising."""
        if not self.has_database:
            return UNKNOWN_LOCATION

        cleaned = clean_ip(ip)
        if not cleaned:
            return UNKNOWN_LOCATION

        try:
            response = self._reader.city(cleaned)
        except geoip2.errors.AddressNotFoundError:
            logger.debug(f"No GeoIP record for {cleaned}")
            return UNKNOWN_LOCATION
        except ValueError:
            logger.debug(f"Invalid IP address for GeoIP lookup: {cleaned!r}")
            return UNKNOWN_LOCATION
        except (geoip2.errors.GeoIP2Error, maxminddb.InvalidDatabaseError) as e:
            logger.warning(f"GeoIP lookup failed for {cleaned}: {e}")
            return UNKNOWN_LOCATION

        subdivision = response.subdivisions.most_specific
        return Location(
            country=response.country.iso_code or UNKNOWN,
            city=response.city.name or UNKNOWN,
            region=subdivision.iso_code or UNKNOWN,
        )

    def close(self) -> None:
        """Release the underlying database reader."""
        if self._reader is not None and hasattr(self._reader, "close"):
            self._reader.close()
