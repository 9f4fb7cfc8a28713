"""
UTM parameter handling for campaign attribution.

The embedded tracker sends the landing page's UTM parameters as a dict
(``{"utm_source": "google", ...}``). Sessions store the five standard
parameters. When the client sends none, they are parsed from the landing
URL instead, so links tagged by hand still attribute correctly.
"""

from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, urlparse

# Maximum stored length for a UTM value (sanity limit)
MAX_UTM_LENGTH = 200

UTM_FIELDS = ("source", "medium", "campaign", "term", "content")


@dataclass(frozen=True)
class UTMParams:
    """The five standard UTM parameters; any may be missing."""
    source: str | None = None
    medium: str | None = None
    campaign: str | None = None
    term: str | None = None
    content: str | None = None

    @property
    def has_utm(self) -> bool:
        return any(getattr(self, name) for name in UTM_FIELDS)

    def to_columns(self) -> dict[str, str | None]:
        """Session column values (utm_source, utm_medium, ...)."""
        return {f"utm_{name}": getattr(self, name) for name in UTM_FIELDS}


def _clean_param(value: Any) -> str | None:
    """Strip, truncate and drop empty values. Non-strings are stringified."""
    if value is None:
        return None
    cleaned = str(value).strip()
    if len(cleaned) > MAX_UTM_LENGTH:
        cleaned = cleaned[:MAX_UTM_LENGTH]
    return cleaned or None


def parse_utm(url: str | None) -> UTMParams:
    """
    Extract UTM parameters from a URL's query string (or fragment).

    Examples:
        >>> parse_utm("https://example.com/?utm_source=google&utm_medium=cpc")
        UTMParams(source='google', medium='cpc', campaign=None, term=None, content=None)
    """
    if not url:
        return UTMParams()

    try:
        parsed = urlparse(url)
    except ValueError:
        return UTMParams()

    params = parse_qs(parsed.query)
    if parsed.fragment:
        for key, value in parse_qs(parsed.fragment).items():
            params.setdefault(key, value)

    return UTMParams(**{
        name: _clean_param(params.get(f"utm_{name}", [None])[0])
        for name in UTM_FIELDS
    })


def normalize_utm(utm_params: dict[str, Any] | None, url: str | None = None) -> UTMParams:
    """
    Normalize client-supplied UTM params, falling back to the URL.

    Accepts keys with or without the ``utm_`` prefix. Unknown keys are ignored.

    Examples:
        >>> normalize_utm({"utm_source": "newsletter", "campaign": "launch"})
        UTMParams(source='newsletter', medium=None, campaign='launch', term=None, content=None)

        >>> normalize_utm({}, "https://example.com/?utm_source=google")
        UTMParams(source='google', medium=None, campaign=None, term=None, content=None)
    """
    values = {}
    for key, value in (utm_params or {}).items():
        name = key[4:] if key.startswith("utm_") else key
        if name in UTM_FIELDS:
            values[name] = _clean_param(value)

    params = UTMParams(**values)
    if params.has_utm:
        return params
    return parse_utm(url)
