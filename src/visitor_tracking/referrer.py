"""
Referrer handling for sessions and contact attribution.

Two jobs:
- Classify the referrer captured at session creation into a coarse traffic
  source type (direct, organic, social, email, referral).
- Derive the "lead source" shown on a CRM contact profile from that
  contact's first-ever session: UTM source wins, then the referrer's
  hostname, then "Direct".
"""

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlparse

DIRECT_SOURCE = "Direct"


class ReferrerType(str, Enum):
    """Traffic source classification."""

    DIRECT = "direct"        # No referrer (bookmarks, typed URLs, dark social)
    ORGANIC = "organic"      # Search engine results
    SOCIAL = "social"        # Social media platforms
    EMAIL = "email"          # Webmail and newsletter tools
    REFERRAL = "referral"    # Any other website


@dataclass(frozen=True)
class ReferrerInfo:
    """Classified referrer."""
    type: ReferrerType
    domain: str | None = None  # Normalized, without www.


SEARCH_ENGINES = (
    "google.", "bing.com", "yahoo.", "duckduckgo.com", "baidu.com",
    "yandex.", "ecosia.org", "qwant.com", "startpage.com", "search.brave.com",
)

SOCIAL_NETWORKS = (
    "facebook.com", "fb.com", "instagram.com", "t.co", "twitter.com", "x.com",
    "linkedin.com", "lnkd.in", "reddit.com", "pinterest.", "tiktok.com",
    "youtube.com", "youtu.be", "threads.net", "whatsapp.com",
)

# Checked before search engines: mail.google.com is email, not organic
EMAIL_PROVIDERS = (
    "mail.google.com", "outlook.live.com", "outlook.office.com", "mail.yahoo.com",
    "mailchi.mp", "list-manage.com", "sendgrid.net", "webmail.",
)


def referrer_hostname(referrer: str | None) -> str | None:
    """Return the hostname of an absolute referrer URL, or None if malformed/empty."""
    if not referrer or not referrer.strip():
        return None
    try:
        hostname = urlparse(referrer.strip()).hostname
    except ValueError:
        # e.g. unbalanced IPv6 brackets
        return None
    return hostname or None


def _normalize_domain(domain: str) -> str:
    domain = domain.lower()
    return domain[4:] if domain.startswith("www.") else domain


def _matches(domain: str, patterns: tuple[str, ...]) -> bool:
    """Match a domain against exact/suffix patterns and label prefixes ("google.")."""
    dotted = f".{domain}"
    for pattern in patterns:
        if pattern.endswith("."):
            if f".{pattern}" in dotted:
                return True
        elif domain == pattern or domain.endswith(f".{pattern}"):
            return True
    return False


def classify_referrer(referrer: str | None, current_domain: str | None = None) -> ReferrerInfo:
    """
    Classify a referrer URL into a traffic source type.

    Same-site referrers (matching current_domain) count as direct.

    Examples:
        >>> classify_referrer("https://www.google.com/search?q=crm")
        ReferrerInfo(type=<ReferrerType.ORGANIC: 'organic'>, domain='google.com')

        >>> classify_referrer("")
        ReferrerInfo(type=<ReferrerType.DIRECT: 'direct'>, domain=None)
    """
    hostname = referrer_hostname(referrer)
    if hostname is None:
        return ReferrerInfo(type=ReferrerType.DIRECT)

    domain = _normalize_domain(hostname)

    if current_domain and domain == _normalize_domain(current_domain):
        return ReferrerInfo(type=ReferrerType.DIRECT, domain=domain)
    if _matches(domain, EMAIL_PROVIDERS):
        return ReferrerInfo(type=ReferrerType.EMAIL, domain=domain)
    if _matches(domain, SEARCH_ENGINES):
        return ReferrerInfo(type=ReferrerType.ORGANIC, domain=domain)
    if _matches(domain, SOCIAL_NETWORKS):
        return ReferrerInfo(type=ReferrerType.SOCIAL, domain=domain)
    return ReferrerInfo(type=ReferrerType.REFERRAL, domain=domain)


def lead_source(utm_source: str | None, referrer: str | None) -> str:
    """Attribution label for a contact's first session.

    UTM source takes priority; otherwise the referrer hostname as-is;
    otherwise "Direct". Malformed referrers fall back to "Direct".
    """
    if utm_source:
        return utm_source
    return referrer_hostname(referrer) or DIRECT_SOURCE
