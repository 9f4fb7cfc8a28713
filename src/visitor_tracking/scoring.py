"""
Lead scoring from tracked events.

Scoring is a pure function of the event: the ingestion service adds the
returned increment to the visitor's cumulative score with an atomic store
update, once per event. Scores only ever go up.
"""

from dataclasses import dataclass

PAGEVIEW = "pageview"
FORM_SUBMIT = "form_submit"


@dataclass(frozen=True)
class ScoringRules:
    """Point values for intent signals."""
    high_intent_path: str = "pricing"
    pageview_increment: int = 20  # Pageview of a high-intent page
    form_submit_increment: int = 50


DEFAULT_RULES = ScoringRules()


def score(event_type: str, url: str | None, rules: ScoringRules = DEFAULT_RULES) -> int:
    """
    Score increment for a single event.

    Examples:
        >>> score("pageview", "https://example.com/pricing")
        20
        >>> score("form_submit", "https://example.com/contact")
        50
        >>> score("click", "https://example.com/pricing")
        0
    """
    if event_type == FORM_SUBMIT:
        return rules.form_submit_increment
    if event_type == PAGEVIEW and url and rules.high_intent_path.lower() in url.lower():
        return rules.pageview_increment
    return 0
