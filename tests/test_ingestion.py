"""Tests for session-init, event tracking, pulse and identify."""

import json

import pytest

from visitor_tracking.core.models import InitSessionRequest
from visitor_tracking.errors import SessionNotFoundError, TrackingValidationError

from conftest import DESKTOP_UA, PUBLIC_IP, UK_IP, UNMAPPED_IP, run_async


def init(tracking, visitor_key="v1", url="https://example.com/home", ip=PUBLIC_IP, **fields):
    request = InitSessionRequest(visitor_unique_id=visitor_key, url=url, **fields)
    return run_async(tracking.ingestion.init_session(request, ip, DESKTOP_UA))


def session_row(fake_d1, session_id):
    return fake_d1.rows("SELECT * FROM sessions WHERE id = ?", (session_id,))[0]


def visitor_row(fake_d1, visitor_key="v1"):
    return fake_d1.rows("SELECT * FROM visitors WHERE visitor_unique_id = ?", (visitor_key,))[0]


class TestInitSession:
    """Test visitor resolution and sticky session attachment."""

    def test_first_visit_creates_visitor_and_session(self, tracking, fake_d1):
        """A new key creates one visitor and one session with page_views=1."""
        result = init(tracking)

        assert result.visitor_unique_id == "v1"
        assert result.session_unique_id
        session = session_row(fake_d1, result.session_id)
        assert session["page_views"] == 1
        assert session["landing_page"] == "https://example.com/home"
        assert session["exit_page"] == "https://example.com/home"
        assert session["is_bounce"] is None

        visitor = visitor_row(fake_d1)
        assert visitor["total_visits"] == 1
        assert visitor["first_seen"] == visitor["last_seen"] == "2026-06-15 18:00:00"

    def test_generates_visitor_key_when_missing(self, tracking, fake_d1):
        result = init(tracking, visitor_key=None)

        assert len(result.visitor_unique_id) == 36
        assert fake_d1.count("visitors") == 1

    def test_records_location_and_technology(self, tracking, fake_d1):
        result = init(tracking)

        visitor = visitor_row(fake_d1)
        assert (visitor["country"], visitor["city"], visitor["region"]) == ("US", "Tampa", "FL")
        assert visitor["ip_address"] == PUBLIC_IP
        session = session_row(fake_d1, result.session_id)
        assert (session["device_type"], session["browser"], session["os"]) == ("desktop", "Chrome", "Windows")

    def test_unmapped_ip_is_tracked_as_unknown(self, tracking, fake_d1):
        init(tracking, ip=UNMAPPED_IP)

        visitor = visitor_row(fake_d1)
        assert (visitor["country"], visitor["city"], visitor["region"]) == ("Unknown", "Unknown", "Unknown")

    def test_reuses_session_within_window(self, tracking, fake_d1, clock):
        """Two inits 10 minutes apart share a session without a new visit."""
        first = init(tracking)
        clock.advance(minutes=10)
        second = init(tracking, url="https://example.com/about")

        assert second.session_id == first.session_id
        session = session_row(fake_d1, first.session_id)
        assert session["page_views"] == 2
        assert session["landing_page"] == "https://example.com/home"
        assert session["exit_page"] == "https://example.com/about"
        assert visitor_row(fake_d1)["total_visits"] == 1
        assert visitor_row(fake_d1)["last_seen"] == "2026-06-15 18:10:00"

    def test_new_session_after_window(self, tracking, fake_d1, clock):
        first = init(tracking)
        clock.advance(minutes=31)
        second = init(tracking)

        assert second.session_id != first.session_id
        assert fake_d1.count("sessions") == 2
        assert visitor_row(fake_d1)["total_visits"] == 2

    def test_window_is_measured_from_session_start(self, tracking, fake_d1, clock):
        """Activity inside a session doesn't extend it: openness is start_time based."""
        first = init(tracking)
        clock.advance(minutes=20)
        init(tracking)
        clock.advance(minutes=15)
        third = init(tracking)

        assert third.session_id != first.session_id
        # last_seen was 15 minutes old, so this is not a new visit
        assert visitor_row(fake_d1)["total_visits"] == 1

    def test_location_refreshed_on_every_init(self, tracking, fake_d1, clock):
        init(tracking)
        clock.advance(minutes=5)
        init(tracking, ip=UK_IP)

        visitor = visitor_row(fake_d1)
        assert visitor["country"] == "GB"
        assert visitor["ip_address"] == UK_IP

    def test_appends_page_view_event(self, tracking, fake_d1):
        result = init(tracking)

        events = fake_d1.rows("SELECT * FROM events")
        assert len(events) == 1
        assert events[0]["type"] == "pageview"
        assert events[0]["event_name"] == "Page View"
        assert events[0]["session_id"] == result.session_id

    def test_init_pageview_is_not_scored(self, tracking, fake_d1):
        init(tracking, url="https://example.com/pricing")

        assert visitor_row(fake_d1)["lead_score"] == 0

    def test_captures_attribution_at_creation(self, tracking, fake_d1, clock):
        result = init(
            tracking,
            referrer="https://www.google.com/search?q=crm",
            utm_params={"utm_source": "newsletter", "campaign": "spring"},
            screen_resolution="1920x1080",
            timezone="America/Chicago",
        )
        clock.advance(minutes=1)
        init(tracking, referrer="https://facebook.com/", utm_params={"utm_source": "facebook"})

        session = session_row(fake_d1, result.session_id)
        assert session["referrer_url"] == "https://www.google.com/search?q=crm"
        assert session["referrer_type"] == "organic"
        assert session["utm_source"] == "newsletter"
        assert session["utm_campaign"] == "spring"
        assert session["screen_resolution"] == "1920x1080"
        assert session["timezone"] == "America/Chicago"

    def test_utm_parsed_from_url_when_not_sent(self, tracking, fake_d1):
        result = init(tracking, url="https://example.com/?utm_source=google&utm_medium=cpc")

        session = session_row(fake_d1, result.session_id)
        assert session["utm_source"] == "google"
        assert session["utm_medium"] == "cpc"
        assert session["referrer_type"] == "direct"

    def test_same_site_referrer_is_direct(self, tracking, fake_d1, clock):
        internal = init(tracking, url="https://www.example.com/home", referrer="https://example.com/blog/post")
        clock.advance(minutes=31)
        external = init(tracking, url="https://www.example.com/home", referrer="https://partner.example.org/")

        assert session_row(fake_d1, internal.session_id)["referrer_type"] == "direct"
        assert session_row(fake_d1, external.session_id)["referrer_type"] == "referral"


class TestNonProductionTraffic:
    """Internal traffic gets the sentinel and writes nothing."""

    @pytest.mark.parametrize("ip", ["127.0.0.1", "::1", "10.1.2.3", "192.168.1.5", "172.20.0.4", "::ffff:127.0.0.1"])
    def test_returns_sentinel_without_writes(self, tracking, fake_d1, ip):
        requests_before = len(fake_d1.requests)

        result = init(tracking, ip=ip)

        assert result.session_id == "dev_session"
        assert result.visitor_unique_id == "dev_visitor"
        assert result.message == "Tracking skipped for local environment"
        assert len(fake_d1.requests) == requests_before
        assert fake_d1.count("visitors") == 0
        assert fake_d1.count("sessions") == 0

    def test_sentinel_session_is_accepted_everywhere(self, tracking, fake_d1):
        requests_before = len(fake_d1.requests)

        run_async(tracking.ingestion.track_event("dev_session", "click", "https://example.com/"))
        run_async(tracking.ingestion.pulse("dev_session", 12))
        run_async(tracking.ingestion.identify("dev_session", "dev@example.com"))

        assert len(fake_d1.requests) == requests_before


class TestTrackEvent:
    """Test event logging, counters and lead scoring."""

    def test_unknown_session_raises(self, tracking):
        with pytest.raises(SessionNotFoundError):
            run_async(tracking.ingestion.track_event("missing", "click", "https://example.com/"))

    def test_pageview_increments_page_views(self, tracking, fake_d1):
        result = init(tracking)

        run_async(tracking.ingestion.track_event(result.session_id, "pageview", "https://example.com/docs"))

        session = session_row(fake_d1, result.session_id)
        assert session["page_views"] == 2
        assert session["events_count"] == 0
        assert session["exit_page"] == "https://example.com/docs"

    def test_click_increments_events_count_and_stores_data(self, tracking, fake_d1):
        result = init(tracking)
        data = {"x": 120, "y": 340, "viewport_width": 1280, "selector": "button.cta"}

        run_async(tracking.ingestion.track_event(result.session_id, "click", "https://example.com/home", data))

        session = session_row(fake_d1, result.session_id)
        assert session["page_views"] == 1
        assert session["events_count"] == 1
        click = fake_d1.rows("SELECT * FROM events WHERE type = 'click'")[0]
        assert json.loads(click["data"]) == data
        assert click["visitor_id"] == visitor_row(fake_d1)["id"]

    def test_scores_are_additive(self, tracking, fake_d1):
        result = init(tracking)

        run_async(tracking.ingestion.track_event(result.session_id, "pageview", "https://example.com/Pricing"))
        run_async(tracking.ingestion.track_event(result.session_id, "form_submit", "https://example.com/contact",
                                                 {"form_id": "contact", "has_email": True}))
        run_async(tracking.ingestion.track_event(result.session_id, "click", "https://example.com/pricing"))

        assert visitor_row(fake_d1)["lead_score"] == 70

    def test_custom_event_name_from_data(self, tracking, fake_d1):
        result = init(tracking)

        run_async(tracking.ingestion.track_event(
            result.session_id, "custom", "https://example.com/", {"event_name": "Video Played"}
        ))

        event = fake_d1.rows("SELECT * FROM events WHERE type = 'custom'")[0]
        assert event["event_name"] == "Video Played"

    def test_visitor_session_scenario(self, tracking, fake_d1, clock):
        """V1 lands, views pricing, and returns 40 minutes later."""
        s1 = init(tracking, url="https://example.com/home")
        assert session_row(fake_d1, s1.session_id)["page_views"] == 1

        clock.advance(minutes=5)
        run_async(tracking.ingestion.track_event(s1.session_id, "pageview", "https://example.com/pricing"))
        assert session_row(fake_d1, s1.session_id)["page_views"] == 2
        assert visitor_row(fake_d1)["lead_score"] == 20

        clock.advance(minutes=35)
        s2 = init(tracking, url="https://example.com/contact")

        assert s2.session_id != s1.session_id
        assert visitor_row(fake_d1)["total_visits"] == 2
        assert session_row(fake_d1, s2.session_id)["landing_page"] == "https://example.com/contact"


class TestPulse:
    """Test duration and bounce recording."""

    def test_bounce_threshold_is_inclusive(self, tracking, fake_d1):
        result = init(tracking)

        run_async(tracking.ingestion.pulse(result.session_id, 30))
        assert session_row(fake_d1, result.session_id)["is_bounce"] == 1

        run_async(tracking.ingestion.pulse(result.session_id, 31))
        assert session_row(fake_d1, result.session_id)["is_bounce"] == 0

    def test_sets_end_time_and_duration(self, tracking, fake_d1, clock):
        result = init(tracking)
        clock.advance(seconds=45)

        run_async(tracking.ingestion.pulse(result.session_id, 45))

        session = session_row(fake_d1, result.session_id)
        assert session["duration"] == 45
        assert session["end_time"] == "2026-06-15 18:00:45"

    def test_unknown_session_raises(self, tracking):
        with pytest.raises(SessionNotFoundError):
            run_async(tracking.ingestion.pulse("missing", 10))


class TestIdentify:
    """Test attaching an email to a visitor."""

    def test_sets_email_and_name(self, tracking, fake_d1):
        result = init(tracking)

        run_async(tracking.ingestion.identify(result.session_id, "ada@example.com", "Ada"))

        visitor = visitor_row(fake_d1)
        assert visitor["identified_email"] == "ada@example.com"
        assert visitor["identified_name"] == "Ada"

    def test_missing_name_keeps_previous(self, tracking, fake_d1):
        result = init(tracking)
        run_async(tracking.ingestion.identify(result.session_id, "ada@example.com", "Ada"))

        run_async(tracking.ingestion.identify(result.session_id, "ada@work.example.com"))

        visitor = visitor_row(fake_d1)
        assert visitor["identified_email"] == "ada@work.example.com"
        assert visitor["identified_name"] == "Ada"

    @pytest.mark.parametrize("email", [None, "", "   "])
    def test_blank_email_is_rejected(self, tracking, email):
        with pytest.raises(TrackingValidationError):
            run_async(tracking.ingestion.identify("dev_session", email))

    def test_unknown_session_raises(self, tracking):
        with pytest.raises(SessionNotFoundError):
            run_async(tracking.ingestion.identify("missing", "ada@example.com"))


class TestVisitorCreation:
    """Test idempotent visitor creation in the identity store."""

    def test_duplicate_key_returns_existing_row(self, tracking, fake_d1, clock):
        from visitor_tracking.geo import UNKNOWN_LOCATION
        from visitor_tracking.user_agent import parse_user_agent

        identity = tracking.ingestion.identity
        ua = parse_user_agent(DESKTOP_UA)

        first, created_first = run_async(identity.create_visitor("dup", PUBLIC_IP, UNKNOWN_LOCATION, ua, clock()))
        second, created_second = run_async(identity.create_visitor("dup", PUBLIC_IP, UNKNOWN_LOCATION, ua, clock()))

        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        assert fake_d1.count("visitors") == 1
