"""
Ingestion service: turns tracker calls into visitor, session and event writes.

Every call is stateless; nothing is cached between requests. Non-production
callers (loopback and private networks) get a sentinel session id back and
cause no writes. Later calls carrying that sentinel are accepted and
ignored.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .config import DEV_SESSION_ID, DEV_VISITOR_ID, TrackingConfig
from .core.database import utc_now
from .core.events import EventStore
from .core.identity import IdentityStore
from .core.models import InitSessionRequest, InitSessionResponse, Session, Visitor
from .errors import SessionNotFoundError, TrackingValidationError
from .geo import GeoResolver, clean_ip
from .referrer import classify_referrer, referrer_hostname
from .scoring import PAGEVIEW, ScoringRules, score
from .user_agent import UserAgentInfo, parse_user_agent
from .utm import normalize_utm

logger = logging.getLogger(__name__)

LOCAL_SKIP_MESSAGE = "Tracking skipped for local environment"


class IngestionService:
    """Session-init, event, pulse and identify operations."""

    def __init__(
        self,
        identity: IdentityStore,
        events: EventStore,
        geo: GeoResolver,
        config: TrackingConfig,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.identity = identity
        self.events = events
        self.geo = geo
        self.config = config
        self.clock = clock or utc_now
        self.rules = ScoringRules(
            high_intent_path=config.high_intent_path,
            pageview_increment=config.pageview_score,
            form_submit_increment=config.form_submit_score,
        )

    @property
    def session_window(self) -> timedelta:
        return timedelta(minutes=self.config.session_timeout_minutes)

    async def init_session(
        self,
        request: InitSessionRequest,
        client_ip: Optional[str],
        user_agent: Optional[str] = None,
    ) -> InitSessionResponse:
        """Resolve the visitor, attach or open a session, and log the pageview.

        Returns:
            Session/visitor ids, or the dev sentinel for non-production callers
        """
        ip = clean_ip(client_ip)
        if self.geo.is_non_production(ip):
            logger.info(f"Skipping tracking for non-production IP {ip}")
            return InitSessionResponse(
                session_id=DEV_SESSION_ID,
                visitor_unique_id=DEV_VISITOR_ID,
                message=LOCAL_SKIP_MESSAGE,
            )

        now = self.clock()
        location = self.geo.resolve(ip)
        ua = parse_user_agent(user_agent)
        window_start = now - self.session_window

        visitor = None
        if request.visitor_unique_id:
            visitor = await self.identity.get_visitor_by_key(request.visitor_unique_id)

        created = False
        if visitor is None:
            visitor_key = request.visitor_unique_id or str(uuid.uuid4())
            visitor, created = await self.identity.create_visitor(visitor_key, ip, location, ua, now)
            if created:
                logger.debug(f"New visitor {visitor.visitor_unique_id} from {location.country}")

        if not created:
            visitor = await self.identity.record_visit(
                visitor.id, ip, location, now, new_visit_before=window_start
            ) or visitor

        session = await self._attach_session(visitor, request, ua, now, window_start)
        await self.events.append_pageview(session.id, visitor.id, request.url, now)

        return InitSessionResponse(
            session_id=session.id,
            visitor_unique_id=visitor.visitor_unique_id,
            session_unique_id=session.session_unique_id,
        )

    async def _attach_session(
        self,
        visitor: Visitor,
        request: InitSessionRequest,
        ua: UserAgentInfo,
        now: datetime,
        window_start: datetime,
    ) -> Session:
        """Reuse the visitor's open session or start a new one."""
        session = await self.identity.find_open_session(visitor.id, window_start)
        if session is not None:
            await self.identity.record_session_pageview(session.id, request.url)
            logger.debug(f"Reattached visitor {visitor.id} to session {session.id}")
            return session

        site_host = referrer_hostname(request.url)
        referrer_type = classify_referrer(request.referrer, current_domain=site_host).type.value
        utm = normalize_utm(request.utm_params, request.url)
        return await self.identity.create_session(
            visitor_id=visitor.id,
            url=request.url,
            referrer=request.referrer,
            referrer_type=referrer_type,
            utm=utm,
            ua=ua,
            screen_resolution=request.screen_resolution,
            timezone=request.timezone,
            now=now,
        )

    async def track_event(
        self,
        session_id: str,
        event_type: str,
        url: Optional[str],
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        """Record an interaction on a session and apply lead scoring.

        Raises:
            SessionNotFoundError: If the session doesn't exist
        """
        if session_id == DEV_SESSION_ID:
            return

        session = await self.identity.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        now = self.clock()
        data = data or {}
        event_name = data.get("event_name") if isinstance(data.get("event_name"), str) else None
        await self.events.append(
            session.id, session.visitor_id, event_type, url, now,
            data=data, event_name=event_name,
        )

        if event_type == PAGEVIEW:
            await self.identity.record_session_pageview(session.id, url)
        else:
            await self.identity.record_session_event(session.id, url)

        increment = score(event_type, url, self.rules)
        if increment > 0:
            await self.identity.add_lead_score(session.visitor_id, increment)
            logger.debug(f"Visitor {session.visitor_id} lead score +{increment} ({event_type})")

    async def pulse(self, session_id: str, duration: int) -> None:
        """Record a heartbeat: the only writer of duration and bounce.

        Raises:
            SessionNotFoundError: If the session doesn't exist
        """
        if session_id == DEV_SESSION_ID:
            return

        is_bounce = duration <= self.config.bounce_threshold_seconds
        if not await self.identity.record_pulse(session_id, duration, is_bounce, self.clock()):
            raise SessionNotFoundError(session_id)

    async def identify(self, session_id: str, email: Optional[str], name: Optional[str] = None) -> None:
        """Attach an email (and optional name) to the session's visitor.

        Raises:
            TrackingValidationError: If email is missing or blank
            SessionNotFoundError: If the session doesn't exist
        """
        if not email or not email.strip():
            raise TrackingValidationError("Email required")
        if session_id == DEV_SESSION_ID:
            return

        if name is not None and not name.strip():
            name = None
        if not await self.identity.identify_session_visitor(session_id, email.strip(), name):
            raise SessionNotFoundError(session_id)
        logger.info(f"Identified visitor for session {session_id}")
