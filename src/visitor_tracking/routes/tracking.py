"""
Tracking API routes.

Ingestion endpoints (called by the embedded tracker script) and read-only
dashboard endpoints. Mount under a prefix, e.g. ``/tracking``.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, Request

from ..aggregation import AggregationEngine
from ..config import TrackingConfig
from ..core.models import (
    ContactActivity,
    GeoStat,
    HeatmapClicks,
    HeatmapPages,
    IdentifyRequest,
    InitSessionRequest,
    InitSessionResponse,
    PulseRequest,
    SuccessResponse,
    Summary,
    TrackEventRequest,
    VisitorSessions,
)
from ..errors import DatabaseError, SessionNotFoundError, TrackingError, TrackingValidationError
from ..ingestion import IngestionService

logger = logging.getLogger(__name__)

SESSION_NOT_FOUND = "Session not found"


def client_ip(request: Request, trust_proxy_headers: bool = False) -> str | None:
    """Caller IP; the first X-Forwarded-For hop when proxy headers are trusted."""
    if trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else None


def _require_email(email: str | None) -> str:
    if not email or not email.strip():
        raise HTTPException(status_code=400, detail="Email required")
    return email.strip()


def create_tracking_router(
    ingestion: IngestionService,
    aggregation: AggregationEngine,
    config: TrackingConfig,
) -> APIRouter:
    """Create the tracking router.

    Args:
        ingestion: Service handling tracker writes
        aggregation: Engine serving dashboard reads
        config: Tracking configuration (proxy header trust)

    Returns:
        FastAPI router with tracking endpoints
    """
    router = APIRouter(tags=["tracking"])

    # =========================================================================
    # INGESTION
    # =========================================================================

    @router.post("/init", response_model=InitSessionResponse, response_model_exclude_none=True)
    async def init_session(body: InitSessionRequest, request: Request):
        """Start or resume a visit."""
        try:
            return await ingestion.init_session(
                body,
                client_ip(request, config.trust_proxy_headers),
                request.headers.get("user-agent"),
            )
        except (TrackingError, LookupError):
            logger.exception("Tracking init failed")
            raise HTTPException(status_code=500, detail="Tracking initialization failed")

    @router.post("/event", response_model=SuccessResponse)
    async def track_event(body: TrackEventRequest):
        try:
            await ingestion.track_event(body.session_id, body.type, body.url, body.data)
        except SessionNotFoundError:
            raise HTTPException(status_code=404, detail=SESSION_NOT_FOUND)
        except (TrackingError, LookupError):
            logger.exception(f"Event tracking failed for session {body.session_id}")
            raise HTTPException(status_code=500, detail="Event tracking failed")
        return SuccessResponse()

    @router.post("/pulse", response_model=SuccessResponse)
    async def pulse(body: PulseRequest):
        try:
            await ingestion.pulse(body.session_id, body.duration)
        except SessionNotFoundError:
            raise HTTPException(status_code=404, detail=SESSION_NOT_FOUND)
        except (TrackingError, LookupError):
            logger.exception(f"Pulse failed for session {body.session_id}")
            raise HTTPException(status_code=500, detail="Pulse failed")
        return SuccessResponse()

    @router.post("/identify", response_model=SuccessResponse)
    async def identify(body: IdentifyRequest):
        try:
            await ingestion.identify(body.session_id, body.email, body.name)
        except TrackingValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SessionNotFoundError:
            raise HTTPException(status_code=404, detail=SESSION_NOT_FOUND)
        except (TrackingError, LookupError):
            logger.exception(f"Identify failed for session {body.session_id}")
            raise HTTPException(status_code=500, detail="Identify failed")
        return SuccessResponse()

    # =========================================================================
    # DASHBOARD
    # =========================================================================

    @router.get("/summary", response_model=Summary)
    async def summary(range: str = Query("today", description="today, week or month")):
        try:
            return await aggregation.summary(range)
        except DatabaseError as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/contact-activity", response_model=ContactActivity)
    async def contact_activity(email: str | None = Query(None)):
        email = _require_email(email)
        try:
            return await aggregation.contact_activity(email)
        except DatabaseError as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/visitor-sessions", response_model=VisitorSessions)
    async def visitor_sessions(email: str | None = Query(None)):
        email = _require_email(email)
        try:
            return await aggregation.visitor_sessions(email)
        except DatabaseError as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/heatmap", response_model=HeatmapClicks | HeatmapPages)
    async def heatmap(url: str | None = Query(None, description="Page URL substring")):
        """Clicks for a page, or the top landing pages when no URL is given."""
        try:
            if url:
                return HeatmapClicks(clicks=await aggregation.heatmap_clicks(url))
            return HeatmapPages(pages=await aggregation.heatmap_top_pages())
        except DatabaseError as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/geo", response_model=list[GeoStat])
    async def geo_stats():
        try:
            return await aggregation.geo_stats()
        except DatabaseError as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
