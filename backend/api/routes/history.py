"""Listening history routes."""

from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import get_current_user_id, get_services
from api.schemas import (
    HistoryListResponse,
    ListeningStatsResponse,
    PlayedTrackResponse,
    SyncResponse,
    TrackingRequest,
    TrackingStatusResponse,
)
from api.services import Services
from ingest.polling import PollingSession

router = APIRouter(prefix="/history", tags=["history"])


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Read naive bounds as UTC so mixed bounds compare."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _tracking_status(user_id: str, session: Optional[PollingSession]) -> TrackingStatusResponse:
    if session is None:
        return TrackingStatusResponse(
            user_id=user_id,
            running=False,
            state="stopped",
            active=False,
            backoff_level=0,
            current_delay_seconds=0.0,
        )
    last = session.last_result
    return TrackingStatusResponse(
        user_id=user_id,
        running=session.running,
        state=session.state.value,
        active=session.active,
        backoff_level=session.backoff_level,
        current_delay_seconds=session.current_delay,
        halt_reason=session.halt_reason,
        last_fetched=last.fetched if last else None,
        last_ingested=last.ingested if last else None,
    )


@router.post("/sync", response_model=SyncResponse)
async def sync_history(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> SyncResponse:
    """Sync recent plays from Spotify right now."""
    result = await services.synchronizer.sync_now(user_id)
    return SyncResponse(fetched=result.fetched, ingested=result.ingested, cursor=result.cursor)


@router.get("", response_model=HistoryListResponse)
async def list_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> HistoryListResponse:
    """List stored plays, newest first."""
    start_date = _as_utc(start_date)
    end_date = _as_utc(end_date)
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must be before end_date")

    page = await services.synchronizer.get_history(
        user_id, limit=limit, offset=offset, start_date=start_date, end_date=end_date
    )
    return HistoryListResponse(
        items=[PlayedTrackResponse.model_validate(t) for t in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.get("/stats", response_model=ListeningStatsResponse)
async def listening_stats(
    period: Literal["24h", "7d", "30d", "1y"] = Query("7d"),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> ListeningStatsResponse:
    """Totals for the trailing period."""
    stats = await services.synchronizer.get_listening_stats(user_id, period)
    return ListeningStatsResponse(
        period=stats.period,
        total_tracks=stats.total_tracks,
        total_minutes=stats.total_minutes,
        unique_artists=stats.unique_artists,
    )


@router.get("/tracking", response_model=TrackingStatusResponse)
async def tracking_status(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> TrackingStatusResponse:
    """State of the user's background polling."""
    return _tracking_status(user_id, services.polling.get(user_id))


@router.post("/tracking/start", response_model=TrackingStatusResponse)
async def start_tracking(
    request: TrackingRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> TrackingStatusResponse:
    """Start polling while the client is open."""
    if not await services.credentials.has_credential(user_id):
        raise HTTPException(status_code=409, detail="Spotify is not connected")
    session = services.polling.start(user_id, active=request.active)
    return _tracking_status(user_id, session)


@router.post("/tracking/activity", response_model=TrackingStatusResponse)
async def tracking_activity(
    request: TrackingRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> TrackingStatusResponse:
    """Report foreground/background so the poll interval can adapt."""
    session = services.polling.set_active(user_id, request.active)
    if session is None:
        raise HTTPException(status_code=404, detail="Tracking is not running")
    return _tracking_status(user_id, session)


@router.post("/tracking/stop", response_model=TrackingStatusResponse)
async def stop_tracking(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> TrackingStatusResponse:
    """Stop polling when the client goes away."""
    await services.polling.stop(user_id)
    return _tracking_status(user_id, None)
