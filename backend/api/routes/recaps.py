"""Daily recap routes."""

from datetime import date

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_current_user_id, get_services
from api.schemas import DailyRecapListResponse, DailyRecapResponse
from api.services import Services
from models import DailyRecap
from recap.aggregation import generate_recap_summary

router = APIRouter(prefix="/recaps", tags=["recaps"])


def _to_response(recap: DailyRecap) -> DailyRecapResponse:
    response = DailyRecapResponse.model_validate(recap)
    response.summary = generate_recap_summary(recap)
    return response


@router.get("", response_model=DailyRecapListResponse)
async def list_recaps(
    limit: int = Query(30, ge=1, le=365),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> DailyRecapListResponse:
    """Stored recaps, most recent day first."""
    recaps = await services.recaps.get_user_recaps(user_id, limit=limit)
    return DailyRecapListResponse(items=[_to_response(r) for r in recaps])


@router.get("/{recap_date}", response_model=DailyRecapResponse)
async def get_recap(
    recap_date: date,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> DailyRecapResponse:
    """Recap for one day; today is computed from the plays so far."""
    recap = await services.recaps.get_daily_aggregate(user_id, recap_date)
    return _to_response(recap)
