from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from zimshelf.database import get_session
from zimshelf.schemas.logs import ActivityLogOut, ActivityPage, ActivityStatsOut
from zimshelf.services.activity_log import activity_stats, list_activity

router = APIRouter(prefix="/logs", tags=["logs"])


@router.get("/", response_model=ActivityPage)
def read_logs(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    action: str | None = None,
    status: str | None = None,
    session: Session = Depends(get_session),
) -> ActivityPage:
    rows, total = list_activity(session, limit=limit, offset=offset, action=action, status=status)
    return ActivityPage(
        total=total,
        limit=limit,
        offset=offset,
        logs=[ActivityLogOut.model_validate(r, from_attributes=True) for r in rows],
    )


@router.get("/stats", response_model=ActivityStatsOut)
def read_stats(session: Session = Depends(get_session)) -> ActivityStatsOut:
    stats = activity_stats(session)
    return ActivityStatsOut(
        total_actions=stats.total_actions,
        action_counts=stats.action_counts,
        total_download_size=stats.total_download_size,
        avg_download_duration=stats.avg_download_duration,
        recent_errors=[
            ActivityLogOut.model_validate(r, from_attributes=True) for r in stats.recent_errors
        ],
    )
