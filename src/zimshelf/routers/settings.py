from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from zimshelf.database import get_session
from zimshelf.models.settings import UpdateSettings
from zimshelf.schemas.settings import UpdateSettingsIn, UpdateSettingsOut
from zimshelf.services.scheduler import get_scheduler
from zimshelf.services.settings_helpers import get_update_settings, update_update_settings

router = APIRouter(prefix="/settings", tags=["settings"])


def _to_out(row: UpdateSettings) -> UpdateSettingsOut:
    return UpdateSettingsOut(
        check_interval_hours=row.check_interval_hours,
        auto_download_enabled=row.auto_download_enabled,
        min_space_buffer_gb=row.min_space_buffer_gb,
        download_window_start=row.download_window_start,
        download_window_end=row.download_window_end,
    )


@router.get("/updates", response_model=UpdateSettingsOut)
def read_update_settings(session: Session = Depends(get_session)) -> UpdateSettingsOut:
    return _to_out(get_update_settings(session))


@router.put("/updates", response_model=UpdateSettingsOut)
async def write_update_settings(
    data: UpdateSettingsIn, session: Session = Depends(get_session)
) -> UpdateSettingsOut:
    changes = data.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(400, "No settings provided")
    row = update_update_settings(session, **changes)
    scheduler = get_scheduler()
    if scheduler.is_running:
        await scheduler.restart()
    return _to_out(row)
