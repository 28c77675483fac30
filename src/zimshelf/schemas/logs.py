from datetime import datetime

from pydantic import BaseModel


class ActivityLogOut(BaseModel):
    id: int
    action: str
    zim_title: str | None = None
    zim_filename: str | None = None
    zim_id: int | None = None
    details: str | None = None
    status: str
    error_message: str | None = None
    file_size: int | None = None
    download_duration: int | None = None
    created_at: datetime


class ActivityPage(BaseModel):
    total: int
    limit: int
    offset: int
    logs: list[ActivityLogOut]


class ActivityStatsOut(BaseModel):
    total_actions: int
    action_counts: dict[str, int]
    total_download_size: int
    avg_download_duration: float
    recent_errors: list[ActivityLogOut]
