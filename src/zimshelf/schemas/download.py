from datetime import datetime

from pydantic import BaseModel


class DownloadRequest(BaseModel):
    url: str
    title: str | None = None
    description: str | None = None
    language: str | None = None
    size: int | None = None
    article_count: int | None = None
    media_count: int | None = None
    updated_date: datetime | None = None


class DownloadStartResult(BaseModel):
    filename: str
    message: str


class DownloadProgressOut(BaseModel):
    filename: str
    url: str
    title: str
    progress: int
    total_size: int
    downloaded_size: int
    status: str
    is_update: bool
    original_archive_id: int | None = None
    start_time: float
