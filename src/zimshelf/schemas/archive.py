from datetime import datetime

from pydantic import BaseModel


class ArchiveOut(BaseModel):
    id: int
    filename: str
    filepath: str
    title: str
    description: str | None = None
    language: str | None = None
    size: int | None = None
    article_count: int | None = None
    media_count: int | None = None
    source_url: str | None = None
    status: str
    error_message: str | None = None
    hidden: bool = False
    auto_update_enabled: bool = False
    last_checked_at: datetime | None = None
    available_update_url: str | None = None
    available_update_version: str | None = None
    available_update_size: int | None = None
    available_update_date: datetime | None = None
    available_update_article_count: int | None = None
    available_update_media_count: int | None = None
    updated_date: datetime | None = None
    created_at: datetime
    has_update: bool = False
    kiwix_url: str | None = None


class ArchiveMetadataUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    hidden: bool | None = None


class AutoUpdateToggle(BaseModel):
    enabled: bool


class UpdateCheckOut(BaseModel):
    archive_id: int
    update_available: bool
    current_version: str | None = None
    latest_version: str | None = None
    update_url: str | None = None
    update_size: int | None = None
    update_date: datetime | None = None
    error: str | None = None


class UpdateCheckSummary(BaseModel):
    checked: int
    updates_available: int
    errors: int
    results: list[UpdateCheckOut]


class UpdateStartResult(BaseModel):
    archive_id: int
    filename: str
    message: str
