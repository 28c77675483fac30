from datetime import UTC, datetime
from enum import StrEnum

from sqlmodel import Field, SQLModel


class ArchiveStatus(StrEnum):
    ACTIVE = "active"
    QUARANTINED = "quarantined"


class ZimArchive(SQLModel, table=True):
    __tablename__ = "zim_archives"

    id: int | None = Field(default=None, primary_key=True)
    filename: str = Field(unique=True, index=True)
    filepath: str
    title: str = ""
    description: str | None = None
    language: str | None = None
    size: int | None = None
    article_count: int | None = None
    media_count: int | None = None
    source_url: str | None = None
    status: str = Field(default=ArchiveStatus.ACTIVE, index=True)  # active | quarantined
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
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def has_update(self) -> bool:
        return self.available_update_url is not None

    def clear_available_update(self) -> None:
        self.available_update_url = None
        self.available_update_version = None
        self.available_update_size = None
        self.available_update_date = None
        self.available_update_article_count = None
        self.available_update_media_count = None
