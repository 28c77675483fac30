from datetime import UTC, datetime

from sqlmodel import Field, SQLModel


class ActivityLog(SQLModel, table=True):
    __tablename__ = "zim_activity_logs"

    id: int | None = Field(default=None, primary_key=True)
    action: str = Field(index=True)
    zim_title: str | None = None
    zim_filename: str | None = None
    zim_id: int | None = Field(default=None, index=True)
    details: str | None = None
    status: str = Field(default="success", index=True)  # success | failed | in_progress
    error_message: str | None = None
    file_size: int | None = None
    download_duration: int | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), index=True)
