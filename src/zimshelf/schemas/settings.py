from pydantic import BaseModel, Field


class UpdateSettingsOut(BaseModel):
    check_interval_hours: int
    auto_download_enabled: bool
    min_space_buffer_gb: float
    download_window_start: int
    download_window_end: int


class UpdateSettingsIn(BaseModel):
    check_interval_hours: int | None = Field(default=None, ge=1)
    auto_download_enabled: bool | None = None
    min_space_buffer_gb: float | None = Field(default=None, ge=0)
    download_window_start: int | None = Field(default=None, ge=0, le=23)
    download_window_end: int | None = Field(default=None, ge=0, le=23)
