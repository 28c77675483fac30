from sqlmodel import Field, SQLModel

SETTINGS_ROW_ID = 1


class UpdateSettings(SQLModel, table=True):
    __tablename__ = "zim_update_settings"

    id: int | None = Field(default=SETTINGS_ROW_ID, primary_key=True)
    check_interval_hours: int = 24
    auto_download_enabled: bool = False
    min_space_buffer_gb: float = 5
    download_window_start: int = Field(default=2, ge=0, le=23)
    download_window_end: int = Field(default=6, ge=0, le=23)
