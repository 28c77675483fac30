import os
import sys
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_dir() -> Path:
    if env := os.environ.get("ZIMSHELF_DATA_DIR"):
        return Path(env)
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "zimshelf"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ZIMSHELF_",
        extra="ignore",
    )

    data_dir: Path = Path("")
    db_path: Path = Path("")
    zim_dir: Path = Path("")
    host: str = "127.0.0.1"
    port: int = 8426

    # Content server
    kiwix_serve_path: str = "kiwix-serve"
    kiwix_host: str = "127.0.0.1"
    kiwix_port: int = 8080
    kiwix_request_timeout_seconds: float = 10.0
    supervisor_enabled: bool = True

    # Remote catalog
    catalog_url: str = "https://library.kiwix.org"
    catalog_timeout_seconds: float = 15.0

    # Supervisor grace periods
    restart_cooldown_seconds: float = 2.0
    restart_flag_clear_seconds: float = 5.0
    stop_timeout_seconds: float = 10.0
    crash_uptime_seconds: float = 5.0
    clean_exit_crash_seconds: float = 2.0
    crash_retry_delay_seconds: float = 3.0
    unattributed_retry_delay_seconds: float = 10.0

    # Downloads and updates
    backup_grace_seconds: float = 5.0
    download_flush_wait_seconds: float = 0.5
    download_size_tolerance_bytes: int = 1024

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_tick_seconds: float = 3600.0
    sweep_pause_seconds: float = 2.0

    @model_validator(mode="after")
    def _resolve_data_paths(self) -> "Settings":
        if self.data_dir == Path(""):
            self.data_dir = _default_data_dir()
        if self.db_path == Path(""):
            self.db_path = self.data_dir / "zimshelf.db"
        if self.zim_dir == Path(""):
            self.zim_dir = self.data_dir / "zim"
        return self


settings = Settings()
