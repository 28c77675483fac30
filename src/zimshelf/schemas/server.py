from pydantic import BaseModel


class ServerStatusOut(BaseModel):
    state: str
    pid: int | None = None
    port: int
    archive_count: int
    uptime_seconds: float | None = None
    last_exit_code: int | None = None
    quarantined_count: int = 0


class DiskUsageOut(BaseModel):
    available_bytes: int
    total_bytes: int
    used_bytes: int
