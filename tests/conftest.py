import asyncio
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

import zimshelf.models  # noqa: F401 - register all tables
from zimshelf.config import settings
from zimshelf.database import get_session
from zimshelf.main import app
from zimshelf.models.archive import ZimArchive
from zimshelf.services import disk_space, download_service, kiwix_supervisor
from zimshelf.services.disk_space import DiskSpace
from zimshelf.services.kiwix_supervisor import SupervisorState, SupervisorStatus

_ENGINE_MODULES = (
    "zimshelf.database",
    "zimshelf.services.activity_log",
    "zimshelf.services.kiwix_supervisor",
    "zimshelf.services.download_service",
    "zimshelf.services.update_service",
    "zimshelf.services.scheduler",
)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    return eng


def _monkeypatch_engine(monkeypatch, engine):
    """Point every module-level engine reference at the test engine."""
    for module_path in _ENGINE_MODULES:
        monkeypatch.setattr(f"{module_path}.engine", engine)


class FakeSupervisor:
    """Records restart requests instead of driving a real kiwix-serve."""

    def __init__(self) -> None:
        self.last_touched_archive_id: int | None = None
        self.restart_requests = 0
        self.restarts = 0

    def mark_touched(self, archive_id: int | None) -> None:
        self.last_touched_archive_id = archive_id

    def request_restart(self) -> None:
        self.restart_requests += 1

    async def restart(self) -> bool:
        self.restarts += 1
        return True

    async def start(self) -> bool:
        return True

    async def shutdown(self) -> None:
        pass

    def status(self) -> SupervisorStatus:
        return SupervisorStatus(
            state=SupervisorState.RUNNING,
            pid=4242,
            port=settings.kiwix_port,
            archive_count=1,
            uptime_seconds=12.0,
            last_exit_code=None,
        )


@pytest.fixture(autouse=True)
def fast_settings(tmp_path, monkeypatch):
    """Zero every grace period and keep archives under tmp_path."""
    zim_dir = tmp_path / "zim"
    zim_dir.mkdir()
    monkeypatch.setattr(settings, "zim_dir", zim_dir)
    monkeypatch.setattr(settings, "supervisor_enabled", False)
    monkeypatch.setattr(settings, "scheduler_enabled", False)
    for name in (
        "restart_cooldown_seconds",
        "restart_flag_clear_seconds",
        "crash_retry_delay_seconds",
        "unattributed_retry_delay_seconds",
        "backup_grace_seconds",
        "download_flush_wait_seconds",
        "sweep_pause_seconds",
    ):
        monkeypatch.setattr(settings, name, 0)
    yield zim_dir
    download_service._in_flight.clear()


@pytest.fixture
def fake_supervisor(monkeypatch):
    fake = FakeSupervisor()
    monkeypatch.setattr(kiwix_supervisor, "_supervisor", fake)
    return fake


@pytest.fixture
def zim_dir(fast_settings):
    return fast_settings


@pytest.fixture
def session(engine, monkeypatch):
    with Session(engine) as sess:
        _monkeypatch_engine(monkeypatch, engine)
        yield sess


@pytest.fixture
def client(engine, monkeypatch, fake_supervisor):
    _monkeypatch_engine(monkeypatch, engine)

    def _override_session() -> Generator[Session, None, None]:
        with Session(engine) as sess:
            yield sess

    app.dependency_overrides[get_session] = _override_session
    with TestClient(app, raise_server_exceptions=False) as tc:
        yield tc
    app.dependency_overrides.clear()


@pytest.fixture
def make_archive(session, zim_dir):
    def _make(
        filename: str = "wikipedia_en_all_2023-10.zim",
        *,
        content: bytes = b"old archive",
        create_file: bool = True,
        **fields,
    ) -> ZimArchive:
        path = zim_dir / filename
        if create_file:
            path.write_bytes(content)
        fields.setdefault("title", filename.rsplit(".", 1)[0])
        fields.setdefault("size", len(content))
        archive = ZimArchive(filename=filename, filepath=str(path), **fields)
        session.add(archive)
        session.commit()
        session.refresh(archive)
        return archive

    return _make


@pytest.fixture
def drain_tasks():
    """Await every task spawned by the download service, including ones they spawn."""

    async def _drain() -> None:
        while download_service._background_tasks:
            await asyncio.gather(
                *list(download_service._background_tasks), return_exceptions=True
            )

    return _drain


@pytest.fixture
def free_space(monkeypatch):
    """Pretend the archive volume has the given number of free bytes."""

    def _set(available: int) -> None:
        total = max(available * 2, 1)
        monkeypatch.setattr(
            disk_space,
            "check_available",
            lambda path=None: DiskSpace(
                available_bytes=available, total_bytes=total, used_bytes=total - available
            ),
        )

    return _set
