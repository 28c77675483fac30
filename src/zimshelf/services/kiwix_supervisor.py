"""Supervision of the external kiwix-serve process.

One ``KiwixSupervisor`` owns the process handle. It serves every ``active``
archive, watches for exits, and treats a very short-lived process as a crash
caused by a malformed archive: the most likely culprit is quarantined and the
server is started again without it.

Suspect selection is deliberately simple. The archive most recently added or
updated (``mark_touched``) is blamed first; otherwise the newest active row.
If nothing can be blamed the server is retried after a longer delay.
"""

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from sqlmodel import Session, col, select

from zimshelf.config import settings
from zimshelf.database import engine
from zimshelf.models.archive import ArchiveStatus, ZimArchive
from zimshelf.services.activity_log import log_activity

logger = logging.getLogger(__name__)


class SupervisorState(StrEnum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


@dataclass(frozen=True, slots=True)
class SupervisorStatus:
    state: SupervisorState
    pid: int | None
    port: int
    archive_count: int
    uptime_seconds: float | None
    last_exit_code: int | None


def resolve_executable(configured: str) -> str:
    """Prefer the configured binary path; fall back to ``kiwix-serve`` on PATH."""
    if Path(configured).is_file():
        return configured
    return shutil.which(configured) or shutil.which("kiwix-serve") or configured


class KiwixSupervisor:
    def __init__(self, executable: str | None = None, port: int | None = None) -> None:
        self.executable = executable or settings.kiwix_serve_path
        self.port = port or settings.kiwix_port
        self.state = SupervisorState.STOPPED
        self.last_exit_code: int | None = None
        self.last_touched_archive_id: int | None = None
        self.served_archive_ids: list[int] = []
        self._process: asyncio.subprocess.Process | None = None
        self._started_at: float | None = None
        self._intentional_restart = False
        self._flag_clear_task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()  # type: ignore[type-arg]

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def _spawn_task(self, coro) -> asyncio.Task:  # type: ignore[type-arg]
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def mark_touched(self, archive_id: int | None) -> None:
        """Remember the archive most recently added or replaced."""
        self.last_touched_archive_id = archive_id

    def _active_archives(self) -> list[ZimArchive]:
        with Session(engine) as s:
            return list(
                s.exec(
                    select(ZimArchive)
                    .where(ZimArchive.status == ArchiveStatus.ACTIVE)
                    .order_by(col(ZimArchive.id))
                ).all()
            )

    async def start(self) -> bool:
        async with self._lock:
            return await self._start_locked()

    async def _start_locked(self) -> bool:
        if self._process is not None:
            return True

        try:
            archives = self._active_archives()
        except Exception:
            logger.warning("kiwix-serve: registry not readable, not starting", exc_info=True)
            return False
        if not archives:
            logger.info("No active ZIM archives to serve")
            self.state = SupervisorState.STOPPED
            self.served_archive_ids = []
            return False

        args = ["--port", str(self.port), *(a.filepath for a in archives)]
        self.state = SupervisorState.STARTING
        try:
            proc = await asyncio.create_subprocess_exec(resolve_executable(self.executable), *args)
        except OSError:
            logger.exception("Failed to start kiwix-serve (%s)", self.executable)
            self.state = SupervisorState.STOPPED
            return False

        self._process = proc
        self._started_at = time.monotonic()
        self.served_archive_ids = [a.id for a in archives if a.id is not None]
        self.state = SupervisorState.RUNNING
        self._spawn_task(self._watch(proc, self._started_at))
        logger.info(
            "kiwix-serve started on port %d with %d archive(s) (pid %s)",
            self.port,
            len(archives),
            proc.pid,
        )
        return True

    async def stop(self) -> None:
        async with self._lock:
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        proc = self._process
        # Clearing the handle first tells the watcher this exit was requested
        self._process = None
        self._started_at = None
        self.state = SupervisorState.STOPPED
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=settings.stop_timeout_seconds)
        except TimeoutError:
            logger.warning("kiwix-serve did not exit after SIGTERM, killing pid %s", proc.pid)
            proc.kill()
            await proc.wait()
        logger.info("kiwix-serve stopped")

    async def restart(self) -> bool:
        """Stop, cool down, and start again over the current active archives."""
        self._intentional_restart = True
        self._cancel_flag_clear()
        async with self._lock:
            await self._stop_locked()
            await asyncio.sleep(settings.restart_cooldown_seconds)
            started = await self._start_locked()
        # Only the latest restart may clear the flag
        self._cancel_flag_clear()
        if started:
            self._flag_clear_task = self._spawn_task(self._clear_restart_flag())
        else:
            self._intentional_restart = False
        return started

    def _cancel_flag_clear(self) -> None:
        task, self._flag_clear_task = self._flag_clear_task, None
        if task is not None:
            task.cancel()

    def request_restart(self) -> asyncio.Task:  # type: ignore[type-arg]
        """Fire-and-forget restart for callers that mutated the set of active archives."""
        return self._spawn_task(self._safe_restart())

    async def _safe_restart(self) -> None:
        try:
            await self.restart()
        except Exception:
            logger.exception("kiwix-serve restart failed")

    async def _clear_restart_flag(self) -> None:
        await asyncio.sleep(settings.restart_flag_clear_seconds)
        self._intentional_restart = False

    async def _watch(self, proc: asyncio.subprocess.Process, started_at: float) -> None:
        returncode = await proc.wait()
        if proc is not self._process:
            return
        self._process = None
        self._started_at = None
        self.state = SupervisorState.EXITED
        uptime = time.monotonic() - started_at
        await self.handle_exit(returncode, uptime)

    def is_crash(self, returncode: int | None, uptime: float) -> bool:
        if returncode != 0 and uptime < settings.crash_uptime_seconds:
            return True
        # kiwix-serve can exit 0 immediately when it rejects an archive
        return (
            returncode == 0
            and uptime < settings.clean_exit_crash_seconds
            and not self._intentional_restart
        )

    async def handle_exit(self, returncode: int | None, uptime: float) -> None:
        """Classify an unexpected exit and recover. Never raises."""
        self.last_exit_code = returncode
        logger.info("kiwix-serve exited with code %s after %.1fs", returncode, uptime)
        try:
            if not self.is_crash(returncode, uptime):
                self.state = SupervisorState.STOPPED
                return

            suspect = self.quarantine_suspect(returncode, uptime)
            if suspect is not None:
                await asyncio.sleep(settings.crash_retry_delay_seconds)
            else:
                logger.warning("kiwix-serve crashed but no suspect archive found; retrying")
                await asyncio.sleep(settings.unattributed_retry_delay_seconds)
            await self.start()
        except Exception:
            logger.exception("Crash recovery for kiwix-serve failed")
            self.state = SupervisorState.STOPPED

    def find_suspect(self, session: Session) -> ZimArchive | None:
        if self.last_touched_archive_id is not None:
            touched = session.get(ZimArchive, self.last_touched_archive_id)
            if touched is not None and touched.status == ArchiveStatus.ACTIVE:
                return touched
        return session.exec(
            select(ZimArchive)
            .where(ZimArchive.status == ArchiveStatus.ACTIVE)
            .order_by(col(ZimArchive.created_at).desc(), col(ZimArchive.id).desc())
        ).first()

    def quarantine_suspect(self, returncode: int | None, uptime: float) -> ZimArchive | None:
        with Session(engine) as s:
            suspect = self.find_suspect(s)
            if suspect is None:
                return None
            suspect.status = ArchiveStatus.QUARANTINED
            suspect.error_message = (
                f"kiwix-serve crashed (exit code {returncode}, uptime {uptime:.1f}s) "
                f"shortly after loading this archive; it may be corrupt"
            )
            s.add(suspect)
            s.commit()
            s.refresh(suspect)
        if self.last_touched_archive_id == suspect.id:
            self.last_touched_archive_id = None
        logger.warning("Quarantined ZIM %s after kiwix-serve crash", suspect.filename)
        log_activity(
            "zim_quarantined",
            archive=suspect,
            details=suspect.error_message,
            status="failed",
        )
        return suspect

    def status(self) -> SupervisorStatus:
        uptime = time.monotonic() - self._started_at if self._started_at is not None else None
        return SupervisorStatus(
            state=self.state,
            pid=self._process.pid if self._process is not None else None,
            port=self.port,
            archive_count=len(self.served_archive_ids) if self._process is not None else 0,
            uptime_seconds=uptime,
            last_exit_code=self.last_exit_code,
        )

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.stop()


_supervisor: KiwixSupervisor | None = None


def get_supervisor() -> KiwixSupervisor:
    global _supervisor
    if _supervisor is None:
        _supervisor = KiwixSupervisor()
    return _supervisor


async def release_supervisor() -> None:
    global _supervisor
    if _supervisor is not None:
        await _supervisor.shutdown()
        _supervisor = None
