"""Free-space checks for the volume that holds the ZIM archives."""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from zimshelf.config import settings

logger = logging.getLogger(__name__)

_GB = 1024**3


@dataclass(frozen=True, slots=True)
class DiskSpace:
    available_bytes: int
    total_bytes: int
    used_bytes: int


def _existing_ancestor(path: Path) -> Path:
    """Walk up until a directory that exists, so a missing zim_dir still resolves a volume."""
    current = path.resolve()
    while not current.exists() and current != current.parent:
        current = current.parent
    return current


def check_available(path: Path | None = None) -> DiskSpace:
    usage = shutil.disk_usage(_existing_ancestor(path or settings.zim_dir))
    return DiskSpace(
        available_bytes=usage.free,
        total_bytes=usage.total,
        used_bytes=usage.used,
    )


def has_room_for(
    download_size_bytes: int,
    buffer_bytes: int,
    disk: DiskSpace | None = None,
) -> bool:
    """Return True iff the volume can take the download plus the safety buffer."""
    disk = disk or check_available()
    return disk.available_bytes >= download_size_bytes + buffer_bytes


def gb_to_bytes(gb: float) -> int:
    return int(gb * _GB)


def format_gb(num_bytes: int | None) -> str:
    if num_bytes is None:
        return "Unknown"
    return f"{num_bytes / _GB:.2f} GB"
