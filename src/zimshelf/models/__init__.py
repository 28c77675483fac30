from zimshelf.models.activity import ActivityLog
from zimshelf.models.archive import ArchiveStatus, ZimArchive
from zimshelf.models.settings import UpdateSettings

__all__ = [
    "ActivityLog",
    "ArchiveStatus",
    "UpdateSettings",
    "ZimArchive",
]
