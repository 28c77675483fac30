"""Shared FastAPI dependencies used across routers."""

from fastapi import HTTPException
from sqlmodel import Session

from zimshelf.models.archive import ZimArchive


def get_archive_or_404(archive_id: int, session: Session) -> ZimArchive:
    """Look up an archive by id, raising 404 if not found."""
    archive = session.get(ZimArchive, archive_id)
    if not archive:
        raise HTTPException(404, f"ZIM archive {archive_id} not found")
    return archive
