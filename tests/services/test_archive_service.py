import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from zimshelf.models.activity import ActivityLog
from zimshelf.models.archive import ArchiveStatus, ZimArchive
from zimshelf.services import archive_service

OLD = "wikipedia_en_all_2023-10.zim"


class TestDeleteArchive:
    def test_removes_row_and_file(self, session, make_archive, zim_dir, fake_supervisor):
        archive = make_archive(OLD)
        fake_supervisor.mark_touched(archive.id)
        archive_service.delete_archive(session, archive)
        assert not (zim_dir / OLD).exists()
        assert session.exec(select(ZimArchive)).all() == []
        assert fake_supervisor.last_touched_archive_id is None
        assert fake_supervisor.restart_requests == 1

    def test_failed_commit_keeps_file(
        self, session, engine, make_archive, zim_dir, fake_supervisor, monkeypatch
    ):
        archive = make_archive(OLD)

        def _locked() -> None:
            raise OperationalError("DELETE FROM zim_archives", {}, Exception("database is locked"))

        monkeypatch.setattr(session, "commit", _locked)
        with pytest.raises(OperationalError):
            archive_service.delete_archive(session, archive)

        assert (zim_dir / OLD).exists()
        with Session(engine) as s:
            row = s.exec(select(ZimArchive)).one()
            assert row.status == ArchiveStatus.ACTIVE
            log = s.exec(select(ActivityLog)).one()
        assert log.action == "zim_delete_failed"
        assert fake_supervisor.restart_requests == 0

    def test_unlink_failure_after_row_removed(
        self, session, make_archive, zim_dir, fake_supervisor
    ):
        # a directory under the archive's name cannot be unlinked
        (zim_dir / OLD).mkdir()
        archive = make_archive(OLD, create_file=False)
        with pytest.raises(OSError):
            archive_service.delete_archive(session, archive)
        assert session.exec(select(ZimArchive)).all() == []
        assert fake_supervisor.restart_requests == 1
        actions = [log.action for log in session.exec(select(ActivityLog)).all()]
        assert actions == ["zim_delete_failed"]


class TestReactivate:
    def test_marks_touched(self, session, make_archive, fake_supervisor):
        archive = make_archive(OLD, status=ArchiveStatus.QUARANTINED, error_message="crashed")
        archive_service.reactivate(session, archive)
        assert archive.status == ArchiveStatus.ACTIVE
        assert fake_supervisor.last_touched_archive_id == archive.id
