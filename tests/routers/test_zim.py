import httpx
import respx
from sqlmodel import select

from zimshelf.catalog.client import ENTRIES_PATH
from zimshelf.config import settings
from zimshelf.errors import UpstreamUnavailableError
from zimshelf.models.activity import ActivityLog
from zimshelf.models.archive import ArchiveStatus, ZimArchive
from zimshelf.services import download_service, update_service

OLD = "wikipedia_en_all_2023-10.zim"
NEW = "wikipedia_en_all_2024-01.zim"
NEW_URL = f"https://download.kiwix.org/zim/wikipedia/{NEW}"

FEED = f"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <entry>
    <id>urn:uuid:aaaa</id>
    <title>Wikipedia</title>
    <updated>2024-01-15T00:00:00Z</updated>
    <name>wikipedia_en_all</name>
    <link rel="http://opds-spec.org/acquisition/open-access" type="application/x-zim"
          href="{NEW_URL}.meta4" length="2048"/>
  </entry>
</feed>
"""


class TestListArchives:
    def test_empty(self, client):
        r = client.get("/api/v1/zim/")
        assert r.status_code == 200
        assert r.json() == []

    def test_filters(self, client, make_archive):
        make_archive(OLD)
        make_archive("bad_en_all_2024-01.zim", status=ArchiveStatus.QUARANTINED, error_message="x")
        make_archive("secret_en_all_2024-01.zim", hidden=True)

        assert len(client.get("/api/v1/zim/").json()) == 3
        params = {"include_quarantined": False, "include_hidden": False}
        r = client.get("/api/v1/zim/", params=params)
        assert [a["filename"] for a in r.json()] == [OLD]

    def test_detail_and_404(self, client, make_archive):
        archive = make_archive(OLD, available_update_url=NEW_URL)
        r = client.get(f"/api/v1/zim/{archive.id}")
        assert r.status_code == 200
        assert r.json()["has_update"] is True
        assert r.json()["kiwix_url"] == "http://127.0.0.1:8080/content/wikipedia_en_all_2023-10"
        assert client.get("/api/v1/zim/999").status_code == 404


class TestEditArchive:
    def test_patch_metadata(self, client, make_archive, session):
        archive = make_archive(OLD)
        r = client.patch(f"/api/v1/zim/{archive.id}", json={"title": "Wiki", "hidden": True})
        assert r.status_code == 200
        assert r.json()["title"] == "Wiki"
        assert r.json()["hidden"] is True
        log = session.exec(select(ActivityLog)).one()
        assert log.action == "metadata_updated"

    def test_toggle_auto_update(self, client, make_archive):
        archive = make_archive(OLD)
        r = client.put(f"/api/v1/zim/{archive.id}/auto-update", json={"enabled": True})
        assert r.status_code == 200
        assert r.json()["auto_update_enabled"] is True

    def test_delete(self, client, make_archive, zim_dir, session, fake_supervisor):
        archive = make_archive(OLD)
        r = client.delete(f"/api/v1/zim/{archive.id}")
        assert r.status_code == 200
        assert not (zim_dir / OLD).exists()
        assert session.exec(select(ZimArchive)).all() == []
        assert fake_supervisor.restart_requests == 1

    def test_delete_missing_file_still_removes_row(self, client, make_archive, session):
        archive = make_archive(OLD, create_file=False)
        assert client.delete(f"/api/v1/zim/{archive.id}").status_code == 200
        assert session.exec(select(ZimArchive)).all() == []


class TestReactivate:
    def test_reactivate_quarantined(self, client, make_archive, fake_supervisor):
        archive = make_archive(OLD, status=ArchiveStatus.QUARANTINED, error_message="crashed")
        r = client.post(f"/api/v1/zim/{archive.id}/reactivate")
        assert r.status_code == 200
        assert r.json()["status"] == "active"
        assert r.json()["error_message"] is None
        assert fake_supervisor.restart_requests == 1

    def test_reactivate_active_conflicts(self, client, make_archive):
        archive = make_archive(OLD)
        assert client.post(f"/api/v1/zim/{archive.id}/reactivate").status_code == 409


class TestDownload:
    def test_starts(self, client, monkeypatch):
        captured = {}

        async def _fake_download_new(url, metadata, session):
            captured["url"] = url
            captured["title"] = metadata.title
            return NEW

        monkeypatch.setattr(download_service, "download_new", _fake_download_new)
        r = client.post("/api/v1/zim/download", json={"url": NEW_URL, "title": "Wikipedia"})
        assert r.status_code == 202
        assert r.json()["filename"] == NEW
        assert captured == {"url": NEW_URL, "title": "Wikipedia"}

    def test_existing_conflicts(self, client, make_archive):
        make_archive(NEW)
        r = client.post("/api/v1/zim/download", json={"url": NEW_URL})
        assert r.status_code == 409

    def test_in_progress_conflicts(self, client):
        download_service.reserve(NEW, NEW_URL)
        r = client.post("/api/v1/zim/download", json={"url": NEW_URL})
        assert r.status_code == 409
        assert "already in progress" in r.json()["detail"]

    def test_bad_url(self, client):
        r = client.post("/api/v1/zim/download", json={"url": "https://example.org/file.txt"})
        assert r.status_code == 400

    def test_upstream_failure(self, client, monkeypatch):
        async def _fail(url, metadata, session):
            raise UpstreamUnavailableError("Download server returned HTTP 503")

        monkeypatch.setattr(download_service, "download_new", _fail)
        r = client.post("/api/v1/zim/download", json={"url": NEW_URL})
        assert r.status_code == 502

    def test_progress(self, client):
        record = download_service.reserve(NEW, NEW_URL, "Wikipedia", 1000)
        record.record_progress(250, None)
        r = client.get("/api/v1/zim/download/progress")
        assert r.status_code == 200
        [item] = r.json()
        assert item["filename"] == NEW
        assert item["progress"] == 25
        assert item["status"] == "downloading"


class TestUpdates:
    @respx.mock
    def test_check_update(self, client, make_archive):
        respx.get(f"{settings.catalog_url}{ENTRIES_PATH}").mock(
            return_value=httpx.Response(200, content=FEED)
        )
        archive = make_archive(OLD)
        r = client.post(f"/api/v1/zim/{archive.id}/check-update")
        assert r.status_code == 200
        data = r.json()
        assert data["update_available"] is True
        assert data["latest_version"] == "2024-01"
        assert data["update_url"] == NEW_URL
        assert client.get(f"/api/v1/zim/{archive.id}").json()["available_update_size"] == 2048

    @respx.mock
    def test_check_update_catalog_down(self, client, make_archive):
        respx.get(f"{settings.catalog_url}{ENTRIES_PATH}").mock(return_value=httpx.Response(503))
        archive = make_archive(OLD)
        r = client.post(f"/api/v1/zim/{archive.id}/check-update")
        assert r.status_code == 502

    @respx.mock
    def test_check_all(self, client, make_archive):
        respx.get(f"{settings.catalog_url}{ENTRIES_PATH}").mock(
            return_value=httpx.Response(200, content=FEED)
        )
        make_archive(OLD)
        make_archive(NEW.replace("wikipedia", "wiktionary"))
        r = client.post("/api/v1/zim/check-updates/all")
        assert r.status_code == 200
        data = r.json()
        assert data["checked"] == 2
        assert data["updates_available"] == 1

    def test_update_without_snapshot(self, client, make_archive):
        archive = make_archive(OLD)
        r = client.post(f"/api/v1/zim/{archive.id}/update")
        assert r.status_code == 400

    def test_update_insufficient_space(self, client, make_archive, free_space):
        free_space(1024)
        archive = make_archive(OLD, available_update_url=NEW_URL, available_update_size=2048)
        r = client.post(f"/api/v1/zim/{archive.id}/update")
        assert r.status_code == 507
        assert "Insufficient disk space" in r.json()["detail"]

    def test_update_started(self, client, make_archive, monkeypatch, free_space):
        started = []
        monkeypatch.setattr(update_service, "start_update", started.append)
        free_space(10**13)
        archive = make_archive(OLD, available_update_url=NEW_URL, available_update_size=2048)

        r = client.post(f"/api/v1/zim/{archive.id}/update")
        assert r.status_code == 202
        assert r.json()["filename"] == NEW
        assert [p.new_filename for p in started] == [NEW]

        r = client.post(f"/api/v1/zim/{archive.id}/update")
        assert r.status_code == 409


KIWIX = "http://127.0.0.1:8080"

SEARCH_RESULTS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Search: berlin</title>
  <item><title>Berlin</title><link>/content/wikipedia_en_all_2023-10/A/Berlin</link>
    <description>Berlin is the capital of Germany</description></item>
</channel></rss>
"""


class TestSearch:
    def test_short_query(self, client):
        assert client.get("/api/v1/zim/search", params={"q": "b"}).status_code == 400

    @respx.mock
    def test_searches_served_archives(self, client, make_archive):
        archive = make_archive(OLD)
        make_archive("bad_en_all_2024-01.zim", status=ArchiveStatus.QUARANTINED, error_message="x")
        make_archive("secret_en_all_2024-01.zim", hidden=True)
        route = respx.get(f"{KIWIX}/search").mock(
            return_value=httpx.Response(200, content=SEARCH_RESULTS)
        )

        r = client.get("/api/v1/zim/search", params={"q": " berlin "})
        assert r.status_code == 200
        body = r.json()
        assert body["query"] == "berlin"
        assert body["total"] == 1
        assert body["results"][0]["archive_id"] == archive.id
        assert body["results"][0]["url"] == f"{KIWIX}/content/wikipedia_en_all_2023-10/A/Berlin"
        assert route.call_count == 1
        assert route.calls[0].request.url.params["content"] == "wikipedia_en_all_2023-10"

    def test_single_quarantined_archive_not_searched(self, client, make_archive):
        archive = make_archive(OLD, status=ArchiveStatus.QUARANTINED, error_message="x")
        r = client.get("/api/v1/zim/search", params={"q": "berlin", "archive_id": archive.id})
        assert r.status_code == 200
        assert r.json()["results"] == []


class TestContentProxy:
    @respx.mock
    def test_streams_from_kiwix(self, client, make_archive):
        archive = make_archive(OLD)
        route = respx.get(f"{KIWIX}/content/wikipedia_en_all_2023-10/A/Berlin").mock(
            return_value=httpx.Response(
                200,
                content=b"<html>Berlin</html>",
                headers={"Content-Type": "text/html", "X-Internal": "1"},
            )
        )
        r = client.get(f"/api/v1/zim/{archive.id}/content/A/Berlin", params={"lang": "en"})
        assert r.status_code == 200
        assert r.content == b"<html>Berlin</html>"
        assert r.headers["content-type"] == "text/html"
        assert "x-internal" not in r.headers
        assert route.calls[0].request.url.params["lang"] == "en"

    @respx.mock
    def test_upstream_status_passed_through(self, client, make_archive):
        archive = make_archive(OLD)
        respx.get(f"{KIWIX}/content/wikipedia_en_all_2023-10/A/Missing").mock(
            return_value=httpx.Response(404, content=b"not found")
        )
        assert client.get(f"/api/v1/zim/{archive.id}/content/A/Missing").status_code == 404

    @respx.mock
    def test_kiwix_down(self, client, make_archive):
        archive = make_archive(OLD)
        respx.get(f"{KIWIX}/content/wikipedia_en_all_2023-10/A/Berlin").mock(
            side_effect=httpx.ConnectError("connection refused")
        )
        assert client.get(f"/api/v1/zim/{archive.id}/content/A/Berlin").status_code == 502

    def test_quarantined_not_served(self, client, make_archive):
        archive = make_archive(OLD, status=ArchiveStatus.QUARANTINED, error_message="x")
        assert client.get(f"/api/v1/zim/{archive.id}/content/A/Berlin").status_code == 409
