from zimshelf.models.archive import ArchiveStatus


class TestServer:
    def test_status(self, client, make_archive):
        make_archive("bad_en_all_2024-01.zim", status=ArchiveStatus.QUARANTINED, error_message="x")
        r = client.get("/api/v1/server/status")
        assert r.status_code == 200
        data = r.json()
        assert data["state"] == "running"
        assert data["pid"] == 4242
        assert data["quarantined_count"] == 1

    def test_restart(self, client, fake_supervisor):
        r = client.post("/api/v1/server/restart")
        assert r.status_code == 200
        assert fake_supervisor.restarts == 1

    def test_disk(self, client):
        data = client.get("/api/v1/server/disk").json()
        assert data["total_bytes"] > 0

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}
