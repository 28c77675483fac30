from zimshelf.services.activity_log import log_activity


class TestLogs:
    def test_page(self, client):
        log_activity("download_completed", zim_filename="a.zim", file_size=10)
        log_activity("download_failed", zim_filename="b.zim", status="failed", error_message="boom")
        r = client.get("/api/v1/logs/", params={"limit": 1})
        assert r.status_code == 200
        data = r.json()
        assert data["total"] == 2
        assert [log["zim_filename"] for log in data["logs"]] == ["b.zim"]

    def test_filter_by_status(self, client):
        log_activity("download_completed", zim_filename="a.zim")
        log_activity("download_failed", zim_filename="b.zim", status="failed")
        data = client.get("/api/v1/logs/", params={"status": "failed"}).json()
        assert data["total"] == 1

    def test_stats(self, client):
        log_activity("download_completed", zim_filename="a.zim", file_size=10, download_duration=4)
        data = client.get("/api/v1/logs/stats").json()
        assert data["total_actions"] == 1
        assert data["total_download_size"] == 10
        assert data["avg_download_duration"] == 4.0
        assert data["recent_errors"] == []
