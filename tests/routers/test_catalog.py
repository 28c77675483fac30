import httpx
import respx

from zimshelf.catalog.client import ENTRIES_PATH, LANGUAGES_PATH
from zimshelf.config import settings

FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <totalResults>1</totalResults>
  <entry>
    <id>urn:uuid:aaaa</id>
    <title>Wikipedia</title>
    <updated>2024-01-15T00:00:00Z</updated>
    <language>eng</language>
    <link rel="http://opds-spec.org/acquisition/open-access" type="application/x-zim"
          href="https://download.kiwix.org/zim/wikipedia/wikipedia_en_all_2024-01.zim.meta4"
          length="2048"/>
  </entry>
</feed>
"""

LANGUAGES = b"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom"
      xmlns:dc="http://purl.org/dc/terms/"
      xmlns:thr="http://purl.org/syndication/thread/1.0">
  <entry><title>English</title><dc:language>eng</dc:language><thr:count>9</thr:count></entry>
</feed>
"""


class TestCatalog:
    @respx.mock
    def test_browse_marks_installed(self, client, make_archive):
        respx.get(f"{settings.catalog_url}{ENTRIES_PATH}").mock(
            return_value=httpx.Response(200, content=FEED)
        )
        make_archive("wikipedia_en_all_2024-01.zim")
        r = client.get("/api/v1/catalog/", params={"count": 10, "q": "wikipedia"})
        assert r.status_code == 200
        data = r.json()
        assert data["total"] == 1
        [entry] = data["entries"]
        assert entry["filename"] == "wikipedia_en_all_2024-01.zim"
        assert entry["installed"] is True

    @respx.mock
    def test_browse_upstream_down(self, client):
        respx.get(f"{settings.catalog_url}{ENTRIES_PATH}").mock(
            side_effect=httpx.ConnectError("refused")
        )
        assert client.get("/api/v1/catalog/").status_code == 502

    @respx.mock
    def test_languages(self, client):
        respx.get(f"{settings.catalog_url}{LANGUAGES_PATH}").mock(
            return_value=httpx.Response(200, content=LANGUAGES)
        )
        r = client.get("/api/v1/catalog/languages")
        assert r.json() == [{"code": "eng", "name": "English", "count": 9}]
