"""Unit tests for StatusReporter and the status HTTP endpoint."""

import pytest
import requests

from cloudflare_ddns.cli import (
    CacheEntry,
    DomainRecord,
    ErrorKind,
    RecordType,
    SharedCache,
    StatusReporter,
    Zone,
    parse_listen,
    render_status,
    start_status_server,
)

ZONE = Zone(id="Z1", name="example.com")
RECORD = DomainRecord(
    id="R1",
    zone_id="Z1",
    zone_name="example.com",
    name="home",
    type=RecordType.A,
    content="1.2.3.5",
    modified_on="2024-03-01T00:00:00Z",
)

EXPECTED_REPORT = (
    "Here are the details of your domain record\n"
    "Domain: home.example.com (A)\n"
    "Last updated: 2024-03-01T00:00:00Z\n"
    "Content: 1.2.3.5"
)


@pytest.fixture
def cache() -> SharedCache:
    cache = SharedCache(["ddns"])
    cache.set("ddns", "home", CacheEntry(zone=ZONE, record=RECORD))
    return cache


class TestStatusReport:
    """Tests for the cache-backed report."""

    def test_renders_cached_entry(self, cache: SharedCache) -> None:
        result = StatusReporter(cache=cache, cache_spec="ddns.home").report()

        assert result.ok
        assert result.value == EXPECTED_REPORT

    def test_render_status_format(self) -> None:
        assert render_status(CacheEntry(zone=ZONE, record=RECORD)) == EXPECTED_REPORT

    def test_no_cache_configured(self, cache: SharedCache) -> None:
        result = StatusReporter(cache=cache, cache_spec="").report()

        assert result.kind is ErrorKind.NO_CACHE_CONFIGURED
        assert result.reason == "No cache found"

    def test_unregistered_namespace_is_cache_miss(self, cache: SharedCache) -> None:
        result = StatusReporter(cache=cache, cache_spec="other.home").report()

        assert result.kind is ErrorKind.CACHE_MISS
        assert result.reason == "Failed to find cache"

    def test_absent_key_is_cache_miss(self, cache: SharedCache) -> None:
        result = StatusReporter(cache=cache, cache_spec="ddns.office").report()

        assert result.kind is ErrorKind.CACHE_MISS

    def test_malformed_key_is_cache_miss(self, cache: SharedCache) -> None:
        result = StatusReporter(cache=cache, cache_spec="ddns").report()

        assert result.kind is ErrorKind.CACHE_MISS

    def test_report_never_mutates_cache(self, cache: SharedCache) -> None:
        before = cache.region("ddns").get("home")

        StatusReporter(cache=cache, cache_spec="ddns.home").report()

        assert cache.region("ddns").get("home") == before
        assert cache.region("ddns").keys() == ["home"]


class TestStatusHttpResponse:
    """Tests for the HTTP status/body mapping."""

    def test_success_is_200(self, cache: SharedCache) -> None:
        assert StatusReporter(cache=cache, cache_spec="ddns.home").http_response() == (
            200,
            EXPECTED_REPORT,
        )

    def test_no_cache_is_500(self, cache: SharedCache) -> None:
        assert StatusReporter(cache=cache, cache_spec="").http_response() == (500, "No cache found")

    def test_cache_miss_is_500(self, cache: SharedCache) -> None:
        assert StatusReporter(cache=cache, cache_spec="ddns.office").http_response() == (
            500,
            "Failed to find cache",
        )


class TestParseListen:
    """Tests for listen address parsing."""

    def test_host_and_port(self) -> None:
        assert parse_listen("127.0.0.1:8080") == ("127.0.0.1", 8080)

    def test_port_only(self) -> None:
        assert parse_listen("8080") == ("0.0.0.0", 8080)
        assert parse_listen(":8080") == ("0.0.0.0", 8080)

    def test_invalid_port(self) -> None:
        with pytest.raises(ValueError):
            parse_listen("localhost:http")


class TestStatusServer:
    """Tests for the status endpoint over a real socket."""

    @pytest.fixture
    def server(self, cache: SharedCache):
        server = start_status_server("127.0.0.1:0", StatusReporter(cache=cache, cache_spec="ddns.home"))
        yield server
        server.shutdown()
        server.server_close()

    def _url(self, server, path: str) -> str:
        host, port = server.server_address[:2]
        return f"http://{host}:{port}{path}"

    def test_status_path_returns_report(self, server) -> None:
        response = requests.get(self._url(server, "/status"), timeout=5)

        assert response.status_code == 200
        assert response.headers["Content-Type"].startswith("text/plain")
        assert response.text == EXPECTED_REPORT

    def test_root_path_returns_report(self, server) -> None:
        response = requests.get(self._url(server, "/"), timeout=5)

        assert response.status_code == 200

    def test_unknown_path_is_404(self, server) -> None:
        response = requests.get(self._url(server, "/metrics"), timeout=5)

        assert response.status_code == 404

    def test_cache_miss_is_500(self, server) -> None:
        server.reporter = StatusReporter(cache=SharedCache(), cache_spec="ddns.home")

        response = requests.get(self._url(server, "/status"), timeout=5)

        assert response.status_code == 500
        assert response.text == "Failed to find cache"
