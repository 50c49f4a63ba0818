"""Unit tests for the shared record cache."""

import json
import threading

import pytest

from cloudflare_ddns.cli import (
    CacheEntry,
    CacheKeySpec,
    CacheRegion,
    DomainRecord,
    RecordType,
    SharedCache,
    Zone,
)


def make_entry(content: str = "1.2.3.4") -> CacheEntry:
    zone = Zone(id="Z1", name="example.com", plan={"name": "Free"})
    record = DomainRecord(
        id="R1",
        zone_id="Z1",
        zone_name="example.com",
        name="home",
        type=RecordType.A,
        content=content,
        modified_on="2024-02-01T00:00:00Z",
        extra={"settings": {"ipv4_only": True}},
    )
    return CacheEntry(zone=zone, record=record)


class TestCacheRegion:
    """Tests for a single cache region."""

    def test_set_then_get(self) -> None:
        region = CacheRegion("ddns")
        region.set("home", "value")

        assert region.has("home")
        assert region.get("home") == "value"
        assert region.keys() == ["home"]

    def test_set_overwrites(self) -> None:
        region = CacheRegion("ddns")
        region.set("home", "old")
        region.set("home", "new")

        assert region.get("home") == "new"

    def test_get_missing_key_raises(self) -> None:
        with pytest.raises(KeyError):
            CacheRegion("ddns").get("home")

    def test_concurrent_writes_leave_one_complete_value(self) -> None:
        """Concurrent writers to one key: last write wins, value never torn."""
        region = CacheRegion("ddns")
        values = [f"value-{i}" * 100 for i in range(20)]
        threads = [threading.Thread(target=region.set, args=("home", v)) for v in values]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert region.get("home") in values


class TestSharedCache:
    """Tests for the region registry and entry serialisation."""

    def test_registered_regions(self) -> None:
        cache = SharedCache(["ddns", "example.com"])

        assert cache.has_region("ddns")
        assert cache.has_region("example.com")
        assert not cache.has_region("other")
        assert cache.region("other") is None

    def test_register_keeps_existing_region(self) -> None:
        cache = SharedCache(["ddns"])
        cache.set("ddns", "home", make_entry())

        cache.register("ddns")

        assert cache.has("ddns", "home")

    def test_has_is_false_for_unregistered_region(self) -> None:
        assert SharedCache().has("ddns", "home") is False

    def test_entry_round_trip(self) -> None:
        """Entries are stored as JSON text and parsed back to equal values."""
        cache = SharedCache(["ddns"])
        entry = make_entry()

        cache.set("ddns", "home", entry)
        loaded = cache.get("ddns", "home")

        assert loaded == entry
        assert loaded.record.type is RecordType.A
        assert loaded.record.extra == {"settings": {"ipv4_only": True}}

    def test_entries_stored_as_json_text(self) -> None:
        cache = SharedCache(["ddns"])
        cache.set("ddns", "home", make_entry())

        raw = cache.region("ddns").get("home")

        assert isinstance(raw, str)
        data = json.loads(raw)
        assert data["zone"]["id"] == "Z1"
        assert data["record"]["content"] == "1.2.3.4"

    def test_set_into_unregistered_region_raises(self) -> None:
        with pytest.raises(KeyError):
            SharedCache().set("ddns", "home", make_entry())

    def test_get_missing_key_raises(self) -> None:
        with pytest.raises(KeyError):
            SharedCache(["ddns"]).get("ddns", "home")


class TestCacheKeySpec:
    """Tests for "<namespace>.<key>" parsing."""

    def test_parse_simple(self) -> None:
        assert CacheKeySpec.parse("ddns.home") == CacheKeySpec("ddns", "home")

    def test_key_is_last_segment(self) -> None:
        """A dotted namespace such as a zone name is kept whole."""
        assert CacheKeySpec.parse("example.com.Z1") == CacheKeySpec("example.com", "Z1")

    def test_empty_means_no_cache(self) -> None:
        assert CacheKeySpec.parse("") is None
        assert CacheKeySpec.parse("   ") is None

    @pytest.mark.parametrize("value", ["ddns", ".home", "ddns."])
    def test_malformed_raises(self, value: str) -> None:
        with pytest.raises(ValueError):
            CacheKeySpec.parse(value)

    def test_str(self) -> None:
        assert str(CacheKeySpec("example.com", "Z1")) == "example.com.Z1"
