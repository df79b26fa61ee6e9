"""Report payload cache: key derivation, pattern invalidation and degraded mode."""

import pytest

from core.cache import CacheService
from core.keys import NamespaceRegistry
from services.caching import DerivedKey, ExplicitKey, ReportCache, generate_key
from tests.conftest import make_settings

JANUARY = {"from_date": "2024-01-01", "to_date": "2024-01-31"}


class TestGenerateKey:

    def test_individual_report(self):
        key = generate_key("individual", {**JANUARY, "employee_id": "E1", "division_id": "D1"})
        assert key == "report:individual:E1:2024-01-01:2024-01-31"

    def test_audit_report_includes_grouping(self):
        key = generate_key("audit", {**JANUARY, "grouping": "section", "division_id": "D1"})
        assert key == "report:audit:2024-01-01:2024-01-31:section:D1::"

    def test_group_report(self):
        key = generate_key("group", {**JANUARY, "division_id": "D1", "section_id": "S1", "sub_section_id": 7})
        assert key == "report:group:2024-01-01:2024-01-31:D1:S1:7"

    def test_other_report_types_keep_their_name(self):
        assert generate_key("summary", JANUARY) == "report:summary:2024-01-01:2024-01-31:::"

    def test_missing_and_empty_fields_are_equivalent(self):
        with_none = generate_key("group", {**JANUARY, "division_id": None})
        with_blank = generate_key("group", {**JANUARY, "division_id": ""})
        without = generate_key("group", JANUARY)
        assert with_none == with_blank == without

    def test_unrelated_params_are_ignored(self):
        assert generate_key("group", {**JANUARY, "page": 3}) == generate_key("group", JANUARY)


@pytest.fixture
def reports(cache, settings):
    return ReportCache(cache, settings)


class TestReportCache:

    async def test_derived_and_explicit_keys_address_same_entry(self, reports):
        spec = DerivedKey("group", {**JANUARY, "division_id": "D1"})
        assert await reports.set(spec, {"rows": [1, 2]})

        assert await reports.get(spec) == {"rows": [1, 2]}
        assert await reports.get(ExplicitKey(generate_key("group", {**JANUARY, "division_id": "D1"}))) == {"rows": [1, 2]}

    async def test_string_payload_stored_verbatim(self, reports):
        spec = ExplicitKey("report:custom:csv")
        await reports.set(spec, "a,b\n1,2")
        assert await reports.get_raw(spec) == "a,b\n1,2"

    async def test_stats_count_hits_and_misses(self, reports):
        spec = DerivedKey("individual", {**JANUARY, "employee_id": "E1"})
        assert await reports.get(spec) is None
        await reports.set(spec, {"days": 22})
        await reports.get(spec)

        stats = reports.get_stats()
        assert (stats["hits"], stats["misses"], stats["sets"]) == (1, 1, 1)
        assert stats["hit_rate"] == 50.0

        reports.reset_stats()
        assert reports.get_stats()["total_requests"] == 0

    async def test_clear_single_entry(self, reports):
        spec = DerivedKey("audit", {**JANUARY, "grouping": "none"})
        await reports.set(spec, {"ok": True})
        assert await reports.clear(spec) is True
        assert await reports.clear(spec) is False

    async def test_clear_date_range(self, reports):
        group = DerivedKey("group", {**JANUARY, "division_id": "D1"})
        individual = DerivedKey("individual", {**JANUARY, "employee_id": "E1"})
        february = DerivedKey("group", {"from_date": "2024-02-01", "to_date": "2024-02-29"})
        for spec in (group, individual, february):
            await reports.set(spec, {"x": 1})

        assert await reports.clear_date_range("2024-01-01", "2024-01-31") == 2
        assert await reports.get(february) == {"x": 1}

    async def test_clear_organization(self, reports):
        d1 = DerivedKey("group", {**JANUARY, "division_id": "D1", "section_id": "S1"})
        d2 = DerivedKey("group", {**JANUARY, "division_id": "D2", "section_id": "S2"})
        await reports.set(d1, {"x": 1})
        await reports.set(d2, {"x": 2})

        assert await reports.clear_organization(division_id="D1") == 1
        assert await reports.get(d1) is None
        assert await reports.get(d2) == {"x": 2}

    async def test_clear_organization_requires_a_unit(self, reports):
        spec = DerivedKey("group", {**JANUARY, "division_id": "D1"})
        await reports.set(spec, {"x": 1})

        with pytest.raises(ValueError):
            await reports.clear_organization()
        assert await reports.get(spec) == {"x": 1}

    async def test_clear_all_and_key_count(self, reports):
        await reports.set(ExplicitKey("report:a"), 1)
        await reports.set(ExplicitKey("report:b"), 2)
        assert await reports.get_keys_count() == 2
        assert await reports.clear_all() == 2
        assert await reports.get_keys_count() == 0

    async def test_info_when_connected(self, reports):
        info = await reports.get_info()
        assert info["connected"] is True
        assert info["keys_count"] == 0


async def test_unavailable_cache_returns_neutral_values(tmp_path):
    settings = make_settings(tmp_path, cache_enabled=False)
    cache = CacheService(settings, NamespaceRegistry())
    await cache.startup()
    reports = ReportCache(cache, settings)
    spec = DerivedKey("group", JANUARY)

    assert await reports.get(spec) is None
    assert await reports.set(spec, {"x": 1}) is False
    assert await reports.clear(spec) is False
    assert await reports.clear_all() == 0
    assert await reports.clear_date_range("2024-01-01", "2024-01-31") == 0
    assert await reports.clear_organization("D1") == 0
    assert await reports.get_keys_count() == 0
    assert (await reports.get_info())["connected"] is False


def test_unsupported_key_spec_rejected():
    from services.caching import resolve_key
    with pytest.raises(TypeError):
        resolve_key("report:raw-string")
