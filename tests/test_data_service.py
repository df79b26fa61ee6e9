"""Cache-first entity reads, listings and search."""

import pytest

from core.exceptions import SourceUnavailable
from core.keys import lazy_key


class TestEntityReads:

    async def test_cold_read_fills_lazy_namespace(self, stack):
        employee = await stack.data.get_employee("E1")

        assert employee["name"] == "Alice Perera"
        assert employee["division_id"] == "D1"
        assert await stack.cache.get(lazy_key("employee", "E1")) == employee
        assert stack.usage.access_count("employee", "E1") == 1

    async def test_preloaded_read_skips_lazy_namespace(self, stack):
        await stack.preload.preload_all("test")

        division = await stack.data.get_division("D1")

        assert division["name"] == "Finance"
        assert await stack.cache.exists(lazy_key("division", "D1")) is False

    async def test_sub_section_ids(self, stack):
        assert (await stack.data.get_sub_section("1"))["name"] == "Payroll North"
        assert await stack.data.get_sub_section("not-a-number") is None

    async def test_unknown_entity_type(self, stack):
        with pytest.raises(ValueError):
            await stack.data.get_entity("payslip", "1")

    async def test_batch_get_skips_missing(self, stack):
        found = await stack.data.batch_get("employee", ["E2", "E404", "E1"])
        assert [e["id"] for e in found] == ["E2", "E1"]


class TestListings:

    async def test_list_sections_by_division_without_preload(self, stack):
        sections = await stack.data.list_sections("D1")
        assert [s["id"] for s in sections] == ["S1"]

    async def test_list_employees_pages_preloaded_ids(self, stack):
        await stack.preload.preload_all("test")

        page = await stack.data.list_employees(page=2, limit=1)

        assert [e["id"] for e in page["items"]] == ["E2"]
        assert (page["total"], page["pages"]) == (2, 2)

    async def test_list_employees_pages_source_when_cold(self, stack):
        page = await stack.data.list_employees(page=2, limit=1)

        assert [e["id"] for e in page["items"]] == ["E2"]
        assert (page["total"], page["pages"]) == (2, 2)

    async def test_list_divisions_only_active(self, stack):
        assert sorted(d["id"] for d in await stack.data.list_divisions()) == ["D1", "D2"]


class TestSearch:

    async def test_results_are_cached(self, stack, monkeypatch):
        first = await stack.data.search("employee", {"name": "Bruno"})
        assert first["total"] == 1
        assert first["items"][0]["id"] == "E2"

        async def unavailable(*args, **kwargs):
            raise SourceUnavailable("search_employee", "down")

        monkeypatch.setattr(stack.source, "search", unavailable)
        assert await stack.data.search("employee", {"name": "Bruno"}) == first

    async def test_unknown_filters_are_ignored(self, stack):
        result = await stack.data.search("division", {"colour": "blue"}, page=1, limit=1)
        assert result["total"] == 3
        assert result["pages"] == 3


class TestMaintenanceHelpers:

    async def test_refresh_top_accessed(self, stack):
        for _ in range(3):
            stack.usage.record("employee", "E1")
        stack.usage.record("payslip", "99")

        assert await stack.data.refresh_top_accessed() == 1
        assert await stack.cache.exists(lazy_key("employee", "E1"))

    async def test_check_health(self, stack):
        health = await stack.data.check_health()

        assert health["kv_store"] == "healthy"
        assert health["source_store"] == "healthy"
        assert health["source_counts"] == {"division": 2, "section": 2, "subsection": 1, "employee": 2}
