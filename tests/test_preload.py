"""Bulk preload, relationship graph, index registry and invalidation."""

import pytest
from sqlalchemy import update

from core.exceptions import PartialPreloadFailure, SourceUnavailable
from core.keys import all_key, entity_key, list_key, relationship_key
from models.source import EmployeeSync


@pytest.fixture
async def warm(stack):
    result = await stack.preload.preload_all("test")
    return result


class TestPreloadAll:

    async def test_loads_active_rows_of_every_collection(self, stack, warm):
        assert warm.success
        assert {s.entity_type: s.count for s in warm.steps} == {
            "division": 2, "section": 2, "subsection": 1, "employee": 2,
        }
        assert warm.total_indexes == 23
        assert warm.relationships == 7

        assert await stack.cache.smembers(all_key("division")) == {"D1", "D2"}
        assert await stack.cache.get(list_key("employee")) == ["E1", "E2"]
        division = await stack.cache.get(entity_key("division", "D1"))
        assert division["name"] == "Finance"
        assert await stack.cache.exists(entity_key("division", "D9")) is False
        assert await stack.cache.exists(entity_key("employee", "E3")) is False

    async def test_cache_is_warm_and_sync_logged(self, stack, warm):
        assert await stack.preload.is_cache_warm()

        log = await stack.database.get_sync_log(warm.sync_log_id)
        assert log.status == "completed"
        assert log.records_synced == 7
        assert log.indexes_built == 23

        metadata = await stack.database.get_metadata(all_key("employee"))
        assert metadata.record_count == 2
        assert metadata.is_valid

    async def test_rerun_is_idempotent(self, stack, warm):
        again = await stack.preload.preload_all("test")

        assert again.total_records == warm.total_records
        assert await stack.index.count() == 23
        assert await stack.graph.count() == 7
        assert await stack.cache.scard(all_key("employee")) == 2
        assert (await stack.database.get_metadata(all_key("division"))).version == 2

    async def test_rows_gone_from_source_are_pruned(self, stack, warm, seeded_source):
        async with seeded_source() as session:
            await session.execute(update(EmployeeSync).where(EmployeeSync.EMP_NO == "E2").values(IS_ACTIVE=False))
            await session.commit()

        result = await stack.preload.preload_all("test")

        employee_step = next(s for s in result.steps if s.entity_type == "employee")
        assert employee_step.pruned == 1
        assert await stack.cache.smembers(all_key("employee")) == {"E1"}
        assert await stack.cache.exists(entity_key("employee", "E2")) is False
        assert await stack.index.indexed_ids("employee") == ["E1"]
        assert await stack.graph.child_ids("division", "D2", "employee") == []
        assert await stack.graph.count() == 5

    async def test_dropped_kv_writes_leave_cache_cold(self, stack, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionError("connection reset by peer")

        monkeypatch.setattr(stack.cache.client, "pipeline", refuse)
        result = await stack.preload.preload_all("test")
        await stack.cache.reconnect()

        assert result.success
        assert result.stored is False
        assert all(step.stored is False for step in result.steps)
        assert (await stack.database.get_metadata(all_key("division"))).is_valid is False
        assert await stack.preload.is_cache_warm() is False

        job = await stack.preload.ensure_warm(triggered_by="test")
        assert job is not None
        await stack.jobs.wait_for_job(job.id, timeout=30)
        assert await stack.preload.is_cache_warm()
        assert await stack.graph.get_children("division", "D1", "section") != []

    async def test_failed_step_keeps_earlier_collections(self, stack, monkeypatch):
        async def broken():
            raise SourceUnavailable("list_employees", "connection reset")

        monkeypatch.setattr(stack.source, "list_employees", broken)

        with pytest.raises(PartialPreloadFailure) as excinfo:
            await stack.preload.preload_all("test")

        failure = excinfo.value
        assert failure.step == "employee"
        assert failure.completed_steps == ["division", "section", "subsection"]
        assert isinstance(failure.cause, SourceUnavailable)
        assert await stack.cache.exists(entity_key("division", "D1"))
        assert not await stack.preload.is_cache_warm()

        [log] = await stack.database.recent_syncs(1)
        assert log.status == "failed"
        assert log.error_message.startswith("employee:")

    async def test_invalidation_during_run_marks_metadata_invalid(self, stack, monkeypatch):
        original = stack.source.list_employees

        async def invalidating():
            stack.preload.generation += 1
            return await original()

        monkeypatch.setattr(stack.source, "list_employees", invalidating)

        result = await stack.preload.preload_all("test")

        assert result.invalidated_during_run
        assert not (await stack.database.get_metadata(all_key("employee"))).is_valid
        assert not await stack.preload.is_cache_warm()


class TestRelationships:

    async def test_children_resolve_to_payloads(self, stack, warm):
        sections = await stack.graph.get_children("division", "D1", "section")
        assert [s["id"] for s in sections] == ["S1"]

        employees = await stack.graph.get_children("section", "S1", "employee")
        assert [e["name"] for e in employees] == ["Alice Perera"]

        subsections = await stack.graph.get_children("section", "S1", "subsection")
        assert [s["name"] for s in subsections] == ["Payroll North"]

    async def test_evicted_mirror_reads_as_empty_until_restored(self, stack, warm):
        await stack.cache.delete(relationship_key("division", "D1", "section"))
        assert await stack.graph.get_children("division", "D1", "section") == []

        assert await stack.graph.restore_mirrors() > 0
        assert await stack.graph.child_ids("division", "D1", "section") == ["S1"]

    async def test_invalidate_all_clears_children(self, stack, warm):
        assert await stack.graph.child_ids("division", "D1", "section") == ["S1"]

        outcome = await stack.preload.invalidate_all()

        assert outcome["generation"] == 1
        assert outcome["metadata_invalidated"] == 4
        assert await stack.graph.get_children("division", "D1", "section") == []
        assert await stack.index.count() == 0
        assert not await stack.preload.is_cache_warm()


class TestIndexSearch:

    async def test_substring_search(self, stack, warm):
        results = await stack.data.search_by_index("employee", "name", "Alice")
        assert [r["id"] for r in results] == ["E1"]

        results = await stack.data.search_by_index("section", "division_code", "D2")
        assert [r["id"] for r in results] == ["S2"]

    async def test_wildcard_characters_match_literally(self, stack, warm):
        assert await stack.data.search_by_index("employee", "email", "alice_example") == []
        assert await stack.data.search_by_index("employee", "name", "%") == []
        assert [r["id"] for r in await stack.data.search_by_index("employee", "email", "@example")] == ["E1", "E2"]

    async def test_evicted_entries_are_dropped(self, stack, warm):
        await stack.cache.delete(entity_key("employee", "E1"))

        assert await stack.data.search_by_index("employee", "name", "Alice") == []
        assert [r["id"] for r in await stack.data.search_by_index("employee", "email", "bruno")] == ["E2"]

    async def test_empty_search_value(self, stack, warm):
        assert await stack.index.search_by_index("employee", "name", "") == []


class TestAttendancePreload:

    async def test_streams_range_into_lazy_namespace(self, stack):
        outcome = await stack.preload.preload_attendance_range("2024-01-01", "2024-01-31")

        assert outcome == {"from_date": "2024-01-01", "to_date": "2024-01-31", "records": 3}
        scan = await stack.cache.get("lazy:attendance:1")
        assert scan["employee_ID"] == "E1"
        assert await stack.cache.exists("lazy:attendance:3") is False
        assert await stack.cache.exists("lazy:attendance:5") is False

        metadata = await stack.database.get_metadata("cache:attendance:range:2024-01-01:2024-01-31")
        assert metadata.record_count == 3
        assert metadata.details == {"from_date": "2024-01-01", "to_date": "2024-01-31"}


class TestStats:

    async def test_stats_summarize_warm_cache(self, stack, warm):
        stats = await stack.preload.get_stats()

        assert stats["is_warm"] is True
        assert stats["valid_collections"] == 4
        assert stats["total_records"] == 7
        assert stats["index_entries"] == 23
        assert stats["relationships"] == 7
        assert stats["recent_syncs"][0]["status"] == "completed"
        assert stats["active_job"] is None
