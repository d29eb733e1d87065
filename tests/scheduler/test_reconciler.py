"""Tests for ConfigReconciler."""
from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from ezcron.core.bus import EventBus
from ezcron.core.events import Event, EventType
from ezcron.core.paths import AppPaths
from ezcron.scheduler.reconciler import ConfigReconciler, ReloadSummary
from ezcron.scheduler.registry import JobRegistry

NOW = datetime(2024, 5, 1, 10, 0, 30).astimezone()


@pytest.fixture
def reconciler(paths: AppPaths, registry: JobRegistry):
    return ConfigReconciler(paths.jobs_dir, registry, debounce_ms=50, watch=False)


class TestFullPass:
    def test_initial_load(self, reconciler, registry, write_definition, make_definition):
        write_definition(make_definition("a"))
        write_definition(make_definition("b"))
        summary = reconciler.reconcile_all(NOW)
        assert (summary.added, summary.updated, summary.removed, summary.rejected) == (2, 0, 0, 0)
        assert registry.ids() == ["a", "b"]
        assert registry.entry("a").next_run == datetime(2024, 5, 1, 10, 1).astimezone()

    def test_second_pass_updates_and_removes(self, reconciler, registry, write_definition, make_definition):
        write_definition(make_definition("a"))
        path_b = write_definition(make_definition("b"))
        reconciler.reconcile_all(NOW)

        path_b.unlink()
        write_definition(make_definition("a", name="renamed"))
        summary = reconciler.reconcile_all(NOW)
        assert (summary.updated, summary.removed) == (1, 1)
        assert registry.ids() == ["a"]
        assert registry.get("a").name == "renamed"

    def test_malformed_file_rejected_others_load(self, reconciler, registry, write_definition, make_definition):
        write_definition(make_definition("good"))
        write_definition("{not json", name="broken.json")
        write_definition(make_definition("bad", schedule={"type": "cron", "expression": "nope"}))
        summary = reconciler.reconcile_all(NOW)
        assert summary.added == 1
        assert summary.rejected == 2
        assert registry.ids() == ["good"]
        assert any(e.startswith("broken.json:") for e in summary.errors)
        assert any(e.startswith("bad.json: schedule:") for e in summary.errors)

    def test_undecodable_file_rejected_others_load(self, reconciler, registry, paths, write_definition, make_definition):
        write_definition(make_definition("good"))
        (paths.jobs_dir / "bad.json").write_bytes(b"\xff\xfe garbage")
        summary = reconciler.reconcile_all(NOW)
        assert (summary.added, summary.rejected) == (1, 1)
        assert registry.ids() == ["good"]
        assert summary.errors[0].startswith("bad.json: cannot read definition")

    def test_hidden_and_temp_files_ignored(self, reconciler, registry, paths, write_definition, make_definition):
        write_definition(make_definition("a"), name=".a.json.tmp")
        (paths.jobs_dir / "notes.txt").write_text("x", encoding="utf-8")
        summary = reconciler.reconcile_all(NOW)
        assert not summary.changed
        assert len(registry) == 0

    def test_summary_callback(self, paths, registry, write_definition, make_definition):
        seen: list[ReloadSummary] = []
        reconciler = ConfigReconciler(paths.jobs_dir, registry, on_summary=seen.append, watch=False)
        write_definition(make_definition("a"))
        reconciler.reconcile_all(NOW)
        assert len(seen) == 1
        assert seen[0].added == 1
        assert reconciler.passes == 1


class TestIncremental:
    def test_invalid_edit_keeps_previous_definition(self, reconciler, registry, write_definition, make_definition):
        path = write_definition(make_definition("a"))
        reconciler.reconcile_all(NOW)
        before = registry.get("a")

        path.write_text('{"id": "a", "name": ', encoding="utf-8")
        summary = reconciler.reconcile_paths([path], NOW)
        assert summary.rejected == 1
        assert registry.get("a") == before

    def test_deleted_file_removes_job(self, reconciler, registry, write_definition, make_definition):
        path = write_definition(make_definition("a"))
        reconciler.reconcile_all(NOW)
        path.unlink()
        summary = reconciler.reconcile_paths([path], NOW)
        assert summary.removed == 1
        assert "a" not in registry

    def test_duplicate_id_rejected(self, reconciler, registry, write_definition, make_definition):
        write_definition(make_definition("a", name="first"), name="one.json")
        reconciler.reconcile_all(NOW)
        dup = write_definition(make_definition("a", name="second"), name="two.json")
        summary = reconciler.reconcile_paths([dup], NOW)
        assert summary.rejected == 1
        assert "duplicate job id 'a'" in summary.errors[0]
        assert registry.get("a").name == "first"

    def test_duplicate_loads_once_owner_is_deleted(self, reconciler, registry, write_definition, make_definition):
        a = write_definition(make_definition("x", name="from a"), name="a.json")
        write_definition(make_definition("x", name="from b"), name="b.json")
        assert reconciler.reconcile_all(NOW).rejected == 1

        a.unlink()
        summary = reconciler.reconcile_paths([a], NOW)
        assert (summary.removed, summary.added, summary.rejected) == (1, 1, 0)
        assert registry.ids() == ["x"]
        assert registry.get("x").name == "from b"

        # b.json is now the owner: a later edit is an update, not a duplicate.
        b = write_definition(make_definition("x", name="edited"), name="b.json")
        assert reconciler.reconcile_paths([b], NOW).updated == 1

    def test_duplicate_loads_when_owner_switches_id(self, reconciler, registry, write_definition, make_definition):
        a = write_definition(make_definition("x", name="from a"), name="a.json")
        write_definition(make_definition("x", name="from b"), name="b.json")
        reconciler.reconcile_all(NOW)

        write_definition(make_definition("y"), name="a.json")
        summary = reconciler.reconcile_paths([a], NOW)
        assert registry.ids() == ["x", "y"]
        assert registry.get("x").name == "from b"
        assert summary.rejected == 0

    def test_duplicate_fixed_in_place_is_not_retried(self, reconciler, registry, write_definition, make_definition):
        a = write_definition(make_definition("x"), name="a.json")
        b = write_definition(make_definition("x"), name="b.json")
        reconciler.reconcile_all(NOW)
        write_definition(make_definition("z"), name="b.json")
        reconciler.reconcile_paths([b], NOW)

        a.unlink()
        reconciler.reconcile_paths([a], NOW)
        assert registry.ids() == ["z"]

    def test_file_changing_id_releases_old_id(self, reconciler, registry, write_definition, make_definition):
        path = write_definition(make_definition("a"), name="job.json")
        reconciler.reconcile_all(NOW)
        write_definition(make_definition("b"), name="job.json")
        summary = reconciler.reconcile_paths([path], NOW)
        assert (summary.added, summary.removed) == (1, 1)
        assert registry.ids() == ["b"]

    def test_delete_of_unloaded_file_falls_back_to_stem(self, reconciler, registry, paths):
        from ezcron.scheduler.job import CommandSpec, CronSchedule, Job

        registry.upsert(Job(
            id="orphan", name="orphan", schedule=CronSchedule("* * * * *"),
            command=CommandSpec(program="/bin/true"),
        ), NOW)
        summary = reconciler.reconcile_paths([paths.jobs_dir / "orphan.json"], NOW)
        assert summary.removed == 1
        assert "orphan" not in registry

    def test_absolute_or_foreign_paths_map_by_name(self, reconciler, registry, write_definition, make_definition, tmp_path):
        write_definition(make_definition("a"))
        summary = reconciler.reconcile_paths([tmp_path / "elsewhere" / "a.json"], NOW)
        assert summary.added == 1
        assert "a" in registry


@pytest.mark.asyncio
async def test_burst_of_notifications_is_one_pass(reconciler, registry, write_definition, make_definition):
    await reconciler.start()
    try:
        for i in range(5):
            path = write_definition(make_definition("a", name=f"v{i}"))
            reconciler.notify(path)
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.3)
    finally:
        await reconciler.stop()
    assert reconciler.passes == 1
    assert registry.get("a").name == "v4"


@pytest.mark.asyncio
async def test_reload_events(paths, registry, write_definition, make_definition):
    bus = EventBus()
    seen: list[Event] = []

    async def handler(event: Event):
        seen.append(event)

    bus.on("reload:*", handler)
    reconciler = ConfigReconciler(paths.jobs_dir, registry, bus=bus, watch=False)
    write_definition(make_definition("a"))
    write_definition("[]", name="bad.json")
    reconciler.reconcile_all(NOW)
    await asyncio.sleep(0.05)

    types = sorted(e.type for e in seen)
    assert types == sorted([EventType.RELOAD_ADDED, EventType.RELOAD_REJECTED, EventType.RELOAD_SUMMARY])
    rejected = next(e for e in seen if e.type == EventType.RELOAD_REJECTED)
    assert rejected.data["path"] == "bad.json"
    assert rejected.level == "ERROR"


@pytest.mark.asyncio
async def test_watcher_picks_up_new_file(paths, registry, write_definition, make_definition):
    reconciler = ConfigReconciler(paths.jobs_dir, registry, debounce_ms=50, watch=True)
    await reconciler.start()
    try:
        await asyncio.sleep(0.3)
        write_definition(make_definition("watched"))
        for _ in range(50):
            if "watched" in registry:
                break
            await asyncio.sleep(0.1)
    finally:
        await reconciler.stop()
    assert "watched" in registry
