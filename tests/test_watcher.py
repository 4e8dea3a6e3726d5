import asyncio
import logging

import pytest
from unittest.mock import AsyncMock, patch

from config.settings import WatchConfig, WatchMode
from services.shared.exceptions import UnsupportedModeError
from services.shared.fingerprint import fingerprint
from server.watcher import CycleSummary, Watcher, WatcherOptions


class TestWatcherCycle:
    """Scan cycles against real files under a temporary root."""

    @pytest.mark.asyncio
    async def test_unchanged_files_are_scanned_but_not_reprocessed(self, repository, watcher, watch_options,
                                                                  write_source, register):
        write_source("a.txt", "alpha")
        write_source("b.txt", "beta")
        await register("a.txt")
        await register("b.txt")

        summary = await watcher.run_once(watch_options)

        assert isinstance(summary, CycleSummary)
        assert (summary.scanned, summary.changed, summary.errors) == (2, 0, 0)
        run = await repository.get_watch_run(summary.run_id)
        assert run.finished_at is not None
        assert (run.scanned_count, run.changed_count, run.error_count) == (2, 0, 0)
        assert await repository.list_reindex_events(run_id=summary.run_id) == []

    @pytest.mark.asyncio
    async def test_changed_file_is_reprocessed_under_the_run(self, repository, watcher, watch_options,
                                                            write_source, register):
        path = write_source("notes/a.md", "first")
        registered = await register("notes/a.md")
        path.write_text("second", encoding="utf-8")

        summary = await watcher.run_once(watch_options)

        assert summary.changed == 1
        stored = await repository.get_tracked_file(registered["fileId"])
        assert stored.original_sha256 == fingerprint("second")
        events = await repository.list_reindex_events(run_id=summary.run_id)
        assert [e.status for e in events] == ["ok"]
        assert events[0].old_sha256 == fingerprint("first")
        chunks = await repository.list_chunks([stored.id])
        assert [c.run_id for c in chunks] == [summary.run_id]

    @pytest.mark.asyncio
    async def test_missing_file_does_not_abort_the_cycle(self, repository, watcher, watch_options,
                                                         write_source, register):
        """One unreadable file is counted; the rest are still evaluated."""
        write_source("a.txt", "a")
        gone = write_source("b.txt", "b")
        changed = write_source("c.txt", "c")
        for name in ("a.txt", "b.txt", "c.txt"):
            await register(name)
        gone.unlink()
        changed.write_text("c, edited", encoding="utf-8")

        summary = await watcher.run_once(watch_options)

        assert summary.scanned == 3
        assert summary.errors >= 1
        assert summary.missing == 1
        assert summary.changed == 1
        run = await repository.get_watch_run(summary.run_id)
        assert run.error_count == summary.errors

    @pytest.mark.asyncio
    async def test_reprocess_failure_is_isolated(self, repository, processor, watcher, watch_options,
                                                 write_source, register):
        for name in ("a.txt", "b.txt"):
            write_source(name, "v1")
            await register(name)
            write_source(name, f"v2 of {name}")

        real_replace = repository.replace_chunk_set
        calls = []

        async def flaky_replace(file_id, *args, **kwargs):
            calls.append(file_id)
            if len(calls) == 1:
                raise RuntimeError("store hiccup")
            return await real_replace(file_id, *args, **kwargs)

        with patch.object(repository, "replace_chunk_set", side_effect=flaky_replace):
            summary = await watcher.run_once(watch_options)

        assert (summary.scanned, summary.changed, summary.errors) == (2, 1, 1)
        statuses = sorted(f.status for f in await repository.list_tracked_files())
        assert statuses == ["error", "uploaded"]

    @pytest.mark.asyncio
    async def test_top_level_failure_still_finishes_the_run(self, repository, watcher, watch_options):
        with patch.object(repository, "list_tracked_files_with_source_path",
                          AsyncMock(side_effect=RuntimeError("listing failed"))):
            with pytest.raises(RuntimeError):
                await watcher.run_once(watch_options)

        runs = await repository.list_watch_runs()
        assert len(runs) == 1
        assert runs[0].finished_at is not None
        assert not watcher.is_running

    @pytest.mark.asyncio
    async def test_empty_store_produces_empty_run(self, repository, watcher, watch_options):
        summary = await watcher.run_once(watch_options)
        assert (summary.scanned, summary.changed, summary.errors) == (0, 0, 0)
        assert len(await repository.list_watch_runs()) == 1

    @pytest.mark.asyncio
    async def test_cycle_logs_carry_run_context(self, repository, watcher, watch_options,
                                                write_source, register, caplog):
        write_source("a.txt", "a")
        gone = write_source("b.txt", "b")
        await register("a.txt")
        missing = await register("b.txt")
        gone.unlink()

        with caplog.at_level(logging.INFO, logger="server.watcher"):
            summary = await watcher.run_once(watch_options)

        (warning,) = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert warning.run_id == summary.run_id
        assert warning.file_id == missing["fileId"]
        assert warning.path.endswith("b.txt")
        (finished,) = [r for r in caplog.records if getattr(r, "status", None) == "completed"]
        assert finished.run_id == summary.run_id
        assert (finished.scanned, finished.errors, finished.missing) == (2, 1, 1)


class TestSingleFlight:
    """At most one cycle is in flight; overlapping triggers are dropped."""

    @pytest.mark.asyncio
    async def test_concurrent_cycles_create_one_run(self, repository, watcher, watch_options,
                                                    write_source, register):
        write_source("a.txt", "a")
        await register("a.txt")

        results = await asyncio.gather(
            watcher.run_once(watch_options),
            watcher.run_once(watch_options),
            watcher.run_once(watch_options),
        )

        completed = [r for r in results if r is not None]
        assert len(completed) == 1
        assert results.count(None) == 2
        assert len(await repository.list_watch_runs()) == 1

    @pytest.mark.asyncio
    async def test_guard_is_released_after_a_cycle(self, repository, watcher, watch_options):
        assert await watcher.run_once(watch_options) is not None
        assert await watcher.run_once(watch_options) is not None
        assert len(await repository.list_watch_runs()) == 2

    @pytest.mark.asyncio
    async def test_trigger_while_running_is_dropped(self, repository, watcher, watch_options,
                                                    write_source, register):
        write_source("a.txt", "a")
        await register("a.txt")
        watcher.start(watch_options)

        first = asyncio.ensure_future(watcher.run_once(watch_options))
        await asyncio.sleep(0)
        assert watcher.is_running
        assert await watcher.trigger_now() is None

        assert (await first).scanned == 1
        assert len(await repository.list_watch_runs()) == 1


class TestWatcherLifecycle:

    @pytest.mark.asyncio
    async def test_trigger_before_start_is_a_no_op(self, repository, watcher):
        assert await watcher.trigger_now() is None
        assert await repository.list_watch_runs() == []

    @pytest.mark.asyncio
    async def test_start_schedules_one_interval_job(self, watcher, watch_options):
        assert watcher.start(watch_options) is True
        assert watcher.is_started
        jobs = watcher.scheduler.get_jobs()
        assert [job.id for job in jobs] == [Watcher.JOB_ID]
        assert jobs[0].trigger.interval.total_seconds() == 60
        assert jobs[0].max_instances == 1
        assert jobs[0].coalesce is True

    @pytest.mark.asyncio
    async def test_interval_has_a_floor(self, watcher, source_root):
        watcher.start(WatcherOptions(interval_seconds=1, root_path=str(source_root), run_on_start=False))
        job = watcher.scheduler.get_job(Watcher.JOB_ID)
        assert job.trigger.interval.total_seconds() == Watcher.MIN_INTERVAL_SECONDS

    @pytest.mark.asyncio
    async def test_second_start_only_refreshes_options(self, watcher, watch_options, source_root):
        watcher.start(watch_options)
        scheduler = watcher.scheduler
        refreshed = WatcherOptions(interval_seconds=30, root_path=str(source_root / "other"), run_on_start=False)

        assert watcher.start(refreshed) is False
        assert watcher.scheduler is scheduler
        assert watcher.options is refreshed

    @pytest.mark.asyncio
    async def test_trigger_uses_latest_options(self, repository, watcher, watch_options, source_root,
                                               write_source, register):
        write_source("a.txt", "a")
        await register("a.txt")
        watcher.start(WatcherOptions(root_path=str(source_root / "elsewhere"), run_on_start=False))
        watcher.start(watch_options)

        summary = await watcher.trigger_now()
        assert summary.errors == 0

    @pytest.mark.asyncio
    async def test_run_on_start_fires_immediately(self, repository, watcher, source_root):
        watcher.start(WatcherOptions(root_path=str(source_root), run_on_start=True))
        for _ in range(100):
            if await repository.list_watch_runs():
                break
            await asyncio.sleep(0.05)
        runs = await repository.list_watch_runs()
        assert len(runs) == 1

    @pytest.mark.asyncio
    async def test_stop_shuts_the_scheduler_down(self, watcher, watch_options):
        watcher.start(watch_options)
        watcher.stop()
        assert not watcher.is_started
        watcher.stop()

    @pytest.mark.asyncio
    async def test_database_mode_is_not_implemented(self, watcher, source_root):
        options = WatcherOptions(root_path=str(source_root), mode=WatchMode.DATABASE)
        with pytest.raises(UnsupportedModeError):
            watcher.start(options)
        with pytest.raises(UnsupportedModeError):
            await watcher.run_once(options)


def test_options_from_config(tmp_path):
    config = WatchConfig(interval_seconds=12.5, root_path=str(tmp_path), run_on_start=False)
    options = WatcherOptions.from_config(config)
    assert options.interval_seconds == 12.5
    assert options.root_path == str(tmp_path)
    assert options.mode is WatchMode.FS
    assert options.run_on_start is False


def test_cycle_summary_to_dict():
    summary = CycleSummary(run_id="abc", scanned=3, changed=1, errors=1, missing=1)
    assert summary.to_dict() == {"runId": "abc", "scanned": 3, "changed": 1, "errors": 1, "missing": 1}
