"""Recurring change-detection scan for docsync.

One APScheduler interval job and the on-demand trigger both funnel into
``Watcher.run_once``. At most one cycle is in flight per process: an
overlapping invocation is dropped, not queued. Within a cycle files are
visited one at a time.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.settings import WatchConfig, WatchMode
from observability.prometheus_metrics import record_watch_cycle
from services.shared.exceptions import SourceReadError, UnsupportedModeError
from services.shared.fingerprint import fingerprint
from services.shared.incremental import IncrementalProcessor
from services.shared.paths import read_source_text, resolve_source_path
from services.shared.records import TrackedFile
from services.shared.repository import FilesRepository

logger = logging.getLogger(__name__)


@dataclass
class WatcherOptions:
    """Options a cycle runs with."""
    interval_seconds: float = 60.0
    root_path: str = "."
    mode: WatchMode = WatchMode.FS
    run_on_start: bool = True

    @classmethod
    def from_config(cls, config: WatchConfig) -> 'WatcherOptions':
        return cls(
            interval_seconds=config.interval_seconds,
            root_path=config.root_path,
            mode=config.mode,
            run_on_start=config.run_on_start,
        )


@dataclass
class CycleSummary:
    """Counts accumulated by one scan cycle."""
    run_id: str
    scanned: int = 0
    changed: int = 0
    errors: int = 0
    missing: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["runId"] = data.pop("run_id")
        return data


class Watcher:
    """Schedules scan cycles and guarantees single-flight execution."""

    MIN_INTERVAL_SECONDS = 5.0
    MISSING_LOG_LIMIT = 20
    JOB_ID = "docsync_watch_cycle"

    def __init__(self, repository: FilesRepository, processor: IncrementalProcessor):
        self.repository = repository
        self.processor = processor
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._options: Optional[WatcherOptions] = None
        self._cycle_lock = asyncio.Lock()

    @property
    def options(self) -> Optional[WatcherOptions]:
        return self._options

    @property
    def is_started(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    @property
    def is_running(self) -> bool:
        """True while a cycle is in flight."""
        return self._cycle_lock.locked()

    def start(self, options: WatcherOptions) -> bool:
        """Store ``options`` and start the recurring job if it is not running.

        Must be called from within a running event loop. Returns True when
        this call started the scheduler, False when it only refreshed the
        options of an already running one.
        """
        _check_mode(options.mode)
        self._options = options
        if self.is_started:
            return False

        interval = max(self.MIN_INTERVAL_SECONDS, options.interval_seconds or 60.0)
        job_kwargs: Dict[str, Any] = dict(
            id=self.JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if options.run_on_start:
            job_kwargs["next_run_time"] = datetime.now(timezone.utc)

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(self._scheduled_run, 'interval', seconds=interval, **job_kwargs)
        self.scheduler.start()
        logger.info(f"Watcher started with interval {interval}s (root={options.root_path})")
        return True

    def stop(self) -> None:
        """Stop the timer. An in-flight cycle runs to completion."""
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Watcher stopped")
        self.scheduler = None

    async def trigger_now(self) -> Optional[CycleSummary]:
        """Run one cycle immediately with the last stored options."""
        if self._options is None:
            logger.warning("trigger_now called before the watcher was started; ignoring")
            return None
        return await self.run_once(self._options)

    async def _scheduled_run(self) -> None:
        # Scheduler shutdown cancels pending job futures; the cycle itself
        # keeps running under the shield.
        try:
            await asyncio.shield(self._guarded_cycle())
        except asyncio.CancelledError:
            logger.info("Scheduled cycle detached from a stopping scheduler")

    async def _guarded_cycle(self) -> None:
        try:
            await self.run_once(self._options)
        except Exception as e:
            logger.error(f"Scheduled scan cycle failed: {e}")

    async def run_once(self, options: WatcherOptions) -> Optional[CycleSummary]:
        """Run one scan cycle, or return None if one is already in flight."""
        _check_mode(options.mode)
        if self._cycle_lock.locked():
            logger.info("Skipping scan cycle: previous cycle still in progress", extra={"status": "skipped"})
            record_watch_cycle("skipped")
            return None
        async with self._cycle_lock:
            return await self._run_cycle(options)

    async def _run_cycle(self, options: WatcherOptions) -> CycleSummary:
        start = time.monotonic()
        run_id = await self.repository.create_watch_run(mode=options.mode.value)
        summary = CycleSummary(run_id=run_id)
        status = "failed"
        logger.info(f"Scan cycle {run_id} started", extra={"run_id": run_id, "root": options.root_path})

        try:
            candidates = await self.repository.list_tracked_files_with_source_path()
            for tracked in candidates:
                summary.scanned += 1
                try:
                    await self._visit(tracked, options, summary)
                except Exception as e:
                    summary.errors += 1
                    logger.error(f"Scan cycle {run_id}: failed processing file {tracked.id}: {e}",
                                 extra={"run_id": run_id, "file_id": tracked.id})
            status = "completed"
        finally:
            duration = time.monotonic() - start
            logger.info(
                f"Scan cycle {run_id} {status}: scanned={summary.scanned} changed={summary.changed} "
                f"errors={summary.errors} missing={summary.missing} "
                f"(logged {min(summary.missing, self.MISSING_LOG_LIMIT)}) in {duration:.2f}s",
                extra=dict(asdict(summary), status=status, duration_ms=int(duration * 1000)),
            )
            try:
                await self.repository.finish_watch_run(
                    run_id, scanned=summary.scanned, changed=summary.changed, errors=summary.errors,
                )
            finally:
                record_watch_cycle(status, summary.scanned, summary.changed, summary.errors, duration)

        return summary

    async def _visit(self, tracked: TrackedFile, options: WatcherOptions, summary: CycleSummary) -> None:
        path = resolve_source_path(tracked.upload_path, options.root_path)
        try:
            content = await read_source_text(path)
        except SourceReadError as e:
            summary.errors += 1
            summary.missing += 1
            if summary.missing <= self.MISSING_LOG_LIMIT:
                logger.warning(f"Source for file {tracked.id} unavailable, skipping: {e.message}",
                               extra={"run_id": summary.run_id, "file_id": tracked.id, "path": e.path})
            return

        if fingerprint(content) == (tracked.original_sha256 or ""):
            return

        result = await self.processor.reprocess(tracked, content, run_id=summary.run_id)
        if result.changed:
            summary.changed += 1


def _check_mode(mode: WatchMode) -> None:
    if WatchMode(mode) is not WatchMode.FS:
        raise UnsupportedModeError(f"Watch mode '{WatchMode(mode).value}' is not implemented")
