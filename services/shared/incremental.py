"""Incremental reprocessing: fingerprint, compare, re-chunk and replace."""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from observability.prometheus_metrics import record_reindex_metrics
from pipelines.chunker import DEFAULT_POLICY, ChunkingPolicy, split_text

from .exceptions import NotFoundError, ProcessingError, StoreError
from .fingerprint import fingerprint
from .models import FileStatus, ReindexStatus
from .records import TrackedFile
from .repository import FilesRepository

logger = logging.getLogger(__name__)


@dataclass
class ReprocessResult:
    changed: bool
    new_fingerprint: str
    chunk_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changed": self.changed,
            "newSha": self.new_fingerprint,
            "chunkCount": self.chunk_count,
        }


@dataclass
class _FileLock:
    lock: asyncio.Lock
    holders: int = 0


class IncrementalProcessor:
    """Re-chunks a tracked file when its content fingerprint changes.

    Attempts on the same file are serialized by a per-file lock, and the
    stored fingerprint is re-read under that lock, so when a targeted
    reindex and a scan cycle race on one file the second writer finds the
    fingerprint already current and does nothing.
    """

    def __init__(self, repository: FilesRepository, policy: ChunkingPolicy = DEFAULT_POLICY):
        self.repository = repository
        self.policy = policy
        self._file_locks: Dict[str, _FileLock] = {}

    @asynccontextmanager
    async def _locked(self, file_id: str) -> AsyncIterator[None]:
        entry = self._file_locks.get(file_id)
        if entry is None:
            entry = self._file_locks[file_id] = _FileLock(asyncio.Lock())
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            # Last holder or waiter drops the entry.
            if entry.holders == 0:
                self._file_locks.pop(file_id, None)

    async def reprocess(self, tracked: TrackedFile, source_text: str,
                        run_id: Optional[str] = None) -> ReprocessResult:
        """Bring ``tracked`` in line with ``source_text``.

        Returns ``changed=False`` without writing anything when the stored
        fingerprint already matches. Otherwise marks the file
        ``reindexing``, swaps its chunk set and records an ``ok`` event.
        On failure the file is marked ``error``, an ``error`` event is
        recorded and ``ProcessingError`` is raised.
        """
        start = time.monotonic()
        new_sha = fingerprint(source_text)
        context = {"file_id": tracked.id, "run_id": run_id}

        async with self._locked(tracked.id):
            current = await self.repository.get_tracked_file(tracked.id)
            if current is None:
                raise NotFoundError(f"File not found: {tracked.id}")

            old_sha = current.original_sha256 or None
            if old_sha and old_sha == new_sha:
                logger.debug(f"File {tracked.id} unchanged ({new_sha[:12]})", extra=context)
                return ReprocessResult(changed=False, new_fingerprint=new_sha)

            # Visible "in progress" marker. If the process dies before the
            # swap commits, the stored fingerprint still differs from the
            # source and the next cycle retries.
            try:
                await self.repository.update_file_status(tracked.id, FileStatus.REINDEXING)
                chunks = split_text(source_text, self.policy)
                await self.repository.replace_chunk_set(
                    tracked.id, chunks, source_text=source_text, fingerprint=new_sha, run_id=run_id,
                )
            except Exception as e:
                duration_ms = _elapsed_ms(start)
                await self._record_failure(tracked.id, run_id, old_sha, new_sha, e, duration_ms)
                record_reindex_metrics(ReindexStatus.ERROR.value, duration_ms / 1000.0)
                raise ProcessingError(f"Reindex failed for {tracked.id}: {e}", file_id=tracked.id) from e

            duration_ms = _elapsed_ms(start)
            # The swap is committed; a lost audit row does not undo it.
            try:
                await self.repository.create_reindex_event(
                    file_id=tracked.id,
                    run_id=run_id,
                    old_sha256=old_sha,
                    new_sha256=new_sha,
                    status=ReindexStatus.OK.value,
                    duration_ms=duration_ms,
                )
            except StoreError as e:
                logger.error(f"Could not record reindex event for file {tracked.id}: {e}", extra=context)

        record_reindex_metrics(ReindexStatus.OK.value, duration_ms / 1000.0, len(chunks))
        logger.info(
            f"Reindexed file {tracked.id}: {len(chunks)} chunks, "
            f"{(old_sha or 'none')[:12]} -> {new_sha[:12]} in {duration_ms}ms",
            extra=dict(context, chunk_count=len(chunks), duration_ms=duration_ms,
                       old_sha=old_sha, new_sha=new_sha),
        )
        return ReprocessResult(changed=True, new_fingerprint=new_sha, chunk_count=len(chunks))

    async def _record_failure(self, file_id: str, run_id: Optional[str], old_sha: Optional[str],
                              new_sha: str, error: Exception, duration_ms: int) -> None:
        context = {"file_id": file_id, "run_id": run_id, "duration_ms": duration_ms}
        logger.error(f"Reindex failed for file {file_id}: {error}", extra=context)
        try:
            await self.repository.update_file_status(file_id, FileStatus.ERROR)
        except (StoreError, NotFoundError) as e:
            logger.error(f"Could not mark file {file_id} as error: {e}", extra=context)
        try:
            await self.repository.create_reindex_event(
                file_id=file_id,
                run_id=run_id,
                old_sha256=old_sha,
                new_sha256=new_sha,
                status=ReindexStatus.ERROR.value,
                message=str(error),
                duration_ms=duration_ms,
            )
        except StoreError as e:
            logger.error(f"Could not record reindex event for file {file_id}: {e}", extra=context)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
