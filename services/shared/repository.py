"""Persistence for tracked files, chunks, runs and reindex events.

Every public method is a coroutine that runs its blocking SQLAlchemy work in
the default executor. Each call is one logical operation against the store;
``replace_chunk_set`` is the only multi-statement write and runs in a single
transaction. ``SQLAlchemyError`` never escapes: it surfaces as
``StoreError``.
"""
import asyncio
import functools
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import delete, func, or_, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.database import DatabaseConfig, build_engine, build_session_factory
from pipelines.chunker import describe_chunks

from .exceptions import NotFoundError, StoreError, StoreUnavailable
from .models import Base, Chunk, File, FileStatus, IngestRun, ReindexEvent, WatchRun, utcnow
from .paths import normalize_locator
from .records import (
    ChunkRecord,
    IngestRunRecord,
    ReindexEventRecord,
    TrackedFile,
    WatchRunRecord,
)

logger = logging.getLogger(__name__)

# Columns callers may set through ``update_file_status(..., patch=...)``.
PATCHABLE_FILE_FIELDS = frozenset({
    'name', 'original_name', 'size', 'mime_type', 'extension', 'upload_path',
    'original_text', 'original_length', 'original_sha256', 'chunk_count', 'run_id',
})


class FilesRepository:
    """Store-agnostic repository backed by SQLAlchemy."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = build_session_factory(engine)

    @classmethod
    def from_config(cls, config: Optional[DatabaseConfig] = None) -> 'FilesRepository':
        return cls(build_engine(config))

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Store operation failed: {e}")
            raise StoreError(f"Store operation failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Lifecycle

    async def initialize(self) -> None:
        """Create the schema if it does not exist."""
        await self._run(self._initialize)

    def _initialize(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Failed to initialize schema: {e}") from e
        logger.info("Repository schema ready")

    async def close(self) -> None:
        await self._run(self.engine.dispose)
        logger.info("Repository connections closed")

    async def ping(self) -> None:
        """Lightweight preflight; raises ``StoreUnavailable``."""
        await self._run(self._ping)

    def _ping(self) -> None:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Database unavailable: {e}") from e

    # Tracked files

    async def list_tracked_files(self) -> List[TrackedFile]:
        return await self._run(self._list_tracked_files, False)

    async def list_tracked_files_with_source_path(self) -> List[TrackedFile]:
        """Files that have a source locator, in registration order."""
        return await self._run(self._list_tracked_files, True)

    def _list_tracked_files(self, with_source_path: bool) -> List[TrackedFile]:
        with self._session() as session:
            stmt = select(File).order_by(File.created_at, File.id)
            if with_source_path:
                stmt = stmt.where(File.upload_path.isnot(None), File.upload_path != '')
            return [row.to_record() for row in session.scalars(stmt)]

    async def get_tracked_file(self, file_id: str) -> Optional[TrackedFile]:
        return await self._run(self._get_tracked_file, file_id)

    def _get_tracked_file(self, file_id: str) -> Optional[TrackedFile]:
        with self._session() as session:
            row = session.get(File, file_id)
            return row.to_record() if row else None

    async def find_files_by_source_path(self, locator: str) -> List[TrackedFile]:
        """Files whose stored locator equals ``locator`` after normalization."""
        wanted = normalize_locator(locator)
        files = await self.list_tracked_files_with_source_path()
        return [f for f in files if normalize_locator(f.upload_path or '') == wanted]

    async def create_tracked_file(self, name: str, original_name: str, **fields: Any) -> TrackedFile:
        return await self._run(self._create_tracked_file, name, original_name, fields)

    def _create_tracked_file(self, name: str, original_name: str, fields: Dict[str, Any]) -> TrackedFile:
        unknown = set(fields) - PATCHABLE_FILE_FIELDS - {'status'}
        if unknown:
            raise ValueError(f"Unknown file fields: {sorted(unknown)}")
        status = FileStatus(fields.pop('status', FileStatus.PENDING)).value
        with self._session() as session:
            row = File(name=name, original_name=original_name, status=status, **fields)
            session.add(row)
            session.flush()
            return row.to_record()

    async def delete_tracked_file(self, file_id: str) -> bool:
        """Delete a file and, through the cascade, its chunks."""
        return await self._run(self._delete_tracked_file, file_id)

    def _delete_tracked_file(self, file_id: str) -> bool:
        with self._session() as session:
            row = session.get(File, file_id)
            if row is None:
                return False
            session.execute(delete(Chunk).where(Chunk.file_id == file_id))
            session.delete(row)
            return True

    async def update_file_status(self, file_id: str, status: str,
                                 patch: Optional[Dict[str, Any]] = None) -> TrackedFile:
        return await self._run(self._update_file_status, file_id, status, patch or {})

    def _update_file_status(self, file_id: str, status: str, patch: Dict[str, Any]) -> TrackedFile:
        unknown = set(patch) - PATCHABLE_FILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown file fields: {sorted(unknown)}")
        with self._session() as session:
            row = session.get(File, file_id)
            if row is None:
                raise NotFoundError(f"File not found: {file_id}")
            row.status = FileStatus(status).value
            for key, value in patch.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
            session.flush()
            return row.to_record()

    # Chunks

    async def delete_chunks_for_file(self, file_id: str) -> int:
        return await self._run(self._delete_chunks_for_file, file_id)

    def _delete_chunks_for_file(self, file_id: str) -> int:
        with self._session() as session:
            result = session.execute(delete(Chunk).where(Chunk.file_id == file_id))
            return result.rowcount or 0

    async def insert_chunks(self, file_id: str, chunks: Sequence[str], run_id: Optional[str] = None,
                            source_text: Optional[str] = None) -> int:
        """Insert ``chunks`` in order as indices ``0..N-1``.

        Offsets are located in ``source_text`` when given.
        """
        return await self._run(self._insert_chunks, file_id, list(chunks), run_id, source_text)

    def _insert_chunks(self, file_id: str, chunks: List[str], run_id: Optional[str],
                       source_text: Optional[str]) -> int:
        with self._session() as session:
            self._add_chunks(session, file_id, chunks, run_id, source_text)
            return len(chunks)

    def _add_chunks(self, session: Session, file_id: str, chunks: List[str],
                    run_id: Optional[str], source_text: Optional[str]) -> None:
        session.add_all([
            Chunk(
                file_id=file_id,
                content=draft.content,
                chunk_index=draft.chunk_index,
                start_char=draft.start_char,
                end_char=draft.end_char,
                token_count=draft.token_count,
                run_id=run_id,
            )
            for draft in describe_chunks(chunks, source_text)
        ])

    async def replace_chunk_set(self, file_id: str, chunks: Sequence[str], source_text: str,
                                fingerprint: str, run_id: Optional[str] = None) -> TrackedFile:
        """Swap a file's chunk set and refresh its record in one transaction.

        Deletes the old chunks, inserts the new ones and marks the file
        ``uploaded`` with the new text, length, fingerprint and chunk count.
        Either all of it is visible afterwards or none of it is.
        """
        return await self._run(self._replace_chunk_set, file_id, list(chunks), source_text, fingerprint, run_id)

    def _replace_chunk_set(self, file_id: str, chunks: List[str], source_text: str,
                           fingerprint: str, run_id: Optional[str]) -> TrackedFile:
        with self._session() as session:
            row = session.get(File, file_id)
            if row is None:
                raise NotFoundError(f"File not found: {file_id}")
            session.execute(delete(Chunk).where(Chunk.file_id == file_id))
            self._add_chunks(session, file_id, chunks, run_id, source_text)
            row.status = FileStatus.UPLOADED.value
            row.original_text = source_text
            row.original_length = len(source_text)
            row.original_sha256 = fingerprint
            row.size = len(source_text.encode('utf-8'))
            row.chunk_count = len(chunks)
            row.updated_at = utcnow()
            session.flush()
            return row.to_record()

    async def list_chunks(self, file_ids: Optional[Sequence[str]] = None) -> List[ChunkRecord]:
        return await self._run(self._list_chunks, list(file_ids) if file_ids is not None else None)

    def _list_chunks(self, file_ids: Optional[List[str]]) -> List[ChunkRecord]:
        with self._session() as session:
            stmt = select(Chunk).order_by(Chunk.file_id, Chunk.chunk_index)
            if file_ids is not None:
                if not file_ids:
                    return []
                stmt = stmt.where(Chunk.file_id.in_(file_ids))
            return [row.to_record() for row in session.scalars(stmt)]

    async def count_chunks(self, file_id: str) -> int:
        return await self._run(self._count_chunks, file_id)

    def _count_chunks(self, file_id: str) -> int:
        with self._session() as session:
            return session.scalar(select(func.count(Chunk.id)).where(Chunk.file_id == file_id)) or 0

    async def list_files_for_run(self, run_id: str) -> List[TrackedFile]:
        """Files created by ingest run ``run_id`` or owning chunks tagged with it."""
        return await self._run(self._list_files_for_run, run_id)

    def _list_files_for_run(self, run_id: str) -> List[TrackedFile]:
        with self._session() as session:
            tagged = select(Chunk.file_id).where(Chunk.run_id == run_id)
            stmt = (
                select(File)
                .where(or_(File.run_id == run_id, File.id.in_(tagged)))
                .order_by(File.created_at.desc(), File.id)
            )
            return [row.to_record() for row in session.scalars(stmt)]

    # Watch runs

    async def create_watch_run(self, mode: str = "fs") -> str:
        return await self._run(self._create_watch_run, mode)

    def _create_watch_run(self, mode: str) -> str:
        with self._session() as session:
            run = WatchRun(mode=mode)
            session.add(run)
            session.flush()
            return run.id

    async def finish_watch_run(self, run_id: str, scanned: int, changed: int, errors: int) -> None:
        await self._run(self._finish_watch_run, run_id, scanned, changed, errors)

    def _finish_watch_run(self, run_id: str, scanned: int, changed: int, errors: int) -> None:
        with self._session() as session:
            run = session.get(WatchRun, run_id)
            if run is None:
                raise NotFoundError(f"Watch run not found: {run_id}")
            if run.finished_at is not None:
                logger.warning(f"Watch run {run_id} already finished; keeping the first summary")
                return
            run.finished_at = utcnow()
            run.scanned_count = scanned
            run.changed_count = changed
            run.error_count = errors

    async def get_watch_run(self, run_id: str) -> Optional[WatchRunRecord]:
        return await self._run(self._get_watch_run, run_id)

    def _get_watch_run(self, run_id: str) -> Optional[WatchRunRecord]:
        with self._session() as session:
            run = session.get(WatchRun, run_id)
            return run.to_record() if run else None

    async def list_watch_runs(self, limit: int = 20) -> List[WatchRunRecord]:
        """Most recent runs first."""
        return await self._run(self._list_watch_runs, limit)

    def _list_watch_runs(self, limit: int) -> List[WatchRunRecord]:
        with self._session() as session:
            stmt = select(WatchRun).order_by(WatchRun.started_at.desc(), WatchRun.id).limit(limit)
            return [run.to_record() for run in session.scalars(stmt)]

    # Ingest runs

    async def create_ingest_run(self) -> str:
        return await self._run(self._create_ingest_run)

    def _create_ingest_run(self) -> str:
        with self._session() as session:
            run = IngestRun()
            session.add(run)
            session.flush()
            return run.id

    async def finish_ingest_run(self, run_id: str, file_count: int, chunk_count: int,
                                error_count: int) -> IngestRunRecord:
        return await self._run(self._finish_ingest_run, run_id, file_count, chunk_count, error_count)

    def _finish_ingest_run(self, run_id: str, file_count: int, chunk_count: int,
                           error_count: int) -> IngestRunRecord:
        with self._session() as session:
            run = session.get(IngestRun, run_id)
            if run is None:
                raise NotFoundError(f"Ingest run not found: {run_id}")
            run.finished_at = utcnow()
            run.file_count = file_count
            run.chunk_count = chunk_count
            run.error_count = error_count
            session.flush()
            return run.to_record()

    # Reindex events

    async def create_reindex_event(self, file_id: str, new_sha256: str, status: str,
                                   run_id: Optional[str] = None, old_sha256: Optional[str] = None,
                                   message: str = "", duration_ms: int = 0) -> ReindexEventRecord:
        return await self._run(
            self._create_reindex_event,
            dict(
                file_id=file_id,
                new_sha256=new_sha256,
                status=status,
                run_id=run_id,
                old_sha256=old_sha256,
                message=message or "",
                duration_ms=int(duration_ms),
            ),
        )

    def _create_reindex_event(self, fields: Dict[str, Any]) -> ReindexEventRecord:
        with self._session() as session:
            event = ReindexEvent(**fields)
            session.add(event)
            session.flush()
            return event.to_record()

    async def list_reindex_events(self, file_id: Optional[str] = None,
                                  run_id: Optional[str] = None) -> List[ReindexEventRecord]:
        return await self._run(self._list_reindex_events, file_id, run_id)

    def _list_reindex_events(self, file_id: Optional[str], run_id: Optional[str]) -> List[ReindexEventRecord]:
        with self._session() as session:
            stmt = select(ReindexEvent).order_by(ReindexEvent.created_at, ReindexEvent.id)
            if file_id is not None:
                stmt = stmt.where(ReindexEvent.file_id == file_id)
            if run_id is not None:
                stmt = stmt.where(ReindexEvent.run_id == run_id)
            return [event.to_record() for event in session.scalars(stmt)]
