"""Shared database models for tracked files, chunks and the audit trail."""
import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship

from .records import (
    ChunkRecord,
    IngestRunRecord,
    ReindexEventRecord,
    TrackedFile,
    WatchRunRecord,
)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class FileStatus(str, Enum):
    """Lifecycle of a tracked file.

    pending -> uploading -> processing -> uploaded/ready on the happy path;
    error is reachable from anywhere; reindexing only while a reprocess is
    in flight, ending in uploaded or error.
    """
    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    UPLOADED = "uploaded"
    READY = "ready"
    REINDEXING = "reindexing"
    ERROR = "error"


class ReindexStatus(str, Enum):
    OK = "ok"
    ERROR = "error"


class File(Base):
    """One ingested document and the cached copy of its source text."""
    __tablename__ = 'files'

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(500), nullable=False)
    original_name = Column(String(500), nullable=False)
    size = Column(Integer, nullable=False, default=0)
    mime_type = Column(String(100), nullable=False, default="text/plain")
    extension = Column(String(50), nullable=False, default="")
    upload_path = Column(String(2048), nullable=True)
    status = Column(String(20), nullable=False, default=FileStatus.PENDING.value)
    original_text = Column(Text, nullable=True)
    original_length = Column(Integer, nullable=True)
    original_sha256 = Column(String(64), nullable=True)
    chunk_count = Column(Integer, nullable=False, default=0)
    run_id = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    chunks = relationship(
        "Chunk",
        back_populates="file",
        cascade="all, delete-orphan",
        order_by="Chunk.chunk_index",
    )

    __table_args__ = (
        Index('idx_files_upload_path', 'upload_path'),
        Index('idx_files_run_id', 'run_id'),
        Index('idx_files_created_at', 'created_at'),
    )

    def to_record(self) -> TrackedFile:
        return TrackedFile(
            id=self.id,
            name=self.name,
            original_name=self.original_name,
            size=self.size,
            mime_type=self.mime_type,
            extension=self.extension,
            upload_path=self.upload_path,
            status=self.status,
            original_text=self.original_text,
            original_length=self.original_length,
            original_sha256=self.original_sha256,
            chunk_count=self.chunk_count,
            run_id=self.run_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class Chunk(Base):
    """One contiguous slice of a file's text."""
    __tablename__ = 'chunks'

    id = Column(String(32), primary_key=True, default=new_id)
    file_id = Column(String(32), ForeignKey('files.id', ondelete='CASCADE'), nullable=False)
    content = Column(Text, nullable=False)
    chunk_index = Column(Integer, nullable=False)
    start_char = Column(Integer, nullable=False)
    end_char = Column(Integer, nullable=False)
    token_count = Column(Integer, nullable=False)
    run_id = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    file = relationship("File", back_populates="chunks")

    __table_args__ = (
        UniqueConstraint('file_id', 'chunk_index', name='uq_chunks_file_index'),
        Index('idx_chunks_file_id', 'file_id'),
        Index('idx_chunks_run_id', 'run_id'),
    )

    def to_record(self) -> ChunkRecord:
        return ChunkRecord(
            id=self.id,
            file_id=self.file_id,
            content=self.content,
            chunk_index=self.chunk_index,
            start_char=self.start_char,
            end_char=self.end_char,
            token_count=self.token_count,
            run_id=self.run_id,
            created_at=self.created_at,
        )


class WatchRun(Base):
    """One execution of the scheduler's scan cycle. Append-only."""
    __tablename__ = 'watch_runs'

    id = Column(String(32), primary_key=True, default=new_id)
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    mode = Column(String(20), nullable=False, default="fs")
    scanned_count = Column(Integer, nullable=False, default=0)
    changed_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index('idx_watch_runs_started_at', 'started_at'),
    )

    def to_record(self) -> WatchRunRecord:
        return WatchRunRecord(
            id=self.id,
            started_at=self.started_at,
            finished_at=self.finished_at,
            mode=self.mode,
            scanned_count=self.scanned_count,
            changed_count=self.changed_count,
            error_count=self.error_count,
        )


class IngestRun(Base):
    """One upload request and its totals."""
    __tablename__ = 'ingest_runs'

    id = Column(String(32), primary_key=True, default=new_id)
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    file_count = Column(Integer, nullable=False, default=0)
    chunk_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)

    def to_record(self) -> IngestRunRecord:
        return IngestRunRecord(
            id=self.id,
            started_at=self.started_at,
            finished_at=self.finished_at,
            file_count=self.file_count,
            chunk_count=self.chunk_count,
            error_count=self.error_count,
        )


class ReindexEvent(Base):
    """Outcome of one reprocessing attempt.

    ``file_id`` and ``run_id`` are correlation ids only; deleting a file or
    a run never removes its events.
    """
    __tablename__ = 'reindex_events'

    id = Column(String(32), primary_key=True, default=new_id)
    file_id = Column(String(32), nullable=False)
    run_id = Column(String(32), nullable=True)
    old_sha256 = Column(String(64), nullable=True)
    new_sha256 = Column(String(64), nullable=False)
    status = Column(String(10), nullable=False)
    message = Column(Text, nullable=False, default="")
    duration_ms = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_reindex_events_file_id', 'file_id'),
        Index('idx_reindex_events_run_id', 'run_id'),
    )

    def to_record(self) -> ReindexEventRecord:
        return ReindexEventRecord(
            id=self.id,
            file_id=self.file_id,
            run_id=self.run_id,
            old_sha256=self.old_sha256,
            new_sha256=self.new_sha256,
            status=self.status,
            message=self.message,
            duration_ms=self.duration_ms,
            created_at=self.created_at,
        )
