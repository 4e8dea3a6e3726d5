"""Typed records returned by the repository.

ORM rows never leave the repository; callers only ever see these.
"""
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional


def _isoformat(data: Dict[str, Any], *fields: str) -> Dict[str, Any]:
    for name in fields:
        if data.get(name):
            data[name] = data[name].isoformat()
    return data


@dataclass
class TrackedFile:
    id: str
    name: str
    original_name: str
    size: int = 0
    mime_type: str = "text/plain"
    extension: str = ""
    upload_path: Optional[str] = None
    status: str = "pending"
    original_text: Optional[str] = None
    original_length: Optional[int] = None
    original_sha256: Optional[str] = None
    chunk_count: int = 0
    run_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return _isoformat(asdict(self), 'created_at', 'updated_at')


@dataclass
class ChunkRecord:
    id: str
    file_id: str
    content: str
    chunk_index: int
    start_char: int
    end_char: int
    token_count: int
    run_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return _isoformat(asdict(self), 'created_at')


@dataclass
class WatchRunRecord:
    id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    mode: str = "fs"
    scanned_count: int = 0
    changed_count: int = 0
    error_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return _isoformat(asdict(self), 'started_at', 'finished_at')


@dataclass
class IngestRunRecord:
    id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    file_count: int = 0
    chunk_count: int = 0
    error_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return _isoformat(asdict(self), 'started_at', 'finished_at')


@dataclass
class ReindexEventRecord:
    id: str
    file_id: str
    new_sha256: str
    status: str
    run_id: Optional[str] = None
    old_sha256: Optional[str] = None
    message: str = ""
    duration_ms: int = 0
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return _isoformat(asdict(self), 'created_at')
