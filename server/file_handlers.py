"""Handlers behind the docsync file endpoints.

Each handler takes its collaborators explicitly and returns the JSON-ready
payload of a successful response; failures are raised as ``PipelineError``
subclasses and rendered by the API layer.
"""

import asyncio
import logging
import pathlib
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from pipelines.chunker import split_text
from services.shared.exceptions import (
    NotFoundError,
    PipelineError,
    ProcessingError,
    SourceReadError,
    ValidationError,
)
from services.shared.fingerprint import fingerprint
from services.shared.incremental import IncrementalProcessor
from services.shared.models import FileStatus, ReindexStatus
from services.shared.paths import display_path, normalize_locator, read_source_text, resolve_source_path
from services.shared.repository import FilesRepository

from .watcher import Watcher, WatcherOptions

logger = logging.getLogger(__name__)

MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024
UPLOADS_DIR = "uploads"

SUPPORTED_TEXT_EXTENSIONS = frozenset({
    "md", "mdx", "txt", "tex", "latex",
    "html", "htm", "css", "scss", "sass", "vue", "svelte", "astro",
    "js", "ts", "jsx", "tsx", "json", "xml", "yaml", "yml",
    "py", "sql", "sh", "bash", "zsh", "ps1", "bat", "cmd",
    "c", "cpp", "h", "hpp", "java", "kt", "swift", "go", "rs",
    "php", "rb", "pl", "r", "scala", "clj", "hs", "elm",
})


@dataclass
class UploadedFile:
    """One file part of a multipart upload, already read into memory."""
    filename: str
    content: bytes
    content_type: Optional[str] = None


def file_extension(filename: str) -> str:
    _, dot, ext = filename.rpartition(".")
    return ext.lower() if dot else ""


async def register_file(repository: FilesRepository, path: str, root_path: str,
                        name: Optional[str] = None) -> Dict[str, Any]:
    """Start tracking a file that already exists under ``root_path``."""
    raw = (path or "").strip()
    if not raw:
        raise ValidationError("Missing 'path' in body")

    disk_path = resolve_source_path(raw, root_path)
    try:
        content = await read_source_text(disk_path)
    except SourceReadError:
        raise NotFoundError(f"File not found on disk at resolved path: {display_path(disk_path)}")

    original_name = pathlib.PurePath(normalize_locator(raw)).name
    safe_name = (name or "").strip() or f"registered_{original_name}_{int(time.time() * 1000)}"
    sha = fingerprint(content)
    chunks = split_text(content)

    tracked = await repository.create_tracked_file(
        safe_name,
        original_name,
        status=FileStatus.PROCESSING.value,
        size=len(content.encode('utf-8')),
        mime_type="text/plain",
        extension=file_extension(original_name),
        upload_path=normalize_locator(raw),
        original_text=content,
        original_length=len(content),
        original_sha256=sha,
        chunk_count=len(chunks),
    )
    try:
        await repository.insert_chunks(tracked.id, chunks, source_text=content)
        await repository.update_file_status(tracked.id, FileStatus.UPLOADED)
    except Exception as e:
        await _mark_error(repository, tracked.id)
        raise ProcessingError(f"Registration failed: {e}", file_id=tracked.id) from e

    await repository.create_reindex_event(
        file_id=tracked.id, new_sha256=sha, status=ReindexStatus.OK.value, message="registered",
    )
    logger.info(f"Registered {tracked.upload_path} as {tracked.id} with {len(chunks)} chunks")
    return {
        "success": True,
        "fileId": tracked.id,
        "uploadPath": tracked.upload_path,
        "chunkCount": len(chunks),
        "resolvedPath": display_path(disk_path),
    }


async def upload_files(repository: FilesRepository, uploads: Sequence[UploadedFile],
                       root_path: str) -> Dict[str, Any]:
    """Ingest uploaded files under one ingest run."""
    if not uploads:
        raise ValidationError("No files provided")

    run_id = await repository.create_ingest_run()
    results: List[Dict[str, Any]] = []
    success_count = 0
    error_count = 0
    total_chunks = 0

    for upload in uploads:
        result = await ingest_upload(repository, upload, root_path, run_id)
        results.append(result)
        if result["success"]:
            success_count += 1
            total_chunks += result["chunkCount"]
        else:
            error_count += 1

    await repository.finish_ingest_run(
        run_id, file_count=success_count + error_count, chunk_count=total_chunks, error_count=error_count,
    )
    logger.info(f"Ingest run {run_id}: {success_count} ok, {error_count} failed, {total_chunks} chunks")
    return {
        "success": True,
        "results": results,
        "totalFiles": len(uploads),
        "successCount": success_count,
        "errorCount": error_count,
        "runId": run_id,
    }


async def ingest_upload(repository: FilesRepository, upload: UploadedFile, root_path: str,
                        run_id: Optional[str] = None) -> Dict[str, Any]:
    """Validate, persist and chunk one uploaded file.

    Walks the file through ``pending -> uploading -> processing ->
    uploaded``. Returns a per-file result; failures are reported in the
    result rather than raised so one bad file does not sink the batch.
    """
    start = time.monotonic()
    if len(upload.content) > MAX_FILE_SIZE_BYTES:
        return _upload_failure(upload, "File size exceeds 10MB limit")
    ext = file_extension(upload.filename)
    if ext not in SUPPORTED_TEXT_EXTENSIONS:
        return _upload_failure(upload, "Unsupported file type")

    name = f"file_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
    locator = f"/{UPLOADS_DIR}/{name}.{ext}"
    file_id = None
    try:
        tracked = await repository.create_tracked_file(
            name,
            upload.filename,
            size=len(upload.content),
            mime_type=upload.content_type or "text/plain",
            extension=ext,
            upload_path=locator,
            run_id=run_id,
        )
        file_id = tracked.id
        await repository.update_file_status(file_id, FileStatus.UPLOADING)

        content = upload.content.decode('utf-8', errors='replace')
        await _persist_upload(resolve_source_path(locator, root_path), upload.content)
        chunks = split_text(content)

        await repository.update_file_status(file_id, FileStatus.PROCESSING, patch=dict(
            original_text=content,
            original_length=len(content),
            original_sha256=fingerprint(content),
            chunk_count=len(chunks),
        ))
        await repository.insert_chunks(file_id, chunks, run_id=run_id, source_text=content)
        await repository.update_file_status(file_id, FileStatus.UPLOADED)
    except Exception as e:
        logger.error(f"Error processing upload {upload.filename}: {e}")
        if file_id is not None:
            await _mark_error(repository, file_id)
        return _upload_failure(upload, str(e) or "Processing failed")

    processing_ms = int((time.monotonic() - start) * 1000)
    logger.info(f"Ingested {upload.filename} as {file_id}: {len(chunks)} chunks in {processing_ms}ms")
    return {
        "success": True,
        "fileId": file_id,
        "fileName": upload.filename,
        "chunkCount": len(chunks),
        "processingTime": processing_ms,
    }


def _upload_failure(upload: UploadedFile, message: str) -> Dict[str, Any]:
    return {"success": False, "fileName": upload.filename, "errorMessage": message}


def _write_bytes(path: pathlib.Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        f.write(data)


async def _persist_upload(path: pathlib.Path, data: bytes) -> None:
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, _write_bytes, path, data)


async def _mark_error(repository: FilesRepository, file_id: str) -> None:
    try:
        await repository.update_file_status(file_id, FileStatus.ERROR)
    except Exception as e:
        logger.error(f"Failed to mark file {file_id} as error: {e}")


async def run_full_cycle(watcher: Watcher, options: WatcherOptions) -> Dict[str, Any]:
    """(Re)start the watcher with ``options`` and force one cycle now."""
    watcher.start(options)
    summary = await watcher.trigger_now()
    return {
        "success": True,
        "started": watcher.is_started,
        "forced": True,
        "skipped": summary is None,
        "run": summary.to_dict() if summary else None,
    }


async def run_targeted(repository: FilesRepository, processor: IncrementalProcessor,
                       path: str, root_path: str) -> Dict[str, Any]:
    """Reprocess only the tracked files whose locator matches ``path``."""
    resolved = resolve_source_path(path, root_path)
    try:
        content = await read_source_text(resolved)
    except SourceReadError:
        raise NotFoundError(f"File not found on disk: {display_path(resolved)}")

    targets = await repository.find_files_by_source_path(path)
    if not targets:
        raise NotFoundError(
            "No tracked file matches the provided path. "
            "Use /files/register to register this path first."
        )

    changed = 0
    errors = 0
    results: List[Dict[str, Any]] = []
    for tracked in targets:
        try:
            result = await processor.reprocess(tracked, content)
        except PipelineError as e:
            errors += 1
            logger.error(f"Targeted reindex of {tracked.id} failed: {e.message}", extra={"file_id": tracked.id})
            results.append({"id": tracked.id, "changed": False, "error": e.message})
            continue
        results.append({"id": tracked.id, "changed": result.changed})
        if result.changed:
            changed += 1

    return {
        "success": True,
        "targeted": True,
        "path": normalize_locator(path),
        "fileCount": len(targets),
        "changed": changed,
        "errors": errors,
        "results": results,
    }


async def reindex_file(repository: FilesRepository, processor: IncrementalProcessor,
                       file_id: str, override_text: Optional[str] = None) -> Dict[str, Any]:
    """Force reprocessing of one file from override or stored text."""
    tracked = await repository.get_tracked_file(file_id)
    if tracked is None:
        raise NotFoundError("Not found")

    if not override_text and not tracked.original_text:
        raise ValidationError("No text available to reindex; provide overrideText")

    text = override_text if override_text is not None else tracked.original_text

    result = await processor.reprocess(tracked, text)
    return {"success": True, "changed": result.changed, "newSha": result.new_fingerprint}


async def backfill_fingerprints(repository: FilesRepository) -> int:
    """Fill in fingerprint and length for files that have text but no fingerprint."""
    updated = 0
    for tracked in await repository.list_tracked_files():
        if tracked.original_text and not tracked.original_sha256:
            await repository.update_file_status(tracked.id, tracked.status or FileStatus.UPLOADED, patch=dict(
                original_sha256=fingerprint(tracked.original_text),
                original_length=len(tracked.original_text),
            ))
            updated += 1
    if updated:
        logger.info(f"Backfilled fingerprints for {updated} files")
    return updated


async def list_debug_files(repository: FilesRepository, run_id: Optional[str] = None) -> Dict[str, Any]:
    """Tracked files (newest first) with their chunks grouped by file."""
    if run_id:
        files = await repository.list_files_for_run(run_id)
    else:
        files = list(reversed(await repository.list_tracked_files()))

    chunks: Dict[str, List[Dict[str, Any]]] = {f.id: [] for f in files}
    records = await repository.list_chunks([f.id for f in files])
    for chunk in sorted(records, key=lambda c: (c.file_id, c.chunk_index)):
        chunks[chunk.file_id].append(chunk.to_dict())

    return {
        "success": True,
        "files": [f.to_dict() for f in files],
        "chunks": chunks,
        "totalFiles": len(files),
        "totalChunks": len(records),
        "runId": run_id,
    }


async def list_watch_runs(repository: FilesRepository, limit: int = 20) -> List[Dict[str, Any]]:
    """Recent scan cycles, each with the reindex events it produced."""
    runs = []
    for run in await repository.list_watch_runs(limit):
        data = run.to_dict()
        data["events"] = [e.to_dict() for e in await repository.list_reindex_events(run_id=run.id)]
        runs.append(data)
    return runs
