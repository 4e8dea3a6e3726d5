import asyncio
import logging

import pytest
from unittest.mock import AsyncMock, patch

from pipelines.chunker import split_text
from services.shared.exceptions import NotFoundError, ProcessingError, StoreError
from services.shared.fingerprint import fingerprint
from services.shared.incremental import IncrementalProcessor
from services.shared.models import FileStatus

LONG_TEXT = "\n\n".join(f"Section {i}. " + "lorem ipsum dolor sit amet " * 30 for i in range(8))


async def _tracked(repository, text=None):
    tracked = await repository.create_tracked_file("doc", "doc.txt", upload_path="doc.txt")
    if text is not None:
        tracked = await repository.replace_chunk_set(
            tracked.id, split_text(text), source_text=text, fingerprint=fingerprint(text),
        )
    return tracked


@pytest.mark.asyncio
async def test_first_processing_writes_chunks_and_event(repository, processor):
    tracked = await _tracked(repository)
    result = await processor.reprocess(tracked, LONG_TEXT, run_id="run1")

    assert result.changed is True
    assert result.new_fingerprint == fingerprint(LONG_TEXT)
    stored = await repository.get_tracked_file(tracked.id)
    assert stored.status == FileStatus.UPLOADED.value
    assert stored.original_sha256 == fingerprint(LONG_TEXT)
    assert stored.chunk_count == result.chunk_count == len(split_text(LONG_TEXT))
    assert await repository.count_chunks(tracked.id) == stored.chunk_count

    events = await repository.list_reindex_events(file_id=tracked.id)
    assert [e.status for e in events] == ["ok"]
    assert events[0].old_sha256 is None
    assert events[0].new_sha256 == fingerprint(LONG_TEXT)
    assert events[0].run_id == "run1"


@pytest.mark.asyncio
async def test_reprocessing_unchanged_text_is_a_no_op(repository, processor):
    """Second call with identical text writes nothing."""
    tracked = await _tracked(repository)
    await processor.reprocess(tracked, LONG_TEXT)
    before = await repository.list_chunks([tracked.id])
    stored = await repository.get_tracked_file(tracked.id)

    result = await processor.reprocess(stored, LONG_TEXT)

    assert result.changed is False
    assert result.new_fingerprint == stored.original_sha256
    assert [c.id for c in await repository.list_chunks([tracked.id])] == [c.id for c in before]
    assert len(await repository.list_reindex_events(file_id=tracked.id)) == 1
    assert (await repository.get_tracked_file(tracked.id)).updated_at == stored.updated_at


@pytest.mark.asyncio
async def test_changed_text_replaces_whole_chunk_set(repository, processor):
    tracked = await _tracked(repository, "first version")
    old_ids = {c.id for c in await repository.list_chunks([tracked.id])}

    result = await processor.reprocess(tracked, LONG_TEXT)

    assert result.changed is True
    chunks = await repository.list_chunks([tracked.id])
    assert old_ids.isdisjoint(c.id for c in chunks)
    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
    starts = [c.start_char for c in chunks]
    assert all(a < b for a, b in zip(starts, starts[1:]))

    event = (await repository.list_reindex_events(file_id=tracked.id))[-1]
    assert event.old_sha256 == fingerprint("first version")
    assert event.new_sha256 == fingerprint(LONG_TEXT)


@pytest.mark.asyncio
async def test_stale_record_is_rechecked_against_store(repository, processor):
    """A caller holding an old record does not redo work already done."""
    stale = await _tracked(repository, "v1")
    await processor.reprocess(stale, "v2")

    result = await processor.reprocess(stale, "v2")

    assert result.changed is False
    assert len(await repository.list_reindex_events(file_id=stale.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_reprocess_of_one_file_runs_once(repository, processor):
    tracked = await _tracked(repository, "v1")

    results = await asyncio.gather(
        processor.reprocess(tracked, LONG_TEXT),
        processor.reprocess(tracked, LONG_TEXT),
    )

    assert sorted(r.changed for r in results) == [False, True]
    ok_events = [e for e in await repository.list_reindex_events(file_id=tracked.id) if e.status == "ok"]
    assert len(ok_events) == 1


@pytest.mark.asyncio
async def test_reprocess_of_deleted_file_raises_not_found(repository, processor):
    tracked = await _tracked(repository)
    await repository.delete_tracked_file(tracked.id)
    with pytest.raises(NotFoundError):
        await processor.reprocess(tracked, "text")


@pytest.mark.asyncio
async def test_failure_marks_error_and_records_event(repository, processor):
    tracked = await _tracked(repository, "v1")

    with patch.object(repository, "replace_chunk_set", AsyncMock(side_effect=StoreError("insert failed"))):
        with pytest.raises(ProcessingError) as excinfo:
            await processor.reprocess(tracked, "v2")

    assert isinstance(excinfo.value.__cause__, StoreError)
    assert excinfo.value.file_id == tracked.id

    stored = await repository.get_tracked_file(tracked.id)
    assert stored.status == FileStatus.ERROR.value
    assert stored.original_sha256 == fingerprint("v1")

    events = await repository.list_reindex_events(file_id=tracked.id)
    assert [e.status for e in events] == ["error"]
    assert "insert failed" in events[0].message
    assert events[0].new_sha256 == fingerprint("v2")


@pytest.mark.asyncio
async def test_file_in_error_is_retried(repository, processor):
    tracked = await _tracked(repository, "v1")
    with patch.object(repository, "replace_chunk_set", AsyncMock(side_effect=StoreError("boom"))):
        with pytest.raises(ProcessingError):
            await processor.reprocess(tracked, "v2")

    result = await processor.reprocess(tracked, "v2")

    assert result.changed is True
    stored = await repository.get_tracked_file(tracked.id)
    assert stored.status == FileStatus.UPLOADED.value
    assert [e.status for e in await repository.list_reindex_events(file_id=tracked.id)] == ["error", "ok"]


@pytest.mark.asyncio
async def test_chunking_failure_is_reported(repository):
    tracked = await _tracked(repository, "v1")
    processor = IncrementalProcessor(repository)

    with patch("services.shared.incremental.split_text", side_effect=RuntimeError("splitter exploded")):
        with pytest.raises(ProcessingError):
            await processor.reprocess(tracked, "v2")

    assert (await repository.get_tracked_file(tracked.id)).status == FileStatus.ERROR.value
    assert await repository.count_chunks(tracked.id) == 1


@pytest.mark.asyncio
async def test_lost_ok_event_does_not_undo_the_swap(repository, processor):
    """The chunk swap is committed before the audit row is written."""
    tracked = await _tracked(repository, "v1")

    with patch.object(repository, "create_reindex_event", AsyncMock(side_effect=StoreError("audit down"))):
        result = await processor.reprocess(tracked, "v2")

    assert result.changed is True
    stored = await repository.get_tracked_file(tracked.id)
    assert stored.status == FileStatus.UPLOADED.value
    assert stored.original_sha256 == fingerprint("v2")
    assert [c.content for c in await repository.list_chunks([tracked.id])] == ["v2"]


@pytest.mark.asyncio
async def test_file_locks_are_released_after_use(repository, processor):
    first = await _tracked(repository, "v1")
    second = await _tracked(repository, "v1")

    await asyncio.gather(
        processor.reprocess(first, "v2"),
        processor.reprocess(first, "v2"),
        processor.reprocess(second, "v3"),
    )
    assert processor._file_locks == {}

    await repository.delete_tracked_file(first.id)
    with pytest.raises(NotFoundError):
        await processor.reprocess(first, "v4")
    assert processor._file_locks == {}


@pytest.mark.asyncio
async def test_reprocess_logs_with_file_context(repository, processor, caplog):
    tracked = await _tracked(repository, "v1")

    with caplog.at_level(logging.INFO, logger="services.shared.incremental"):
        await processor.reprocess(tracked, "v2", run_id="run9")

    (record,) = [r for r in caplog.records if r.getMessage().startswith("Reindexed file")]
    assert record.file_id == tracked.id
    assert record.run_id == "run9"
    assert record.chunk_count == 1
    assert record.new_sha == fingerprint("v2")
