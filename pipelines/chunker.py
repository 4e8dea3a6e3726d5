"""Document chunking pipeline.

All callers (registration, upload ingestion, the watcher and manual reindex)
split text with ``DEFAULT_POLICY``. The "fingerprint unchanged, skip
re-chunking" fast path is only sound while they agree: two policies may
legitimately produce different chunk sets from identical text.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from langchain_text_splitters import RecursiveCharacterTextSplitter

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1000
CHUNK_OVERLAP = 200
CHUNK_SEPARATORS: Tuple[str, ...] = (
    "\n\n",
    "\n",
    " ",
    ".",
    ",",
    "\u200b",  # zero-width space
    "\uff0c",  # fullwidth comma
    "\u3001",  # ideographic comma
    "\uff0e",  # fullwidth full stop
    "\u3002",  # ideographic full stop
    "",
)
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class ChunkingPolicy:
    """Size, overlap and separator priority for the recursive splitter."""
    chunk_size: int = CHUNK_SIZE
    chunk_overlap: int = CHUNK_OVERLAP
    separators: Tuple[str, ...] = field(default=CHUNK_SEPARATORS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_size": self.chunk_size,
            "chunk_overlap": self.chunk_overlap,
            "separators": list(self.separators),
        }


DEFAULT_POLICY = ChunkingPolicy()


@dataclass
class ChunkDraft:
    """A chunk ready to be persisted, with its offsets in the source text."""
    chunk_index: int
    content: str
    start_char: int
    end_char: int
    token_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "content": self.content,
            "start_char": self.start_char,
            "end_char": self.end_char,
            "token_count": self.token_count,
        }


def build_text_splitter(policy: ChunkingPolicy = DEFAULT_POLICY) -> RecursiveCharacterTextSplitter:
    """Build the recursive character splitter for ``policy``."""
    return RecursiveCharacterTextSplitter(
        chunk_size=policy.chunk_size,
        chunk_overlap=policy.chunk_overlap,
        separators=list(policy.separators),
    )


def split_text(text: str, policy: ChunkingPolicy = DEFAULT_POLICY) -> List[str]:
    """Split ``text`` into ordered chunks.

    The output is a deterministic function of the text and the policy.
    """
    if not text:
        return []
    return build_text_splitter(policy).split_text(text)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def chunk_spans(text: Optional[str], chunks: Sequence[str],
                policy: ChunkingPolicy = DEFAULT_POLICY) -> List[Tuple[int, int]]:
    """Locate each chunk in ``text`` and return ``(start, end)`` offsets.

    Each search starts where the previous chunk's overlap region begins and
    never before ``previous_start + 1``, so starts are strictly increasing
    even when the text repeats itself. When a chunk cannot be found (or no
    text is given) the offset falls back to the stride implied by the
    policy.
    """
    source = text or ""
    spans: List[Tuple[int, int]] = []
    prev_start = -1
    prev_len = 0

    for chunk in chunks:
        if prev_start < 0:
            search_from = 0
        else:
            search_from = max(prev_start + 1, prev_start + prev_len - policy.chunk_overlap)

        start = source.find(chunk, search_from) if source else -1
        if start < 0:
            start = search_from

        spans.append((start, start + len(chunk)))
        prev_start, prev_len = start, len(chunk)

    return spans


def describe_chunks(chunks: Sequence[str], source_text: Optional[str] = None,
                    policy: ChunkingPolicy = DEFAULT_POLICY) -> List[ChunkDraft]:
    """Attach index, offsets and token estimates to split chunks."""
    spans = chunk_spans(source_text, chunks, policy)
    return [
        ChunkDraft(
            chunk_index=index,
            content=content,
            start_char=start,
            end_char=end,
            token_count=estimate_tokens(content),
        )
        for index, (content, (start, end)) in enumerate(zip(chunks, spans))
    ]


def chunk_document(text: str, policy: ChunkingPolicy = DEFAULT_POLICY) -> List[ChunkDraft]:
    """Split ``text`` and describe the resulting chunks."""
    chunks = split_text(text, policy)
    drafts = describe_chunks(chunks, text, policy)
    logger.debug(f"Split {len(text)} characters into {len(drafts)} chunks")
    return drafts
