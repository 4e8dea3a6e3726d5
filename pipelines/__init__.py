"""Pipelines package for docsync.

Provides the shared chunking policy used by every ingestion and reindex path.
"""

from .chunker import (
    CHUNK_OVERLAP,
    CHUNK_SEPARATORS,
    CHUNK_SIZE,
    DEFAULT_POLICY,
    ChunkDraft,
    ChunkingPolicy,
    build_text_splitter,
    chunk_document,
    chunk_spans,
    describe_chunks,
    estimate_tokens,
    split_text,
)

__all__ = [
    'CHUNK_SIZE',
    'CHUNK_OVERLAP',
    'CHUNK_SEPARATORS',
    'DEFAULT_POLICY',
    'ChunkDraft',
    'ChunkingPolicy',
    'build_text_splitter',
    'chunk_document',
    'chunk_spans',
    'describe_chunks',
    'estimate_tokens',
    'split_text',
]
