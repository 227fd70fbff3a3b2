"""Greedy bin-packing of indexed records into size-bounded analysis chunks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from caseqa.config import CHUNK_PROMPT_OVERHEAD_BYTES, MAX_BYTES_PER_CALL, MIN_CHUNK_BYTES
from caseqa.document_index import serialized_size

log = logging.getLogger(__name__)


@dataclass
class ChunkSpec:
    doc_ids: list[str] = field(default_factory=list)
    evidence_ids: list[str] = field(default_factory=list)
    estimated_bytes: int = 0

    @property
    def record_ids(self) -> list[str]:
        return [*self.doc_ids, *self.evidence_ids]

    @property
    def is_empty(self) -> bool:
        return not self.doc_ids and not self.evidence_ids


def available_chunk_bytes(
    max_bytes_per_call: int,
    skeleton_bytes: int,
    *,
    overhead_bytes: int = CHUNK_PROMPT_OVERHEAD_BYTES,
    min_chunk_bytes: int = MIN_CHUNK_BYTES,
) -> int:
    available = max_bytes_per_call - skeleton_bytes - overhead_bytes
    if available <= 0:
        log.warning(
            "Skeleton (%d bytes) leaves no room under %d bytes per call; using %d-byte chunks",
            skeleton_bytes,
            max_bytes_per_call,
            min_chunk_bytes,
        )
        return min_chunk_bytes
    return available


def plan_chunks(
    documents: dict[str, Any],
    media: dict[str, Any],
    skeleton_json: str,
    *,
    max_bytes_per_call: int = MAX_BYTES_PER_CALL,
    overhead_bytes: int = CHUNK_PROMPT_OVERHEAD_BYTES,
    min_chunk_bytes: int = MIN_CHUNK_BYTES,
) -> list[ChunkSpec]:
    """
    Partition records into chunks whose size plus the skeleton fits the call budget.

    Documents are packed first, in map order; media continue filling the chunk the
    document pass left open. A record larger than the budget gets a chunk of its
    own. The result always holds at least one chunk, possibly with no records.
    """
    skeleton_bytes = len(skeleton_json.encode("utf-8"))
    available = available_chunk_bytes(
        max_bytes_per_call,
        skeleton_bytes,
        overhead_bytes=overhead_bytes,
        min_chunk_bytes=min_chunk_bytes,
    )

    chunks: list[ChunkSpec] = []
    current = ChunkSpec()
    current_bytes = 0

    def close_current() -> None:
        nonlocal current, current_bytes
        current.estimated_bytes = current_bytes + skeleton_bytes
        chunks.append(current)
        current = ChunkSpec()
        current_bytes = 0

    for collection, target in ((documents, "doc_ids"), (media, "evidence_ids")):
        for record_id, record in collection.items():
            record_bytes = serialized_size(record)
            if current_bytes + record_bytes > available and not current.is_empty:
                close_current()
            getattr(current, target).append(record_id)
            current_bytes += record_bytes
            if record_bytes > available:
                log.warning(
                    "Record %s (%d bytes) exceeds the %d-byte chunk budget on its own",
                    record_id,
                    record_bytes,
                    available,
                )

    if not current.is_empty or not chunks:
        close_current()

    log.info(
        "Planned %d chunks for %d docs, %d media (budget %d bytes, skeleton %d bytes)",
        len(chunks),
        len(documents),
        len(media),
        max_bytes_per_call,
        skeleton_bytes,
    )
    return chunks
