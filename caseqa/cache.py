"""In-process, content-hash keyed cache of analysis results."""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from caseqa.config import CACHE_MAX_AGE_S

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    content_hash: str
    analysis: str
    analysis_type: str
    focus_areas: tuple[str, ...]
    created_at: datetime


def build_cache_key(
    content_hash: str,
    analysis_type: str,
    focus_areas: Iterable[str] | None = None,
) -> tuple[str, str, tuple[str, ...]]:
    # Areas are free text and may contain commas, so they stay a tuple.
    return content_hash, analysis_type, tuple(sorted(set(focus_areas or ())))


class AnalysisCache:
    """
    Maps (content hash, analysis kind, sorted focus areas) to a serialized analysis.

    Create one instance per process and share it between runs. Every operation
    takes the instance lock, so concurrent runs see one writer at a time. The
    cache only saves backend calls: a miss never changes a result.
    """

    def __init__(self, *, clock=None) -> None:
        self._entries: dict[tuple[str, str, tuple[str, ...]], CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def compute_hash(content: str) -> str:
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(
        self,
        content_hash: str,
        analysis_type: str,
        focus_areas: Iterable[str] | None = None,
    ) -> str | None:
        key = build_cache_key(content_hash, analysis_type, focus_areas)
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            log.debug("Cache MISS for %s analysis with hash %s", analysis_type, content_hash[:8])
            return None
        log.info("Cache HIT for %s analysis with hash %s", analysis_type, content_hash[:8])
        return entry.analysis

    def put(
        self,
        content_hash: str,
        analysis: str,
        analysis_type: str,
        focus_areas: Iterable[str] | None = None,
    ) -> None:
        areas = tuple(sorted(set(focus_areas or ())))
        key = build_cache_key(content_hash, analysis_type, areas)
        entry = CacheEntry(
            content_hash=content_hash,
            analysis=analysis,
            analysis_type=analysis_type,
            focus_areas=areas,
            created_at=self._clock(),
        )
        with self._lock:
            self._entries[key] = entry
            size = len(self._entries)
        log.info(
            "Cached %s analysis for hash %s (cache size: %d)",
            analysis_type,
            content_hash[:8],
            size,
        )

    def evict_older_than(self, max_age: timedelta | float = CACHE_MAX_AGE_S) -> int:
        if not isinstance(max_age, timedelta):
            max_age = timedelta(seconds=max_age)
        cutoff = self._clock() - max_age
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.created_at < cutoff]
            for key in expired:
                del self._entries[key]
            size = len(self._entries)
        if expired:
            log.info("Cleared %d expired cache entries (cache size: %d)", len(expired), size)
        return len(expired)
