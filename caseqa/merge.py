"""Merging of per-chunk analyses into one deduplicated report."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from caseqa.models import Issue, StructuredAnalysis

log = logging.getLogger(__name__)

MAX_MERGED_SUMMARIES = 3


def dedupe_issues(issues: Iterable[Issue]) -> list[Issue]:
    """Keep the first issue reported at each (record, field, section, pattern) location."""
    seen: set[tuple] = set()
    unique: list[Issue] = []
    for issue in issues:
        key = issue.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(issue)
    return unique


def merge_analyses(analyses: Iterable[StructuredAnalysis]) -> StructuredAnalysis:
    all_issues: list[Issue] = []
    summaries: list[str] = []
    chunk_count = 0
    for analysis in analyses:
        chunk_count += 1
        all_issues.extend(analysis.issues)
        if analysis.summary and analysis.summary.strip():
            summaries.append(analysis.summary)

    deduped = dedupe_issues(all_issues)
    # Chunks only see part of the case, so their own counts are not trusted.
    high = sum(1 for issue in deduped if issue.priority == "High")
    medium = sum(1 for issue in deduped if issue.priority == "Medium")
    low = sum(1 for issue in deduped if issue.priority == "Low")

    if summaries:
        merged_summary = (
            f"Merged analysis from {len(summaries)} chunks: "
            + "; ".join(summaries[:MAX_MERGED_SUMMARIES])
        )
    else:
        merged_summary = "No issues found in any chunks"

    log.info(
        "Merged %d chunk analyses - %d issues (%d duplicates dropped)",
        chunk_count,
        len(deduped),
        len(all_issues) - len(deduped),
    )
    return StructuredAnalysis(
        issues=deduped,
        summary=merged_summary,
        high_priority_count=high,
        medium_priority_count=medium,
        low_priority_count=low,
    )
