"""Chunk-scoped analysis calls and repair of the structured answers."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pydantic import ValidationError

from caseqa.chunking import ChunkSpec
from caseqa.concurrency import BoundedSemaphore, CancellationToken
from caseqa.config import DOCUMENTS_KEY, MEDIA_KEY
from caseqa.document_index import DocumentIndex
from caseqa.llm_client import AnalysisBackend, strip_code_fences
from caseqa.models import StructuredAnalysis
from caseqa.prompts import build_chunk_prompt, build_chunk_system_prompt

log = logging.getLogger(__name__)

_ISSUE_TEXT_SLOTS = ("Priority", "Type", "Problem")
_LOCATION_TEXT_SLOTS = ("DocId", "Field", "Section", "LinePattern", "CurrentValue")
_FIX_TEXT_SLOTS = ("Action", "NewValue", "OldText", "NewText", "NewSection", "Reason")
# Null in these falls back to the model default instead of failing validation.
_NON_NULL_SLOTS = frozenset({"Priority", "Type", "Problem", "DocId", "Action"})


def build_scoped_view(chunk: ChunkSpec, index: DocumentIndex) -> dict[str, Any]:
    """Skeleton plus only the records named by ``chunk``."""
    return {
        "skeleton": index.skeleton,
        DOCUMENTS_KEY: [index.documents[i] for i in chunk.doc_ids if i in index.documents],
        MEDIA_KEY: [index.media[i] for i in chunk.evidence_ids if i in index.media],
    }


def _as_text(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _repair_slots(section: dict[str, Any], slots: tuple[str, ...]) -> dict[str, Any]:
    repaired = dict(section)
    for slot in slots:
        if slot not in repaired:
            continue
        if repaired[slot] is None and slot in _NON_NULL_SLOTS:
            del repaired[slot]
        else:
            repaired[slot] = _as_text(repaired[slot])
    return repaired


def _repair_issue(issue: Any) -> dict[str, Any] | None:
    if not isinstance(issue, dict):
        log.warning("Dropping malformed issue entry of type %s", type(issue).__name__)
        return None
    location = issue.get("Location")
    fix = issue.get("Fix")
    if not isinstance(location, dict) or not isinstance(fix, dict):
        log.warning("Dropping issue without Location/Fix objects: %s", issue.get("Problem"))
        return None

    current = location.get("CurrentValue")
    if isinstance(current, list):
        location = dict(location)
        location["CurrentValue"] = ", ".join(item for item in current if isinstance(item, str))

    repaired = _repair_slots(issue, _ISSUE_TEXT_SLOTS)
    repaired["Location"] = _repair_slots(location, _LOCATION_TEXT_SLOTS)
    repaired["Fix"] = _repair_slots(fix, _FIX_TEXT_SLOTS)
    return repaired


def repair_analysis_response(raw: str) -> str:
    """
    Normalize the backend's answer before schema parsing.

    Strips markdown fences, flattens array-valued ``CurrentValue`` entries into a
    comma-joined string and stringifies stray scalars in text slots. Anything
    that does not look like an issue report is returned as-is (fences removed).
    """
    cleaned = strip_code_fences(raw)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        return cleaned
    if not isinstance(payload, dict) or not isinstance(payload.get("Issues"), list):
        log.warning("Chunk response missing 'Issues' array; passing through unchanged")
        return cleaned

    issues = [fixed for issue in payload["Issues"] if (fixed := _repair_issue(issue)) is not None]
    payload["Issues"] = issues
    for key in ("Summary", "HighPriorityCount", "MediumPriorityCount", "LowPriorityCount"):
        if key in payload and payload[key] is None:
            del payload[key]
    return json.dumps(payload, ensure_ascii=False)


def parse_chunk_response(raw: str | None) -> StructuredAnalysis:
    if raw is None or not raw.strip():
        log.warning("Empty response for chunk, returning empty analysis")
        return StructuredAnalysis.empty("Empty response for chunk")

    repaired = repair_analysis_response(raw)
    try:
        return StructuredAnalysis.model_validate_json(repaired)
    except (ValidationError, ValueError) as exc:
        preview = raw if len(raw) <= 500 else raw[:500] + "..."
        log.warning(
            "Invalid JSON response for chunk, returning empty analysis (%s). Response preview: %s",
            exc.__class__.__name__,
            preview,
        )
        return StructuredAnalysis.empty("Chunk processing failed")


async def analyze_chunk(
    chunk: ChunkSpec,
    index: DocumentIndex,
    backend: AnalysisBackend,
    *,
    limiter: BoundedSemaphore,
    global_analysis: str | None = None,
    focus_areas: list[str] | None = None,
    cancel_token: CancellationToken | None = None,
    run_label: str = "",
) -> StructuredAnalysis:
    """
    Analyze one chunk under the shared limiter.

    Backend failures and malformed answers degrade to a zero-issue analysis so
    one bad chunk never aborts the batch. Cancellation propagates.
    """
    scoped_json = json.dumps(build_scoped_view(chunk, index), ensure_ascii=False, indent=2)
    system_prompt = build_chunk_system_prompt(global_analysis, focus_areas)
    user_prompt = build_chunk_prompt(scoped_json)

    async with limiter.permit():
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        log.info(
            "[%s] Chunk: %d docs, %d media (%d bytes estimated)",
            run_label,
            len(chunk.doc_ids),
            len(chunk.evidence_ids),
            chunk.estimated_bytes,
        )
        try:
            raw = await asyncio.to_thread(backend.analyze, system_prompt, user_prompt)
        except Exception as exc:
            log.warning(
                "[%s] Analysis backend failed for chunk, returning empty analysis: %s",
                run_label,
                exc,
            )
            return StructuredAnalysis.empty("Chunk processing failed")

    analysis = parse_chunk_response(raw)
    log.info("[%s] Chunk completed - %d issues found", run_label, len(analysis.issues))
    return analysis
