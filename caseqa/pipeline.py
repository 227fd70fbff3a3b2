"""End-to-end case review: hierarchical analysis followed by precision fixes."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from caseqa.cache import AnalysisCache
from caseqa.chunk_analyzer import analyze_chunk
from caseqa.chunking import plan_chunks
from caseqa.concurrency import BoundedSemaphore, CancellationToken, gather_cancellable
from caseqa.config import (
    CHUNK_PROMPT_OVERHEAD_BYTES,
    DOCUMENTS_KEY,
    MAX_BYTES_PER_CALL,
    MAX_PARALLEL_CALLS,
    MEDIA_KEY,
)
from caseqa.document_index import DocumentIndex, build_document_index, parse_case_document
from caseqa.llm_client import AnalysisBackend, strip_code_fences
from caseqa.merge import merge_analyses
from caseqa.models import GlobalAnalysis, StructuredAnalysis
from caseqa.precision_editor import EditResult, PrecisionEditor
from caseqa.prompts import GLOBAL_SYSTEM_PROMPT, build_global_prompt

log = logging.getLogger(__name__)

GLOBAL_KIND = "Global"
FOCUSED_KIND = "Focused"
STANDARD_KIND = "Standard"

OUTLINE_TEXT_CHARS = 200


def _label(content_hash: str, case_id: str) -> str:
    return case_id or content_hash[:8]


def _record_outline(record: dict[str, Any]) -> dict[str, Any]:
    outline: dict[str, Any] = {}
    for key, value in record.items():
        if isinstance(value, str):
            outline[key] = value if len(value) <= OUTLINE_TEXT_CHARS else value[:OUTLINE_TEXT_CHARS] + "..."
        elif value is None or isinstance(value, (bool, int, float)):
            outline[key] = value
    return outline


def build_global_view(document_json: str, index: DocumentIndex, max_bytes_per_call: int) -> str:
    """
    Whole document when it fits the call budget, otherwise an outline.

    The outline keeps each record's top-level scalars with long text truncated;
    if even that is too large only the skeleton is sent.
    """
    budget = max_bytes_per_call - CHUNK_PROMPT_OVERHEAD_BYTES
    if len(document_json.encode("utf-8")) <= budget:
        return document_json

    outline = {
        "skeleton": index.skeleton,
        DOCUMENTS_KEY: [_record_outline(doc) for doc in index.documents.values()],
        MEDIA_KEY: [_record_outline(item) for item in index.media.values()],
    }
    outline_json = json.dumps(outline, ensure_ascii=False)
    if len(outline_json.encode("utf-8")) <= budget:
        log.info("Global analysis: document over budget, sending record outline")
        return outline_json
    log.warning("Global analysis: outline over budget, sending skeleton only")
    return index.skeleton_json


async def run_global_analysis(
    document_json: str,
    *,
    backend: AnalysisBackend,
    cache: AnalysisCache | None = None,
    max_bytes_per_call: int = MAX_BYTES_PER_CALL,
    cancel_token: CancellationToken | None = None,
    case_id: str = "",
) -> GlobalAnalysis:
    """Macro-level review of the whole case; degrades to a fallback on backend trouble."""
    document = parse_case_document(document_json)
    content_hash = AnalysisCache.compute_hash(document_json)
    label = _label(content_hash, case_id)
    log.info("[%s] Global analysis: input size %d bytes", label, len(document_json))

    if cache is not None:
        cached = cache.get(content_hash, GLOBAL_KIND)
        if cached is not None:
            log.info("[%s] Global analysis: using cached analysis", label)
            return GlobalAnalysis.model_validate_json(cached)

    index = build_document_index(document)
    prompt = build_global_prompt(build_global_view(document_json, index, max_bytes_per_call))

    try:
        [raw] = await gather_cancellable(
            [asyncio.to_thread(backend.analyze, GLOBAL_SYSTEM_PROMPT, prompt)],
            cancel_token,
        )
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        log.error("[%s] Global analysis: backend failed: %s", label, exc)
        return GlobalAnalysis.fallback(f"Global analysis failed - {exc}")

    if not raw or not raw.strip():
        log.warning("[%s] Global analysis: empty response", label)
        return GlobalAnalysis.fallback("Global analysis failed - empty response received.")

    try:
        analysis = GlobalAnalysis.model_validate_json(strip_code_fences(raw))
    except (ValidationError, ValueError) as exc:
        log.warning("[%s] Global analysis: invalid JSON structure returned: %s", label, exc)
        return GlobalAnalysis.fallback("Global analysis failed - invalid JSON structure.")

    log.info(
        "[%s] Global analysis: completed - %d macro issues, %d focus areas",
        label,
        len(analysis.macro_issues),
        len(analysis.focus_areas),
    )
    if cache is not None:
        cache.put(content_hash, analysis.to_json(), GLOBAL_KIND)
    return analysis


async def run_chunked_analysis(
    document_json: str,
    *,
    backend: AnalysisBackend,
    cache: AnalysisCache | None = None,
    global_analysis: str | None = None,
    focus_areas: list[str] | None = None,
    max_bytes_per_call: int = MAX_BYTES_PER_CALL,
    max_parallel_calls: int = MAX_PARALLEL_CALLS,
    cancel_token: CancellationToken | None = None,
    case_id: str = "",
) -> StructuredAnalysis:
    """
    Index, chunk, analyze in parallel and merge.

    Raises ``CaseDocumentError`` for unusable input and ``asyncio.CancelledError``
    when ``cancel_token`` fires; in both cases nothing is cached.
    """
    document = parse_case_document(document_json)
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()

    kind = FOCUSED_KIND if global_analysis else STANDARD_KIND
    areas = list(focus_areas or [])
    content_hash = AnalysisCache.compute_hash(document_json + (global_analysis or ""))
    label = _label(content_hash, case_id)
    log.info(
        "[%s] Chunked analysis: starting %s analysis (%d bytes)",
        label,
        kind,
        len(document_json.encode("utf-8")),
    )

    if cache is not None:
        cached = cache.get(content_hash, kind, areas)
        if cached is not None:
            log.info("[%s] Chunked analysis: using cached %s analysis", label, kind)
            return StructuredAnalysis.model_validate_json(cached)

    index = build_document_index(document)
    chunks = plan_chunks(
        index.documents,
        index.media,
        index.skeleton_json,
        max_bytes_per_call=max_bytes_per_call,
    )
    limiter = BoundedSemaphore(max_parallel_calls)
    analyses = await gather_cancellable(
        (
            analyze_chunk(
                chunk,
                index,
                backend,
                limiter=limiter,
                global_analysis=global_analysis,
                focus_areas=areas,
                cancel_token=cancel_token,
                run_label=label,
            )
            for chunk in chunks
        ),
        cancel_token,
    )
    log.info("[%s] Chunked analysis: processed all %d chunks", label, len(chunks))

    merged = merge_analyses(analyses)
    if cache is not None:
        cache.put(content_hash, merged.to_json(), kind, areas)
    return merged


async def run_focused_analysis(
    document_json: str,
    global_analysis: str,
    focus_areas: list[str],
    *,
    backend: AnalysisBackend,
    cache: AnalysisCache | None = None,
    max_bytes_per_call: int = MAX_BYTES_PER_CALL,
    max_parallel_calls: int = MAX_PARALLEL_CALLS,
    cancel_token: CancellationToken | None = None,
    case_id: str = "",
) -> StructuredAnalysis:
    if not global_analysis:
        raise ValueError("Focused analysis requires the global analysis text.")
    return await run_chunked_analysis(
        document_json,
        backend=backend,
        cache=cache,
        global_analysis=global_analysis,
        focus_areas=focus_areas,
        max_bytes_per_call=max_bytes_per_call,
        max_parallel_calls=max_parallel_calls,
        cancel_token=cancel_token,
        case_id=case_id,
    )


@dataclass
class ReviewReport:
    case_id: str
    analysis: StructuredAnalysis
    edit: EditResult
    global_analysis: GlobalAnalysis | None = None
    used_hierarchical_analysis: bool = False
    focus_areas: list[str] = field(default_factory=list)

    @property
    def corrected_json(self) -> str:
        return self.edit.document_json

    def summary(self) -> dict[str, Any]:
        payload = self.edit.summary(self.analysis)
        payload["case_id"] = self.case_id
        payload["used_hierarchical_analysis"] = self.used_hierarchical_analysis
        payload["focus_areas"] = list(self.focus_areas)
        return payload

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary(),
            "global_analysis": (
                self.global_analysis.model_dump(by_alias=True) if self.global_analysis else None
            ),
            "analysis": self.analysis.model_dump(by_alias=True),
        }


async def review_case(
    document_json: str,
    *,
    backend: AnalysisBackend,
    cache: AnalysisCache | None = None,
    editor: PrecisionEditor | None = None,
    prior_analysis: str | None = None,
    focus_areas: list[str] | None = None,
    use_global: bool = True,
    max_bytes_per_call: int = MAX_BYTES_PER_CALL,
    max_parallel_calls: int = MAX_PARALLEL_CALLS,
    cancel_token: CancellationToken | None = None,
    case_id: str = "",
) -> ReviewReport:
    """
    Analyze a case and apply the resulting fixes.

    A caller-supplied ``prior_analysis`` drives a focused run directly. Otherwise
    the global analysis runs first (unless ``use_global`` is off) and decides
    between a focused run on its focus areas and a standard run.
    """
    parse_case_document(document_json)
    editor = editor or PrecisionEditor()
    global_result: GlobalAnalysis | None = None
    context = prior_analysis
    areas = list(focus_areas or [])

    if context is None and use_global:
        global_result = await run_global_analysis(
            document_json,
            backend=backend,
            cache=cache,
            max_bytes_per_call=max_bytes_per_call,
            cancel_token=cancel_token,
            case_id=case_id,
        )
        if global_result.requires_detailed_analysis and global_result.focus_areas:
            context = global_result.to_json()
            areas = list(dict.fromkeys([*areas, *global_result.focus_areas]))
            log.info("Running focused analysis on %d areas: %s", len(areas), ", ".join(areas))
        else:
            log.info("Global analysis indicates no detailed analysis required")

    if context:
        analysis = await run_focused_analysis(
            document_json,
            context,
            areas,
            backend=backend,
            cache=cache,
            max_bytes_per_call=max_bytes_per_call,
            max_parallel_calls=max_parallel_calls,
            cancel_token=cancel_token,
            case_id=case_id,
        )
    else:
        analysis = await run_chunked_analysis(
            document_json,
            backend=backend,
            cache=cache,
            max_bytes_per_call=max_bytes_per_call,
            max_parallel_calls=max_parallel_calls,
            cancel_token=cancel_token,
            case_id=case_id,
        )
    edit = editor.apply_fixes(document_json, analysis, case_id=case_id)
    return ReviewReport(
        case_id=case_id,
        analysis=analysis,
        edit=edit,
        global_analysis=global_result,
        used_hierarchical_analysis=bool(context),
        focus_areas=areas if context else [],
    )
