import asyncio
import json
import threading

import pytest

from caseqa.cache import AnalysisCache
from caseqa.concurrency import CancellationToken
from caseqa.document_index import CaseDocumentError, build_document_index
from caseqa.llm_client import MockOfflineClient
from caseqa.pipeline import (
    build_global_view,
    review_case,
    run_chunked_analysis,
    run_focused_analysis,
    run_global_analysis,
)


def _case_json(doc_count: int = 4, content_size: int = 50) -> str:
    documents = [
        {
            "docId": f"doc_{i}",
            "createdAt": "2024-03-02T10:00:00Z",
            "modifiedAt": "2024-03-01T10:00:00Z" if i == 0 else "2024-03-03T10:00:00Z",
            "content": "x" * content_size,
        }
        for i in range(doc_count)
    ]
    return json.dumps({"timezone": "UTC", "documents": documents, "media": []})


class ScriptedBackend:
    """Returns one issue per document it is shown, or a fixed global answer."""

    def __init__(self, global_answer: dict | None = None) -> None:
        self.global_answer = global_answer or {"RequiresDetailedAnalysis": False}
        self.chunk_calls = 0
        self.global_calls = 0
        self.system_prompts: list[str] = []
        self._lock = threading.Lock()

    def analyze(self, system_prompt: str, user_prompt: str) -> str:
        with self._lock:
            self.system_prompts.append(system_prompt)
        if "CHUNK_SCOPE_JSON" not in user_prompt:
            with self._lock:
                self.global_calls += 1
            return json.dumps(self.global_answer)
        with self._lock:
            self.chunk_calls += 1
        scope = json.loads(user_prompt.split("CHUNK_SCOPE_JSON:\n", 1)[1].split("\n\nJSON_SCHEMA:", 1)[0])
        issues = [
            {
                "Priority": "Medium",
                "Type": "ChronologicalGap",
                "Problem": "gap",
                "Location": {"DocId": doc["docId"], "Field": "content"},
                "Fix": {"Action": "ReplaceText", "OldText": "x", "NewText": "y"},
            }
            for doc in scope["documents"]
        ]
        return json.dumps({"Issues": issues, "Summary": f"{len(issues)} docs"})


def test_chunked_analysis_covers_every_record_once() -> None:
    backend = ScriptedBackend()
    analysis = asyncio.run(
        run_chunked_analysis(_case_json(6, 400), backend=backend, max_bytes_per_call=2_500)
    )
    assert backend.chunk_calls > 1
    assert sorted(issue.location.doc_id for issue in analysis.issues) == [f"doc_{i}" for i in range(6)]
    assert analysis.medium_priority_count == 6
    assert analysis.summary.startswith("Merged analysis from")


def test_cached_result_short_circuits_backend() -> None:
    backend = ScriptedBackend()
    cache = AnalysisCache()
    case_json = _case_json()

    first = asyncio.run(run_chunked_analysis(case_json, backend=backend, cache=cache))
    calls = backend.chunk_calls
    second = asyncio.run(run_chunked_analysis(case_json, backend=backend, cache=cache))

    assert backend.chunk_calls == calls
    assert second == first


def test_focused_analysis_is_cached_separately() -> None:
    backend = ScriptedBackend()
    cache = AnalysisCache()
    case_json = _case_json()

    asyncio.run(run_chunked_analysis(case_json, backend=backend, cache=cache))
    calls = backend.chunk_calls
    asyncio.run(
        run_chunked_analysis(
            case_json,
            backend=backend,
            cache=cache,
            global_analysis='{"FocusAreas": ["timeline"]}',
            focus_areas=["timeline"],
        )
    )
    assert backend.chunk_calls > calls
    assert len(cache) == 2
    assert any("GLOBAL CONTEXT" in prompt for prompt in backend.system_prompts)


def test_malformed_document_raises_before_any_call() -> None:
    backend = ScriptedBackend()
    with pytest.raises(CaseDocumentError):
        asyncio.run(run_chunked_analysis("[]", backend=backend))
    assert backend.chunk_calls == 0


def test_cancelled_run_returns_nothing_and_caches_nothing() -> None:
    cache = AnalysisCache()
    token = CancellationToken()
    token.cancel()

    try:
        asyncio.run(
            run_chunked_analysis(_case_json(), backend=ScriptedBackend(), cache=cache, cancel_token=token)
        )
        raise AssertionError("Expected CancelledError.")
    except asyncio.CancelledError:
        pass
    assert len(cache) == 0


def test_global_analysis_falls_back_on_backend_errors() -> None:
    class Broken:
        def analyze(self, system_prompt: str, user_prompt: str) -> str:
            raise TimeoutError("slow upstream")

    cache = AnalysisCache()
    result = asyncio.run(run_global_analysis(_case_json(), backend=Broken(), cache=cache))
    assert result.is_fallback
    assert not result.requires_detailed_analysis
    assert len(cache) == 0

    class Chatty:
        def analyze(self, system_prompt: str, user_prompt: str) -> str:
            return "Looks fine to me."

    assert asyncio.run(run_global_analysis(_case_json(), backend=Chatty())).is_fallback


def test_global_view_shrinks_large_cases() -> None:
    case_json = _case_json(5, 2_000)
    index = build_document_index(json.loads(case_json))
    assert build_global_view(case_json, index, 100_000) == case_json

    outline = json.loads(build_global_view(case_json, index, 5_000))
    assert [doc["docId"] for doc in outline["documents"]] == [f"doc_{i}" for i in range(5)]
    assert all(len(doc["content"]) < 300 for doc in outline["documents"])

    assert build_global_view(case_json, index, 1_500) == index.skeleton_json


def test_review_case_runs_focused_pass_when_global_asks() -> None:
    backend = ScriptedBackend(
        {"FocusAreas": ["timeline"], "RequiresDetailedAnalysis": True, "OverallAssessment": "gaps"}
    )
    report = asyncio.run(review_case(_case_json(), backend=backend, cache=AnalysisCache(), case_id="c-7"))

    assert backend.global_calls == 1
    assert report.used_hierarchical_analysis
    assert report.focus_areas == ["timeline"]
    assert report.global_analysis.overall_assessment == "gaps"
    assert len(report.edit.applied) == 4
    corrected = json.loads(report.corrected_json)
    assert corrected["documents"][0]["content"] == "y" * 50
    summary = report.summary()
    assert summary["case_id"] == "c-7"
    assert summary["counts"]["Medium"] == 4
    assert report.to_dict()["global_analysis"]["FocusAreas"] == ["timeline"]


def test_review_case_offline_fixes_timestamp_conflict() -> None:
    report = asyncio.run(review_case(_case_json(), backend=MockOfflineClient()))

    assert not report.used_hierarchical_analysis
    assert report.edit.applied == ["doc_0:UpdateTimestamp@modifiedAt"]
    corrected = json.loads(report.corrected_json)
    assert corrected["documents"][0]["modifiedAt"] == "2024-03-02T10:00:00Z"


def test_review_case_with_prior_analysis_skips_global() -> None:
    backend = ScriptedBackend()
    report = asyncio.run(
        review_case(
            _case_json(),
            backend=backend,
            prior_analysis="Earlier review flagged the timeline.",
            focus_areas=["timeline"],
        )
    )
    assert backend.global_calls == 0
    assert report.used_hierarchical_analysis
    assert report.global_analysis is None


def test_run_focused_analysis_requires_global_text() -> None:
    with pytest.raises(ValueError):
        asyncio.run(run_focused_analysis(_case_json(), "", ["timeline"], backend=ScriptedBackend()))

    backend = ScriptedBackend()
    analysis = asyncio.run(
        run_focused_analysis(_case_json(), "macro review text", ["timeline"], backend=backend)
    )
    assert len(analysis.issues) == 4
    assert all("FOCUS AREAS:\ntimeline" in prompt for prompt in backend.system_prompts)
