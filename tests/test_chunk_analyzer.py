import asyncio
import json
import threading
import time

from caseqa.chunk_analyzer import (
    analyze_chunk,
    build_scoped_view,
    parse_chunk_response,
    repair_analysis_response,
)
from caseqa.chunking import ChunkSpec
from caseqa.concurrency import BoundedSemaphore, CancellationToken
from caseqa.document_index import build_document_index


def _index():
    return build_document_index(
        {
            "documents": [
                {"docId": "doc_1", "content": "one"},
                {"docId": "doc_2", "content": "two"},
            ],
            "media": [{"evidenceId": "ev_1", "collectedAt": "2024-01-01T00:00:00Z"}],
        }
    )


def _issue(**overrides) -> dict:
    issue = {
        "Priority": "High",
        "Type": "TimestampConflict",
        "Problem": "Report predates evidence.",
        "Location": {"DocId": "doc_1", "Field": "createdAt", "CurrentValue": "2024-01-01T00:00:00Z"},
        "Fix": {"Action": "UpdateTimestamp", "NewValue": "2024-01-02T00:00:00Z"},
    }
    issue.update(overrides)
    return issue


class RecordingBackend:
    def __init__(self, response: str = '{"Issues": [], "Summary": "clean"}') -> None:
        self.response = response
        self.calls: list[tuple[str, str]] = []

    def analyze(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        return self.response


def test_scoped_view_contains_only_chunk_records() -> None:
    index = _index()
    view = build_scoped_view(ChunkSpec(doc_ids=["doc_2"], evidence_ids=["ev_1"]), index)
    assert view["skeleton"] == index.skeleton
    assert [doc["docId"] for doc in view["documents"]] == ["doc_2"]
    assert [item["evidenceId"] for item in view["media"]] == ["ev_1"]


def test_repair_flattens_array_current_value() -> None:
    raw = json.dumps(
        {
            "Issues": [
                _issue(
                    Location={"DocId": "doc_1", "CurrentValue": ["09:00", "10:30", 7]},
                )
            ]
        }
    )
    payload = json.loads(repair_analysis_response(raw))
    assert payload["Issues"][0]["Location"]["CurrentValue"] == "09:00, 10:30"

    analysis = parse_chunk_response(raw)
    assert analysis.issues[0].location.current_value == "09:00, 10:30"


def test_repair_drops_malformed_entries_and_null_slots() -> None:
    raw = json.dumps(
        {
            "Issues": [
                "junk",
                {"Priority": "Low", "Problem": "no location"},
                _issue(Priority=None, Fix={"Action": "ReplaceText", "NewText": None}),
            ],
            "Summary": None,
        }
    )
    analysis = parse_chunk_response(raw)
    assert len(analysis.issues) == 1
    assert analysis.issues[0].priority == "Low"
    assert analysis.issues[0].fix.new_text is None
    assert analysis.summary == ""


def test_parse_accepts_fenced_json() -> None:
    raw = "```json\n" + json.dumps({"Issues": [_issue()], "Summary": "one"}) + "\n```"
    analysis = parse_chunk_response(raw)
    assert analysis.issues[0].location.doc_id == "doc_1"
    assert analysis.summary == "one"


def test_empty_and_garbage_responses_become_empty_analyses() -> None:
    empty = parse_chunk_response("   ")
    assert empty.issues == []
    assert empty.summary == "Empty response for chunk"

    garbage = parse_chunk_response("I could not find anything useful, sorry!")
    assert garbage.issues == []
    assert garbage.summary == "Chunk processing failed"

    wrong_shape = parse_chunk_response('{"Issues": "none"}')
    assert wrong_shape.issues == []
    assert wrong_shape.summary == "Chunk processing failed"


def test_analyze_chunk_sends_scoped_prompt_with_global_context() -> None:
    backend = RecordingBackend()
    chunk = ChunkSpec(doc_ids=["doc_1"])

    analysis = asyncio.run(
        analyze_chunk(
            chunk,
            _index(),
            backend,
            limiter=BoundedSemaphore(3),
            global_analysis='{"FocusAreas": ["timeline"]}',
            focus_areas=["timeline"],
        )
    )

    assert analysis.summary == "clean"
    system_prompt, user_prompt = backend.calls[0]
    assert "GLOBAL CONTEXT" in system_prompt
    assert "timeline" in system_prompt
    assert "CHUNK_SCOPE_JSON" in user_prompt
    assert '"doc_1"' in user_prompt
    assert '"content": "two"' not in user_prompt


def test_analyze_chunk_survives_backend_failure() -> None:
    class FailingBackend:
        def analyze(self, system_prompt: str, user_prompt: str) -> str:
            raise RuntimeError("upstream 503")

    analysis = asyncio.run(
        analyze_chunk(ChunkSpec(doc_ids=["doc_1"]), _index(), FailingBackend(), limiter=BoundedSemaphore(1))
    )
    assert analysis.issues == []
    assert analysis.summary == "Chunk processing failed"


def test_analyze_chunk_respects_cancellation() -> None:
    backend = RecordingBackend()

    async def run() -> None:
        token = CancellationToken()
        token.cancel()
        await analyze_chunk(
            ChunkSpec(doc_ids=["doc_1"]),
            _index(),
            backend,
            limiter=BoundedSemaphore(1),
            cancel_token=token,
        )

    try:
        asyncio.run(run())
        raise AssertionError("Expected CancelledError.")
    except asyncio.CancelledError:
        pass
    assert backend.calls == []


def test_parallel_chunks_never_exceed_limit() -> None:
    class SlowBackend:
        def __init__(self) -> None:
            self.active = 0
            self.peak = 0
            self._lock = threading.Lock()

        def analyze(self, system_prompt: str, user_prompt: str) -> str:
            with self._lock:
                self.active += 1
                self.peak = max(self.peak, self.active)
            time.sleep(0.02)
            with self._lock:
                self.active -= 1
            return '{"Issues": []}'

    backend = SlowBackend()
    index = _index()

    async def run() -> BoundedSemaphore:
        limiter = BoundedSemaphore(3)
        await asyncio.gather(
            *(
                analyze_chunk(ChunkSpec(doc_ids=["doc_1"]), index, backend, limiter=limiter)
                for _ in range(8)
            )
        )
        return limiter

    limiter = asyncio.run(run())
    assert backend.peak <= 3
    assert limiter.peak <= 3
    assert limiter.in_use == 0
