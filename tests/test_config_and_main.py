import json
from pathlib import Path

from caseqa import config


def test_bootstrap_runtime_dirs_creates_paths(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(config, "OUTPUTS_DIR", tmp_path / "outputs")
    config.bootstrap_runtime_dirs()
    assert (tmp_path / "outputs").exists()


def test_chunk_defaults() -> None:
    assert config.MAX_PARALLEL_CALLS >= 1
    assert config.MAX_BYTES_PER_CALL > config.CHUNK_PROMPT_OVERHEAD_BYTES


def test_main_executes_offline(monkeypatch, tmp_path, capsys) -> None:
    case = tmp_path / "case.json"
    case.write_text(
        json.dumps(
            {
                "documents": [
                    {
                        "docId": "doc_1",
                        "createdAt": "2024-03-02T10:00:00Z",
                        "modifiedAt": "2024-03-01T10:00:00Z",
                        "content": "Report body",
                    }
                ],
                "media": [{"evidenceId": "ev_1", "collectedAt": "2024-03-01T09:00:00Z"}],
            }
        ),
        encoding="utf-8",
    )
    out = tmp_path / "corrected.json"
    report = tmp_path / "report.json"

    monkeypatch.setattr(config, "OUTPUTS_DIR", tmp_path / "outputs")
    monkeypatch.setenv("OFFLINE_MODE", "1")
    monkeypatch.setenv("LLM_PROVIDER", "mock")

    import caseqa.main as main_mod

    code = main_mod.main(
        ["--case", str(case), "--output", str(out), "--report", str(report), "--offline"]
    )
    assert code == 0
    corrected = json.loads(Path(out).read_text(encoding="utf-8"))
    assert corrected["documents"][0]["modifiedAt"] == "2024-03-02T10:00:00Z"
    assert json.loads(report.read_text(encoding="utf-8"))["summary"]["applied"] == 1
    printed = capsys.readouterr().out
    assert '"applied": 1' in printed


def test_main_reports_bad_case_file(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(config, "OUTPUTS_DIR", tmp_path / "outputs")
    monkeypatch.setenv("OFFLINE_MODE", "1")
    monkeypatch.setenv("LLM_PROVIDER", "mock")
    case = tmp_path / "broken.json"
    case.write_text("{not json", encoding="utf-8")

    import caseqa.main as main_mod

    assert main_mod.main(["--case", str(case), "--offline"]) == 1
    assert main_mod.main(["--case", str(tmp_path / "missing.json"), "--offline"]) == 1
