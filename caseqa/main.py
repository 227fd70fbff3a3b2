"""CLI entrypoint for reviewing and correcting a case bundle."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from caseqa.config import LOG_LEVEL, MAX_BYTES_PER_CALL, bootstrap_runtime_dirs
from caseqa.document_index import CaseDocumentError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Analyze a case bundle in size-bounded chunks and apply precise fixes."
    )
    parser.add_argument(
        "--case",
        required=True,
        help="Path to the case bundle JSON.",
    )
    parser.add_argument(
        "--output",
        default="outputs/corrected_case.json",
        help="Path for the corrected case JSON.",
    )
    parser.add_argument(
        "--report",
        default="outputs/review_report.json",
        help="Path for the analysis and fix report JSON.",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Run deterministic offline mode (no API keys or external model calls).",
    )
    parser.add_argument(
        "--max-bytes",
        type=int,
        default=MAX_BYTES_PER_CALL,
        help="Maximum serialized bytes sent per analysis call.",
    )
    parser.add_argument(
        "--skip-global",
        action="store_true",
        help="Skip the global pass and run a standard chunked analysis.",
    )
    parser.add_argument(
        "--focus",
        nargs="+",
        default=None,
        metavar="AREA",
        help="Extra focus areas for a focused analysis.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser


def _write_text(path: str, text: str) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(text, encoding="utf-8")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    bootstrap_runtime_dirs()
    if args.offline:
        os.environ["OFFLINE_MODE"] = "1"
        os.environ["LLM_PROVIDER"] = "mock"

    from caseqa.cache import AnalysisCache
    from caseqa.llm_client import get_llm_client
    from caseqa.pipeline import review_case

    case_path = Path(args.case)
    try:
        document_json = case_path.read_text(encoding="utf-8")
        report = asyncio.run(
            review_case(
                document_json,
                backend=get_llm_client(),
                cache=AnalysisCache(),
                focus_areas=args.focus,
                use_global=not args.skip_global,
                max_bytes_per_call=args.max_bytes,
                case_id=case_path.stem,
            )
        )
    except (OSError, CaseDocumentError) as exc:
        logging.getLogger(__name__).error("Cannot review %s: %s", case_path, exc)
        return 1

    _write_text(args.output, report.corrected_json)
    _write_text(args.report, json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
    print(json.dumps(report.summary(), indent=2, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
