"""Surgical application of analysis fixes to a case bundle."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from caseqa.config import (
    CONTENT_FIELD,
    DOCUMENT_ID_FIELD,
    DOCUMENTS_KEY,
    MEDIA_ID_FIELD,
    MEDIA_KEY,
)
from caseqa.document_index import CaseDocumentError, parse_case_document
from caseqa.models import SKELETON_DOC_ID, FixAction, Issue, StructuredAnalysis

log = logging.getLogger(__name__)

ADDENDUM_PLACEHOLDER = "[Moved to addendum - see post-incident analysis]"

_PATH_SEGMENT = re.compile(r"^(?P<key>[^\[\]]*)(?P<indexes>(?:\[\d+\])*)$")
_INDEX = re.compile(r"\[(\d+)\]")
_WHITESPACE_RUN = re.compile(r"\s+")


class FieldPathError(ValueError):
    """Raised for field paths that cannot be parsed."""


def parse_field_path(path: str) -> list[str | int]:
    """
    Split ``"sections[2].content"`` into ``["sections", 2, "content"]``.

    Each dot-separated segment is a key optionally followed by one or more
    bracketed non-negative integer indexes.
    """
    if not path or not path.strip():
        raise FieldPathError("Field path is empty.")
    parts: list[str | int] = []
    for segment in path.strip().split("."):
        match = _PATH_SEGMENT.match(segment)
        if match is None or (not match.group("key") and not match.group("indexes")):
            raise FieldPathError(f"Malformed field path segment {segment!r} in {path!r}.")
        if match.group("key"):
            parts.append(match.group("key"))
        parts.extend(int(index) for index in _INDEX.findall(match.group("indexes")))
    return parts


def _step(current: Any, part: str | int) -> tuple[bool, Any]:
    if isinstance(part, int):
        if isinstance(current, list) and 0 <= part < len(current):
            return True, current[part]
        return False, None
    if isinstance(current, dict) and part in current:
        return True, current[part]
    return False, None


def get_field_value(record: dict[str, Any], path: str) -> tuple[bool, Any]:
    current: Any = record
    for part in parse_field_path(path):
        found, current = _step(current, part)
        if not found:
            return False, None
    return True, current


def set_field_value(record: dict[str, Any], path: str, value: Any) -> bool:
    """
    Set the value addressed by ``path``; every intermediate segment must exist.

    A final object key may be new; a final array index must be in bounds.
    """
    parts = parse_field_path(path)
    current: Any = record
    for part in parts[:-1]:
        found, current = _step(current, part)
        if not found:
            return False

    last = parts[-1]
    if isinstance(last, int):
        if isinstance(current, list) and 0 <= last < len(current):
            current[last] = value
            return True
        return False
    if isinstance(current, dict):
        current[last] = value
        return True
    return False


def filter_addressable_issues(issues: Iterable[Issue]) -> tuple[list[Issue], int]:
    """Drop issues with no record id or aimed at the shared skeleton."""
    kept: list[Issue] = []
    dropped = 0
    for issue in issues:
        doc_id = issue.location.doc_id.strip()
        if not doc_id or doc_id.lower() == SKELETON_DOC_ID:
            dropped += 1
            continue
        kept.append(issue)
    return kept, dropped


@dataclass
class EditResult:
    document_json: str
    applied: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    skipped: int = 0
    rolled_back: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.applied) and not self.rolled_back

    def summary(self, analysis: StructuredAnalysis | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "applied": len(self.applied),
            "unresolved": list(self.unresolved),
            "skipped_non_addressable": self.skipped,
            "rolled_back": self.rolled_back,
        }
        if analysis is not None:
            payload["counts"] = {
                "High": analysis.high_priority_count,
                "Medium": analysis.medium_priority_count,
                "Low": analysis.low_priority_count,
            }
        return payload


class PrecisionEditor:
    """
    Applies merged analysis issues to a case bundle, one fix at a time.

    Fixes run in priority order (High, Medium, then everything else) and keep
    discovery order within a priority. A fix that cannot be located or applied
    is recorded as unresolved and the batch continues. If the edited bundle no
    longer serializes to a valid case document, every change is discarded and
    the original text is returned untouched.
    """

    def __init__(self) -> None:
        self._handlers: dict[FixAction, Callable[[dict[str, Any], Issue], bool]] = {
            FixAction.UPDATE_TIMESTAMP: self._update_timestamp,
            FixAction.REPLACE_TEXT: self._replace_text,
            FixAction.MOVE_TO_ADDENDUM: self._move_to_addendum,
            FixAction.REMOVE_REFERENCE: self._remove_reference,
        }

    def apply_fixes(
        self,
        original_json: str,
        analysis: StructuredAnalysis,
        case_id: str = "",
    ) -> EditResult:
        log.info(
            "Precision editor: starting surgical fixes for case %s - %d issues",
            case_id,
            len(analysis.issues),
        )
        issues, skipped = filter_addressable_issues(analysis.issues)
        if skipped:
            log.info("Precision editor: filtered out %d skeleton-related issues", skipped)
        if not issues:
            log.info("Precision editor: no document issues to fix for case %s", case_id)
            return EditResult(document_json=original_json, skipped=skipped)

        document = parse_case_document(original_json)
        result = EditResult(document_json=original_json, skipped=skipped)

        for issue in sorted(issues, key=lambda item: item.rank):
            if self._apply_one(document, issue):
                result.applied.append(issue.identifier)
                log.info(
                    "Precision editor: applied %s fix for %s - %s",
                    issue.fix.action,
                    issue.location.doc_id,
                    issue.problem,
                )
            else:
                result.unresolved.append(issue.identifier)
                log.warning(
                    "Precision editor: failed to apply %s fix for %s - Field: %s, "
                    "Section: %s, Pattern: %s",
                    issue.fix.action,
                    issue.location.doc_id,
                    issue.location.field,
                    issue.location.section,
                    issue.location.line_pattern,
                )

        if not result.applied:
            log.warning("Precision editor: no fixes applied for case %s", case_id)
            return result

        try:
            corrected = json.dumps(document, ensure_ascii=False, allow_nan=False)
            parse_case_document(corrected)
        except (CaseDocumentError, TypeError, ValueError) as exc:
            log.error(
                "Precision editor: corrected case %s failed validation, discarding all fixes: %s",
                case_id,
                exc,
            )
            return EditResult(
                document_json=original_json,
                unresolved=[issue.identifier for issue in issues],
                skipped=skipped,
                rolled_back=True,
            )

        result.document_json = corrected
        log.info(
            "Precision editor: completed case %s - %d/%d fixes applied, %d failed",
            case_id,
            len(result.applied),
            len(issues),
            len(result.unresolved),
        )
        if result.unresolved:
            log.warning("Precision editor: failed fixes: %s", ", ".join(result.unresolved))
        return result

    def _apply_one(self, document: dict[str, Any], issue: Issue) -> bool:
        try:
            action = FixAction(issue.fix.action)
        except ValueError:
            log.warning(
                "Precision editor: unknown fix action %r for issue in %s",
                issue.fix.action,
                issue.location.doc_id,
            )
            return False

        record = find_record(document, issue.location.doc_id)
        if record is None:
            log.warning("Precision editor: record %s not found", issue.location.doc_id)
            return False

        try:
            return self._handlers[action](record, issue)
        except FieldPathError as exc:
            log.warning("Precision editor: %s", exc)
            return False

    def _update_timestamp(self, record: dict[str, Any], issue: Issue) -> bool:
        loc, fix = issue.location, issue.fix
        if loc.field:
            if not fix.new_value:
                return False
            return set_field_value(record, loc.field, fix.new_value)
        old = fix.old_text or loc.line_pattern or loc.current_value
        new = fix.new_text or fix.new_value
        return _replace_in_content(record, old, new)

    def _replace_text(self, record: dict[str, Any], issue: Issue) -> bool:
        loc, fix = issue.location, issue.fix
        old = fix.old_text or loc.current_value or loc.line_pattern
        new = fix.new_text or fix.new_value
        if not loc.field:
            return _replace_in_content(record, old, new)
        if not old or not new:
            return False
        found, value = get_field_value(record, loc.field)
        if not found or not isinstance(value, str):
            return False
        updated = value.replace(old, new)
        if updated == value:
            return False
        return set_field_value(record, loc.field, updated)

    def _move_to_addendum(self, record: dict[str, Any], issue: Issue) -> bool:
        text = issue.location.line_pattern or issue.location.current_value
        content = record.get(CONTENT_FIELD)
        if not text or not isinstance(content, str) or text not in content:
            return False
        # TODO: create the addendum record the placeholder points at; only the
        # removal and marker are implemented.
        record[CONTENT_FIELD] = content.replace(text, ADDENDUM_PLACEHOLDER)
        log.warning(
            "Precision editor: moved text to addendum placeholder for %s; no addendum created",
            issue.location.doc_id,
        )
        return True

    def _remove_reference(self, record: dict[str, Any], issue: Issue) -> bool:
        text = issue.location.line_pattern or issue.location.current_value
        content = record.get(CONTENT_FIELD)
        if not text or not isinstance(content, str) or text not in content:
            return False
        updated = content.replace(text, "")
        record[CONTENT_FIELD] = _WHITESPACE_RUN.sub(" ", updated).strip()
        return True


def find_record(document: dict[str, Any], record_id: str) -> dict[str, Any] | None:
    for key, id_field in ((DOCUMENTS_KEY, DOCUMENT_ID_FIELD), (MEDIA_KEY, MEDIA_ID_FIELD)):
        for record in document.get(key) or []:
            if isinstance(record, dict) and record.get(id_field) == record_id:
                return record
    return None


def _replace_in_content(record: dict[str, Any], old: str | None, new: str | None) -> bool:
    content = record.get(CONTENT_FIELD)
    if not old or not new or not isinstance(content, str):
        return False
    updated = content.replace(old, new)
    if updated == content:
        return False
    record[CONTENT_FIELD] = updated
    return True
