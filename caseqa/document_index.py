"""Skeleton and record indexes built from a raw case bundle."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from caseqa.config import (
    DEFAULT_DIFFICULTY,
    DEFAULT_TIMEZONE,
    DOCUMENT_ID_FIELD,
    DOCUMENT_TIMESTAMP_FIELDS,
    DOCUMENTS_KEY,
    MEDIA_ID_FIELD,
    MEDIA_KEY,
    MEDIA_TIMESTAMP_FIELDS,
    TEMPORAL_LEDGER_LIMIT,
)

log = logging.getLogger(__name__)

_ISO_TIMESTAMP = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d{1,7})?(?:Z|[+-]\d{2}:\d{2})$"
)


class CaseDocumentError(ValueError):
    """Raised when the supplied case bundle is not usable structured data."""


def is_timestamp(value: Any) -> bool:
    return isinstance(value, str) and bool(_ISO_TIMESTAMP.match(value))


def serialized_size(value: Any) -> int:
    """UTF-8 byte length of the compact JSON encoding of ``value``."""
    return len(json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))


def parse_case_document(raw: str) -> dict[str, Any]:
    if not raw or not raw.strip():
        raise CaseDocumentError("Case document is empty.")
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CaseDocumentError(f"Case document is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise CaseDocumentError(
            f"Case document root must be a JSON object, got {type(document).__name__}."
        )
    for key in (DOCUMENTS_KEY, MEDIA_KEY):
        if key in document and not isinstance(document[key], list):
            raise CaseDocumentError(f"Case document field {key!r} must be an array.")
    return document


@dataclass
class DocumentIndex:
    skeleton: dict[str, Any]
    skeleton_json: str
    documents: dict[str, dict[str, Any]] = field(default_factory=dict)
    media: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def skeleton_bytes(self) -> int:
        return len(self.skeleton_json.encode("utf-8"))

    @property
    def record_count(self) -> int:
        return len(self.documents) + len(self.media)


def _index_collection(
    records: list[Any],
    *,
    collection: str,
    id_field: str,
    timestamp_fields: tuple[str, ...],
    ledger: dict[str, None],
) -> dict[str, dict[str, Any]]:
    index: dict[str, dict[str, Any]] = {}
    for position, record in enumerate(records):
        record_id = record.get(id_field) if isinstance(record, dict) else None
        if not isinstance(record_id, str) or not record_id:
            log.warning(
                "Skipping %s[%d]: missing or empty %s", collection, position, id_field
            )
            continue
        if record_id in index:
            log.warning("Duplicate %s %r in %s; keeping the first", id_field, record_id, collection)
            continue
        index[record_id] = record
        for ts_field in timestamp_fields:
            value = record.get(ts_field)
            if is_timestamp(value):
                ledger.setdefault(value, None)
    return index


def build_document_index(
    document: dict[str, Any],
    *,
    ledger_limit: int = TEMPORAL_LEDGER_LIMIT,
) -> DocumentIndex:
    """Walk both record collections once and build the skeleton plus id lookups."""
    ledger: dict[str, None] = {}
    documents = _index_collection(
        document.get(DOCUMENTS_KEY) or [],
        collection=DOCUMENTS_KEY,
        id_field=DOCUMENT_ID_FIELD,
        timestamp_fields=DOCUMENT_TIMESTAMP_FIELDS,
        ledger=ledger,
    )
    media = _index_collection(
        document.get(MEDIA_KEY) or [],
        collection=MEDIA_KEY,
        id_field=MEDIA_ID_FIELD,
        timestamp_fields=MEDIA_TIMESTAMP_FIELDS,
        ledger=ledger,
    )

    skeleton = {
        "timezone": document.get("timezone") or DEFAULT_TIMEZONE,
        "difficulty": document.get("difficulty") or DEFAULT_DIFFICULTY,
        "indexes": {
            "docIds": list(documents),
            "evidenceIds": list(media),
        },
        "temporalLedger": list(ledger)[: max(0, ledger_limit)],
    }
    skeleton_json = json.dumps(skeleton, ensure_ascii=False, indent=2)
    log.info(
        "Built skeleton and indexes - %d docs, %d media, %d ledger timestamps",
        len(documents),
        len(media),
        len(skeleton["temporalLedger"]),
    )
    return DocumentIndex(
        skeleton=skeleton,
        skeleton_json=skeleton_json,
        documents=documents,
        media=media,
    )
