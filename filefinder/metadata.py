from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

from .db import Database, fits_sqlite_integer, now_ms, safe_load_json_object
from .identity import normalize_section_id
from .security import require_document_id, require_section_input

KNOWN_METADATA_KEYS = ("maestro", "paginas", "precio", "universidad")

MetadataValue = Union[str, int, float]


def is_metadata_value(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, str):
        return value != ""
    if isinstance(value, int):
        return fits_sqlite_integer(value)
    if isinstance(value, float):
        return math.isfinite(value)
    return False


def clean_metadata(raw: Any) -> Dict[str, MetadataValue]:
    """Keep non-empty strings and finite numbers; drop everything else.

    Integers must fit a signed 64-bit column.
    """
    if not isinstance(raw, Mapping):
        return {}
    cleaned: Dict[str, MetadataValue] = {}
    for key, value in raw.items():
        if not key or not isinstance(key, str):
            continue
        if is_metadata_value(value):
            cleaned[key] = value
    return cleaned


def extract_inline_metadata(record: Mapping[str, Any]) -> Dict[str, MetadataValue]:
    """Metadata embedded in a legacy record.

    The nested ``metadata`` object wins; known keys stored at the top level
    only fill the gaps.
    """
    metadata = clean_metadata(record.get("metadata"))
    for key in KNOWN_METADATA_KEYS:
        if key in metadata:
            continue
        value = record.get(key)
        if is_metadata_value(value):
            metadata[key] = value
    return metadata


def apply_metadata(document: Mapping[str, Any], metadata: Any) -> Dict[str, Any]:
    cleaned = clean_metadata(metadata)
    merged = {k: v for k, v in document.items() if k != "metadata" and k not in KNOWN_METADATA_KEYS}
    if cleaned:
        merged["metadata"] = cleaned
    for key in KNOWN_METADATA_KEYS:
        if key in cleaned:
            merged[key] = cleaned[key]
    return merged


def resolve_metadata(
    record: Mapping[str, Any], external: Optional[Mapping[str, Any]]
) -> Dict[str, MetadataValue]:
    # A stored row, even an empty one, replaces whatever the record carries.
    if external is not None:
        return clean_metadata(external)
    return extract_inline_metadata(record)


@dataclass(frozen=True)
class SavedMetadata:
    section_id: str
    document_id: str
    metadata: Dict[str, MetadataValue] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sectionId": self.section_id,
            "documentId": self.document_id,
            "metadata": dict(self.metadata),
        }


class MetadataStore:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def get_map(self, section_id: Optional[str]) -> Dict[str, Dict[str, MetadataValue]]:
        section = normalize_section_id(require_section_input(section_id))
        async with self._db.connection() as db:
            rows = await db.execute_fetchall(
                "SELECT document_id, metadata_json FROM document_metadata WHERE section_id = ?",
                (section,),
            )
        return {
            row["document_id"]: clean_metadata(
                safe_load_json_object(
                    row["metadata_json"], context=f"metadata {section}/{row['document_id']}"
                )
            )
            for row in rows
        }

    async def upsert(self, section_id: Optional[str], document_id: Any, metadata: Any) -> SavedMetadata:
        section = normalize_section_id(require_section_input(section_id))
        doc_id = require_document_id(document_id)
        cleaned = clean_metadata(metadata)
        async with self._db.connection() as db:
            await db.execute(
                """
                INSERT INTO document_metadata(section_id, document_id, metadata_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(section_id, document_id) DO UPDATE
                SET metadata_json = excluded.metadata_json,
                    updated_at = excluded.updated_at
                """,
                (section, doc_id, json.dumps(cleaned, ensure_ascii=False), now_ms()),
            )
        logging.info(
            "Document metadata saved",
            extra={"section_id": section, "document_id": doc_id, "keys": sorted(cleaned)},
        )
        return SavedMetadata(section_id=section, document_id=doc_id, metadata=cleaned)
