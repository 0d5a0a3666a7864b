from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, RootModel, ValidationError, field_validator, model_validator

from .db import Database, fetchone, fits_sqlite_integer, now_ms
from .documents import upsert_documents
from .identity import DEFAULT_SECTION_ID, normalize_section_id, stable_document_id
from .metadata import MetadataValue, clean_metadata, extract_inline_metadata
from .security import PathContext, PathNotAllowed, coerce_document_id
from .settings import Settings, SettingsStore, normalize_settings, write_settings

LEGACY_MIGRATION_KEY = "legacy_json_migrated_v1"
LEGACY_SEED_SECTIONS_CLEANUP_KEY = "legacy_seed_sections_cleanup_v1"
LEGACY_SEED_SECTION_IDS = ("libros", "curriculum")

LEGACY_SETTINGS_FILE = "setting.json"
LEGACY_DATA_DIR = "data"


class LegacyReadError(Exception):
    """A legacy JSON source is missing, unreadable or malformed."""

    def __init__(self, path: str, reason: str, *, missing: bool = False) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason
        self.missing = missing


def _stored_integer(value: Any) -> Optional[int]:
    """Floor a JSON number, or None when it cannot go into an INTEGER column."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        value = math.floor(value)
    return value if fits_sqlite_integer(value) else None


def _only_objects(value: Any) -> Any:
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    return value


class _RawJson(RootModel[Any]):
    pass


class LegacyDocumentsFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    documents: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("documents", mode="before")
    @classmethod
    def drop_non_objects(cls, value: Any) -> Any:
        return _only_objects(value)


class LegacyMetadataFile(BaseModel):
    """``{"metadataByDocumentId": {...}}`` or the bare map."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    metadata_by_document_id: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict, alias="metadataByDocumentId"
    )

    @model_validator(mode="before")
    @classmethod
    def unwrap_bare_map(cls, data: Any) -> Any:
        if isinstance(data, dict) and "metadataByDocumentId" not in data:
            return {"metadataByDocumentId": data}
        return data

    @field_validator("metadata_by_document_id", mode="before")
    @classmethod
    def drop_invalid_entries(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        return {k: v for k, v in value.items() if k and isinstance(v, dict)}

    def cleaned(self) -> Dict[str, Dict[str, MetadataValue]]:
        return {k: clean_metadata(v) for k, v in self.metadata_by_document_id.items()}


class LegacyStat(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    query: str = ""
    count: int = 1
    last_searched: Optional[int] = Field(None, alias="lastSearched")

    @field_validator("query", mode="before")
    @classmethod
    def normalize_query(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("count", mode="before")
    @classmethod
    def normalize_count(cls, value: Any) -> int:
        number = _stored_integer(value)
        return max(1, number) if number is not None else 1

    @field_validator("last_searched", mode="before")
    @classmethod
    def normalize_last_searched(cls, value: Any) -> Optional[int]:
        return _stored_integer(value)


class LegacyStatsFile(RootModel[List[LegacyStat]]):
    @model_validator(mode="before")
    @classmethod
    def drop_non_objects(cls, data: Any) -> Any:
        return _only_objects(data)


@dataclass(frozen=True)
class LegacySectionSources:
    documents_path: str
    metadata_path: str
    stats_path: str


def legacy_file_names(section_id: str) -> Tuple[str, str, str]:
    if normalize_section_id(section_id) == DEFAULT_SECTION_ID:
        return ("documents.json", "documents-metadata.json", "search-stats.json")
    return (
        f"documents-{section_id}.json",
        f"documents-metadata-{section_id}.json",
        f"search-stats-{section_id}.json",
    )


class LegacyMigrator:
    """Imports the flat-file JSON snapshots that predate the database.

    Every write is an idempotent upsert, so a run interrupted before the
    completion marker is stored can simply be repeated.
    """

    def __init__(self, database: Database, settings_store: SettingsStore, legacy_root: str) -> None:
        self._db = database
        self._settings = settings_store
        self.legacy_root = os.path.abspath(legacy_root)
        self._paths = PathContext([self.legacy_root])

    @property
    def settings_path(self) -> str:
        return os.path.join(self.legacy_root, LEGACY_SETTINGS_FILE)

    def has_legacy_settings(self) -> bool:
        return self._paths.exists(self.settings_path)

    def _resolve(self, hint: Optional[str], fallback_name: str) -> str:
        if isinstance(hint, str):
            trimmed = hint.strip()
            if trimmed.startswith("/data/") and trimmed.endswith(".json"):
                return os.path.join(self.legacy_root, trimmed.lstrip("/"))
        return os.path.join(self.legacy_root, LEGACY_DATA_DIR, fallback_name)

    def read_json(self, path: str) -> Any:
        try:
            if not self._paths.exists(path):
                raise LegacyReadError(path, "file not found", missing=True)
            raw = self._paths.read_text(path)
        except PathNotAllowed as exc:
            raise LegacyReadError(path, "outside legacy root") from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise LegacyReadError(path, f"unreadable ({exc})") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise LegacyReadError(path, f"invalid JSON ({exc})") from exc

    def _parse(self, path: str, model: Any) -> Any:
        data = self.read_json(path)
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise LegacyReadError(path, f"unexpected shape ({exc.error_count()} errors)") from exc

    def _load(self, path: str, model: Any) -> Any:
        try:
            return self._parse(path, model)
        except LegacyReadError as exc:
            if exc.missing:
                logging.debug("Legacy source absent: %s", exc.path)
            else:
                logging.warning("Skipping legacy source %s: %s", exc.path, exc.reason)
            return None

    def section_sources(self, settings: Settings) -> Dict[str, LegacySectionSources]:
        docs_name, meta_name, stats_name = legacy_file_names(DEFAULT_SECTION_ID)
        sources = {
            DEFAULT_SECTION_ID: LegacySectionSources(
                documents_path=self._resolve(None, docs_name),
                metadata_path=self._resolve(None, meta_name),
                stats_path=self._resolve(None, stats_name),
            )
        }
        for section in settings.sections:
            section_id = normalize_section_id(section.id)
            docs_name, meta_name, stats_name = legacy_file_names(section_id)
            sources[section_id] = LegacySectionSources(
                documents_path=self._resolve(section.documents_path, docs_name),
                metadata_path=self._resolve(None, meta_name),
                stats_path=self._resolve(section.stats_path, stats_name),
            )
        return sources

    async def migrate(self) -> Dict[str, Dict[str, int]]:
        raw_settings = self._load(self.settings_path, _RawJson)
        settings = normalize_settings(raw_settings.root if raw_settings is not None else None)
        async with self._db.connection() as db:
            await write_settings(db, settings)

        report: Dict[str, Dict[str, int]] = {}
        for section_id, sources in self.section_sources(settings).items():
            documents = await self._migrate_documents(section_id, sources)
            stats = await self._migrate_stats(section_id, sources)
            report[section_id] = {"documents": documents, "stats": stats}
        logging.info("Legacy JSON migration finished", extra={"sections": report})
        return report

    async def _migrate_documents(self, section_id: str, sources: LegacySectionSources) -> int:
        parsed = self._load(sources.documents_path, LegacyDocumentsFile)
        if parsed is None or not parsed.documents:
            return 0
        meta_file = self._load(sources.metadata_path, LegacyMetadataFile)
        external = meta_file.cleaned() if meta_file is not None else {}

        candidates: Dict[str, Tuple[str, str]] = {}
        metadata: Dict[str, Dict[str, MetadataValue]] = {}
        for record in parsed.documents:
            nombre = record.get("nombre")
            ruta = record.get("ruta")
            nombre = nombre.strip() if isinstance(nombre, str) else ""
            ruta = ruta.strip() if isinstance(ruta, str) else ""
            if not nombre or not ruta:
                continue
            doc_id = stable_document_id(section_id, nombre, ruta)
            merged = extract_inline_metadata(record)
            legacy_id = coerce_document_id(record.get("id"))
            if legacy_id is not None:
                merged.update(external.get(legacy_id, {}))
            candidates[doc_id] = (nombre, ruta)
            metadata[doc_id] = {**metadata.get(doc_id, {}), **merged}

        if not candidates:
            return 0

        timestamp = now_ms()
        async with self._db.transaction() as db:
            await upsert_documents(db, section_id, candidates)
            await db.executemany(
                """
                INSERT INTO document_metadata(section_id, document_id, metadata_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(section_id, document_id) DO UPDATE
                SET metadata_json = excluded.metadata_json,
                    updated_at = excluded.updated_at
                """,
                [
                    (section_id, doc_id, json.dumps(values, ensure_ascii=False), timestamp)
                    for doc_id, values in metadata.items()
                    if values
                ],
            )
        return len(candidates)

    async def _migrate_stats(self, section_id: str, sources: LegacySectionSources) -> int:
        parsed = self._load(sources.stats_path, LegacyStatsFile)
        if parsed is None:
            return 0
        timestamp = now_ms()
        rows = [
            (
                section_id,
                stat.query.lower(),
                stat.query,
                stat.count,
                stat.last_searched if stat.last_searched is not None else timestamp,
            )
            for stat in parsed.root
            if stat.query
        ]
        if not rows:
            return 0
        async with self._db.transaction() as db:
            await db.executemany(
                """
                INSERT INTO search_stats(section_id, query_key, query, count, last_searched)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(section_id, query_key) DO UPDATE
                SET query = excluded.query,
                    count = MAX(search_stats.count, excluded.count),
                    last_searched = MAX(search_stats.last_searched, excluded.last_searched)
                """,
                rows,
            )
        return len(rows)

    async def cleanup_seed_sections(self) -> bool:
        """Drop the never-used seed sections from settings.

        Returns True when the settings were rewritten.
        """
        if self.has_legacy_settings():
            return False
        settings = await self._settings.get()
        if not settings.sections:
            return False
        if not any(normalize_section_id(s.id) in LEGACY_SEED_SECTION_IDS for s in settings.sections):
            return False

        placeholders = ", ".join("?" for _ in LEGACY_SEED_SECTION_IDS)
        async with self._db.connection() as db:
            for table in ("documents", "search_stats"):
                row = await fetchone(
                    db,
                    f"SELECT 1 FROM {table} WHERE section_id IN ({placeholders}) LIMIT 1",
                    LEGACY_SEED_SECTION_IDS,
                )
                if row is not None:
                    return False

        kept = [
            s
            for s in settings.sections
            if normalize_section_id(s.id) not in LEGACY_SEED_SECTION_IDS or s.index_paths
        ]
        if len(kept) == len(settings.sections):
            return False
        await self._settings.save(settings.with_sections(kept))
        logging.info(
            "Removed unused seed sections",
            extra={"sections": [s.id for s in kept]},
        )
        return True

