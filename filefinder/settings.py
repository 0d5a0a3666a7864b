from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .db import Database, fetchone, now_ms
from .identity import DEFAULT_SECTION_ID, sanitize_section_id

DEFAULT_APP_TITLE = "FileFinder"
DEFAULT_APP_SUBTITLE = "Find your local files instantly"
DEFAULT_FILE_EXTENSIONS = ("pdf", "docx")

DEFAULT_SECTIONS: tuple[Dict[str, Any], ...] = (
    {
        "id": "libros",
        "label": "Libros",
        "description": "Busca libros y PDFs",
        "documentsPath": "/data/documents-libros.json",
        "statsPath": "/data/search-stats-libros.json",
        "indexPaths": [],
    },
    {
        "id": "curriculum",
        "label": "Curriculum",
        "description": "CVs y perfiles profesionales",
        "documentsPath": "/data/documents-curriculum.json",
        "statsPath": "/data/search-stats-curriculum.json",
        "indexPaths": [],
    },
)


def section_data_paths(section_id: str) -> Dict[str, str]:
    safe_id = sanitize_section_id(section_id) or DEFAULT_SECTION_ID
    if safe_id == DEFAULT_SECTION_ID:
        return {"documentsPath": "/data/documents.json", "statsPath": "/data/search-stats.json"}
    return {
        "documentsPath": f"/data/documents-{safe_id}.json",
        "statsPath": f"/data/search-stats-{safe_id}.json",
    }


def normalize_string_list(value: Any, *, lower: bool = False) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    seen: set[str] = set()
    values: List[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        cleaned = item.strip().lower() if lower else item.strip()
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        values.append(cleaned)
    return values


def _non_empty_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _default_sections() -> List[Dict[str, Any]]:
    return [dict(section, indexPaths=list(section["indexPaths"])) for section in DEFAULT_SECTIONS]


def _normalize_sections(value: Any) -> List[Dict[str, Any]]:
    # An explicit empty list is kept so removed seed sections stay removed.
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return []
    if not isinstance(value, (list, tuple)):
        return _default_sections()

    sections: List[Dict[str, Any]] = []
    seen: set[str] = set()
    for raw in value:
        if isinstance(raw, Section):
            raw = raw.to_dict()
        if not isinstance(raw, dict):
            continue
        section_id = sanitize_section_id(raw.get("id") if isinstance(raw.get("id"), str) else "")
        if not section_id or section_id in seen:
            continue
        seen.add(section_id)
        fallback = section_data_paths(section_id)
        description = raw.get("description")
        sections.append(
            {
                "id": section_id,
                "label": _non_empty_str(raw.get("label")) or section_id,
                "description": description.strip() if isinstance(description, str) else "",
                "documentsPath": _non_empty_str(raw.get("documentsPath")) or fallback["documentsPath"],
                "statsPath": _non_empty_str(raw.get("statsPath")) or fallback["statsPath"],
                "indexPaths": normalize_string_list(raw.get("indexPaths")),
            }
        )
    if not sections:
        return _default_sections()
    return sections


class Section(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    label: str
    description: str = ""
    documents_path: str = Field(alias="documentsPath")
    stats_path: str = Field(alias="statsPath")
    index_paths: List[str] = Field(default_factory=list, alias="indexPaths")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Settings(BaseModel):
    """Application settings as persisted in ``app_settings``.

    Validation never fails on content: every field falls back to its default
    when the stored value has the wrong type, so settings written by older
    releases (or edited by hand) always load.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    index_paths: List[str] = Field(default_factory=list, alias="indexPaths")
    app_title: str = Field(DEFAULT_APP_TITLE, alias="appTitle")
    app_subtitle: str = Field(DEFAULT_APP_SUBTITLE, alias="appSubtitle")
    logo_url: str = Field("", alias="logoUrl")
    show_app_title: bool = Field(True, alias="showAppTitle")
    show_app_subtitle: bool = Field(True, alias="showAppSubtitle")
    use_abrir_adobe: bool = Field(False, alias="useAbrirAdobe")
    file_extensions: List[str] = Field(
        default_factory=lambda: list(DEFAULT_FILE_EXTENSIONS), alias="fileExtensions"
    )
    sections: List[Section] = Field(default_factory=lambda: [Section(**s) for s in _default_sections()])

    @field_validator("index_paths", mode="before")
    @classmethod
    def normalize_index_paths(cls, value: Any) -> List[str]:
        return normalize_string_list(value)

    @field_validator("app_title", mode="before")
    @classmethod
    def normalize_app_title(cls, value: Any) -> str:
        return _non_empty_str(value) or DEFAULT_APP_TITLE

    @field_validator("app_subtitle", mode="before")
    @classmethod
    def normalize_app_subtitle(cls, value: Any) -> str:
        return _non_empty_str(value) or DEFAULT_APP_SUBTITLE

    @field_validator("logo_url", mode="before")
    @classmethod
    def normalize_logo_url(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("show_app_title", "show_app_subtitle", mode="before")
    @classmethod
    def normalize_show_flags(cls, value: Any) -> bool:
        return value if isinstance(value, bool) else True

    @field_validator("use_abrir_adobe", mode="before")
    @classmethod
    def normalize_use_abrir_adobe(cls, value: Any) -> bool:
        return value if isinstance(value, bool) else False

    @field_validator("file_extensions", mode="before")
    @classmethod
    def normalize_file_extensions(cls, value: Any) -> List[str]:
        return normalize_string_list(value, lower=True) or list(DEFAULT_FILE_EXTENSIONS)

    @field_validator("sections", mode="before")
    @classmethod
    def normalize_sections(cls, value: Any) -> List[Dict[str, Any]]:
        return _normalize_sections(value)

    def section(self, section_id: str) -> Optional[Section]:
        for section in self.sections:
            if section.id == section_id:
                return section
        return None

    def with_sections(self, sections: Iterable[Section]) -> "Settings":
        return normalize_settings({**self.to_dict(), "sections": [s.to_dict() for s in sections]})

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def normalize_settings(raw: Any) -> Settings:
    if isinstance(raw, Settings):
        raw = raw.to_dict()
    if not isinstance(raw, dict):
        return Settings()
    return Settings.model_validate(raw)


DEFAULT_SETTINGS = Settings()


async def write_settings(db: aiosqlite.Connection, settings: Settings) -> None:
    await db.execute(
        """
        INSERT INTO app_settings(id, settings_json, updated_at)
        VALUES (1, ?, ?)
        ON CONFLICT(id) DO UPDATE
        SET settings_json = excluded.settings_json,
            updated_at = excluded.updated_at
        """,
        (json.dumps(settings.to_dict(), ensure_ascii=False), now_ms()),
    )


async def read_settings(db: aiosqlite.Connection) -> Optional[Settings]:
    """Return the stored settings, or None when no row has been written yet."""
    row = await fetchone(db, "SELECT settings_json FROM app_settings WHERE id = 1")
    if row is None or not isinstance(row["settings_json"], str):
        return None
    try:
        parsed = json.loads(row["settings_json"])
    except json.JSONDecodeError:
        logging.warning("Stored settings are not valid JSON; using defaults.", exc_info=True)
        parsed = None
    return normalize_settings(parsed)


class SettingsStore:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def get(self) -> Settings:
        async with self._db.connection() as db:
            settings = await read_settings(db)
            if settings is None:
                settings = normalize_settings(None)
                await write_settings(db, settings)
            return settings

    async def save(self, raw: Any) -> Settings:
        settings = normalize_settings(raw)
        async with self._db.connection() as db:
            await write_settings(db, settings)
        logging.info(
            "Settings saved",
            extra={"sections": [s.id for s in settings.sections]},
        )
        return settings

    async def has_row(self) -> bool:
        async with self._db.connection() as db:
            row = await fetchone(db, "SELECT 1 FROM app_settings WHERE id = 1")
        return row is not None
