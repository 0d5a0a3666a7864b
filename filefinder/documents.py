from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import aiosqlite

from .db import Database, fetchone, now_ms, safe_load_json_object
from .identity import (
    DEFAULT_SECTION_ID,
    document_extension,
    is_all_sections,
    normalize_section_id,
    stable_document_id,
)
from .locks import KeyedLocks
from .metadata import MetadataValue, apply_metadata, resolve_metadata
from .security import InvalidArgument, coerce_document_id, require_section_input

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 500

_EXTENSION_PATTERN = re.compile(r"^[a-z0-9]+$")

_DOCUMENT_COLUMNS = """
    SELECT d.section_id, d.id, d.nombre, d.ruta, d.created_at, d.updated_at, m.metadata_json
    FROM documents d
    LEFT JOIN document_metadata m
      ON m.section_id = d.section_id
     AND m.document_id = d.id
"""


@dataclass(frozen=True)
class DocumentInput:
    nombre: str
    ruta: str

    def to_dict(self) -> Dict[str, str]:
        return {"nombre": self.nombre, "ruta": self.ruta}


@dataclass(frozen=True)
class Document:
    section_id: str
    id: str
    nombre: str
    ruta: str
    metadata: Dict[str, MetadataValue] = field(default_factory=dict)
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def extension(self) -> str:
        return document_extension(self.nombre)

    def get(self, key: str) -> Optional[MetadataValue]:
        return self.metadata.get(key)

    def to_dict(self) -> Dict[str, Any]:
        base = {"id": self.id, "nombre": self.nombre, "ruta": self.ruta, "sectionId": self.section_id}
        return apply_metadata(base, self.metadata)


@dataclass(frozen=True)
class DocumentPage:
    section_id: str
    documents: List[Document]
    total: int
    page: int
    page_size: int
    total_pages: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sectionId": self.section_id,
            "documents": [doc.to_dict() for doc in self.documents],
            "total": self.total,
            "page": self.page,
            "pageSize": self.page_size,
            "totalPages": self.total_pages,
        }


@dataclass(frozen=True)
class ReplaceResult:
    section_id: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"sectionId": self.section_id, "count": self.count}


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def normalize_extensions(raw: Any) -> List[str]:
    if not isinstance(raw, (list, tuple, set, frozenset)):
        return []
    seen: Dict[str, None] = {}
    for item in raw:
        if not isinstance(item, str):
            continue
        cleaned = item.strip().lower()
        if cleaned.startswith("."):
            cleaned = cleaned[1:]
        if _EXTENSION_PATTERN.match(cleaned):
            seen.setdefault(cleaned, None)
    return list(seen)


def safe_positive_int(value: Any, fallback: int, maximum: int) -> int:
    if isinstance(value, bool) or value is None:
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    floored = math.floor(number)
    if floored <= 0:
        return fallback
    return min(floored, maximum)


def row_to_document(row: Mapping[str, Any]) -> Document:
    section_id = str(row["section_id"] or DEFAULT_SECTION_ID)
    document_id = str(row["id"] or "")
    raw_metadata = row["metadata_json"]
    external = (
        safe_load_json_object(raw_metadata, context=f"metadata {section_id}/{document_id}")
        if raw_metadata is not None
        else None
    )
    record = {"id": document_id, "nombre": str(row["nombre"] or ""), "ruta": str(row["ruta"] or "")}
    return Document(
        section_id=section_id,
        id=document_id,
        nombre=record["nombre"],
        ruta=record["ruta"],
        metadata=resolve_metadata(record, external),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def prepare_documents(section_id: str, documents: Any) -> Dict[str, Tuple[str, str]]:
    """Drop unusable entries and dedupe by stable id; the last duplicate wins."""
    if not isinstance(documents, (list, tuple)):
        raise InvalidArgument("documents must be a list.")
    prepared: Dict[str, Tuple[str, str]] = {}
    for entry in documents:
        if isinstance(entry, DocumentInput):
            nombre, ruta = entry.nombre, entry.ruta
        elif isinstance(entry, Mapping):
            nombre, ruta = entry.get("nombre"), entry.get("ruta")
        else:
            continue
        nombre = nombre.strip() if isinstance(nombre, str) else ""
        ruta = ruta.strip() if isinstance(ruta, str) else ""
        if not nombre or not ruta:
            continue
        prepared[stable_document_id(section_id, nombre, ruta)] = (nombre, ruta)
    return prepared


class DocumentStore:
    def __init__(
        self,
        database: Database,
        *,
        locks: Optional[KeyedLocks] = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self._db = database
        self._locks = locks or KeyedLocks()
        self.max_page_size = max(1, int(max_page_size))
        self.default_page_size = min(max(1, int(default_page_size)), self.max_page_size)

    async def replace_section(self, section_id: Optional[str], documents: Sequence[Any]) -> ReplaceResult:
        section = normalize_section_id(require_section_input(section_id))
        prepared = prepare_documents(section, documents)
        timestamp = now_ms()
        rows = [
            (section, doc_id, nombre, ruta, document_extension(nombre), timestamp, timestamp)
            for doc_id, (nombre, ruta) in prepared.items()
        ]
        async with self._locks.hold(section):
            async with self._db.transaction() as db:
                await db.execute("DELETE FROM documents WHERE section_id = ?", (section,))
                if rows:
                    await db.executemany(
                        """
                        INSERT INTO documents(section_id, id, nombre, ruta, extension, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        rows,
                    )
        logging.info(
            "Section documents replaced",
            extra={"section_id": section, "count": len(rows), "submitted": len(documents)},
        )
        return ReplaceResult(section_id=section, count=len(rows))

    async def get(self, section_id: Optional[str], document_id: Any) -> Optional[Document]:
        section = normalize_section_id(require_section_input(section_id))
        doc_id = coerce_document_id(document_id)
        if doc_id is None:
            return None
        async with self._db.connection() as db:
            row = await fetchone(
                db,
                f"{_DOCUMENT_COLUMNS} WHERE d.section_id = ? AND d.id = ? LIMIT 1",
                (section, doc_id),
            )
        return row_to_document(row) if row is not None else None

    async def exists(self, section_id: Optional[str], document_id: Any) -> bool:
        section = normalize_section_id(require_section_input(section_id))
        doc_id = coerce_document_id(document_id)
        if doc_id is None:
            return False
        async with self._db.connection() as db:
            row = await fetchone(
                db,
                "SELECT 1 FROM documents WHERE section_id = ? AND id = ? LIMIT 1",
                (section, doc_id),
            )
        return row is not None

    async def list(self, section_id: Optional[str] = None) -> List[Document]:
        require_section_input(section_id)
        async with self._db.connection() as db:
            if is_all_sections(section_id):
                rows = await db.execute_fetchall(
                    f"{_DOCUMENT_COLUMNS} ORDER BY d.nombre COLLATE NOCASE ASC, d.section_id ASC, d.id ASC"
                )
            else:
                rows = await db.execute_fetchall(
                    f"{_DOCUMENT_COLUMNS} WHERE d.section_id = ? ORDER BY d.nombre COLLATE NOCASE ASC, d.id ASC",
                    (normalize_section_id(section_id),),
                )
        return [row_to_document(row) for row in rows]

    async def search_page(
        self,
        section_id: Optional[str],
        query: Any = None,
        extensions: Optional[Iterable[str]] = None,
        page: Any = None,
        page_size: Any = None,
    ) -> DocumentPage:
        section = normalize_section_id(require_section_input(section_id))
        text = query.strip().lower() if isinstance(query, str) else ""
        exts = normalize_extensions(extensions)
        size = safe_positive_int(page_size, self.default_page_size, self.max_page_size)
        requested = safe_positive_int(page, 1, math.inf)

        where = ["d.section_id = ?"]
        params: List[Any] = [section]
        if text:
            pattern = f"%{escape_like(text)}%"
            where.append(
                "(unicode_lower(d.nombre) LIKE ? ESCAPE '\\' OR unicode_lower(d.ruta) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])
        if exts:
            where.append(f"d.extension IN ({', '.join('?' for _ in exts)})")
            params.extend(exts)
        where_sql = " AND ".join(where)

        async with self._db.snapshot() as db:
            count_row = await fetchone(db, f"SELECT COUNT(*) FROM documents d WHERE {where_sql}", params)
            total = int(count_row[0]) if count_row is not None else 0
            total_pages = max(1, math.ceil(total / size))
            current = min(requested, total_pages)
            rows = await db.execute_fetchall(
                f"""
                {_DOCUMENT_COLUMNS}
                WHERE {where_sql}
                ORDER BY d.nombre COLLATE NOCASE ASC, d.id ASC
                LIMIT ? OFFSET ?
                """,
                (*params, size, (current - 1) * size),
            )

        return DocumentPage(
            section_id=section,
            documents=[row_to_document(row) for row in rows],
            total=total,
            page=current,
            page_size=size,
            total_pages=total_pages,
        )


async def upsert_documents(
    db: aiosqlite.Connection, section_id: str, documents: Mapping[str, Tuple[str, str]]
) -> None:
    """Insert or refresh documents without touching the rest of the section."""
    timestamp = now_ms()
    await db.executemany(
        """
        INSERT INTO documents(section_id, id, nombre, ruta, extension, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(section_id, id) DO UPDATE
        SET nombre = excluded.nombre,
            ruta = excluded.ruta,
            extension = excluded.extension,
            updated_at = excluded.updated_at
        """,
        [
            (section_id, doc_id, nombre, ruta, document_extension(nombre), timestamp, timestamp)
            for doc_id, (nombre, ruta) in documents.items()
        ],
    )
