from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .db import Database, now_ms
from .identity import normalize_section_id
from .security import require_section_input, validate_text_field

DEFAULT_TOP_LIMIT = 5
MAX_TOP_LIMIT = 100


@dataclass(frozen=True)
class SearchStat:
    query: str
    count: int
    last_searched: int

    def to_dict(self) -> Dict[str, Any]:
        return {"query": self.query, "count": self.count, "lastSearched": self.last_searched}


@dataclass(frozen=True)
class RecordedSearch:
    section_id: str
    query: str

    def to_dict(self) -> Dict[str, Any]:
        return {"sectionId": self.section_id, "query": self.query}


def clamp_limit(limit: Any, fallback: int = DEFAULT_TOP_LIMIT) -> int:
    if isinstance(limit, bool):
        return fallback
    if isinstance(limit, float):
        if not math.isfinite(limit):
            return fallback
        limit = math.floor(limit)
    if not isinstance(limit, int):
        return fallback
    return max(1, min(MAX_TOP_LIMIT, limit))


class SearchStatsStore:
    def __init__(self, database: Database, *, default_limit: int = DEFAULT_TOP_LIMIT) -> None:
        self._db = database
        self.default_limit = clamp_limit(default_limit)

    async def top(self, section_id: Optional[str], limit: Any = None) -> List[SearchStat]:
        section = normalize_section_id(require_section_input(section_id))
        safe_limit = clamp_limit(limit, self.default_limit)
        async with self._db.connection() as db:
            rows = await db.execute_fetchall(
                """
                SELECT query, count, last_searched
                FROM search_stats
                WHERE section_id = ?
                ORDER BY count DESC, last_searched DESC
                LIMIT ?
                """,
                (section, safe_limit),
            )
        return [
            SearchStat(query=str(row["query"]), count=int(row["count"]), last_searched=int(row["last_searched"]))
            for row in rows
        ]

    async def record(self, section_id: Optional[str], query: Any) -> RecordedSearch:
        section = normalize_section_id(require_section_input(section_id))
        cleaned = validate_text_field(query, field_name="query")
        # One statement: SQLite applies the increment atomically per key.
        async with self._db.connection() as db:
            await db.execute(
                """
                INSERT INTO search_stats(section_id, query_key, query, count, last_searched)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(section_id, query_key) DO UPDATE
                SET query = excluded.query,
                    count = search_stats.count + 1,
                    last_searched = MAX(search_stats.last_searched, excluded.last_searched)
                """,
                (section, cleaned.lower(), cleaned, now_ms()),
            )
        logging.debug("Search recorded", extra={"section_id": section, "query_key": cleaned.lower()})
        return RecordedSearch(section_id=section, query=cleaned)
