from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .config import FileFinderConfig
from .db import Database, get_meta_value, set_meta_value
from .documents import Document, DocumentPage, DocumentStore, ReplaceResult
from .identity import normalize_section_id
from .legacy import LEGACY_MIGRATION_KEY, LEGACY_SEED_SECTIONS_CLEANUP_KEY, LegacyMigrator
from .locks import KeyedLocks
from .metadata import MetadataStore, MetadataValue, SavedMetadata
from .scanner import collect_documents, normalize_index_paths
from .security import InvalidArgument, require_section_input
from .settings import Settings, SettingsStore
from .stats import RecordedSearch, SearchStat, SearchStatsStore


@dataclass(frozen=True)
class IndexResult:
    section_id: str
    count: int
    scanned: int

    def to_dict(self) -> Dict[str, Any]:
        return {"sectionId": self.section_id, "count": self.count, "scanned": self.scanned}


class FileFinderStore:
    """Entry point for the API layer.

    Build one per process and pass it to whoever needs it. The first call to
    any operation creates the schema, imports legacy JSON and writes the
    default settings; later calls skip straight to the query.
    """

    def __init__(self, config: Optional[FileFinderConfig] = None) -> None:
        self.config = config or FileFinderConfig()
        self.database = Database(
            self.config.db_path,
            pool_size=self.config.pool_size,
            pool_timeout_s=self.config.pool_timeout_s,
            busy_timeout_s=self.config.busy_timeout_s,
        )
        self.settings = SettingsStore(self.database)
        self.documents = DocumentStore(
            self.database,
            locks=KeyedLocks(),
            default_page_size=self.config.default_page_size,
            max_page_size=self.config.max_page_size,
        )
        self.metadata = MetadataStore(self.database)
        self.stats = SearchStatsStore(self.database, default_limit=self.config.top_searches_limit)
        self.migrator = LegacyMigrator(self.database, self.settings, self.config.legacy_root)
        self._ready = False
        self._ready_lock = asyncio.Lock()

    async def __aenter__(self) -> "FileFinderStore":
        await self.ensure_ready()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def ensure_ready(self) -> None:
        if self._ready:
            return
        async with self._ready_lock:
            if self._ready:
                return
            await self.database.init_schema()

            async with self.database.connection() as db:
                migrated = await get_meta_value(db, LEGACY_MIGRATION_KEY)
            if migrated != "true":
                await self.migrator.migrate()
                async with self.database.connection() as db:
                    await set_meta_value(db, LEGACY_MIGRATION_KEY, "true")

            if not await self.settings.has_row():
                await self.settings.save(None)

            async with self.database.connection() as db:
                cleaned = await get_meta_value(db, LEGACY_SEED_SECTIONS_CLEANUP_KEY)
            if cleaned != "true":
                await self.migrator.cleanup_seed_sections()
                async with self.database.connection() as db:
                    await set_meta_value(db, LEGACY_SEED_SECTIONS_CLEANUP_KEY, "true")

            self._ready = True
            logging.info("FileFinder store ready", extra={"db_path": self.database.db_path})

    async def close(self) -> None:
        await self.database.close()
        self._ready = False

    async def get_settings(self) -> Settings:
        await self.ensure_ready()
        return await self.settings.get()

    async def save_settings(self, raw: Any) -> Settings:
        await self.ensure_ready()
        return await self.settings.save(raw)

    async def list_documents(self, section_id: Optional[str] = None) -> List[Document]:
        await self.ensure_ready()
        return await self.documents.list(section_id)

    async def list_documents_page(
        self,
        section_id: Optional[str] = None,
        query: Any = None,
        extensions: Optional[Iterable[str]] = None,
        page: Any = None,
        page_size: Any = None,
    ) -> DocumentPage:
        await self.ensure_ready()
        return await self.documents.search_page(
            section_id, query=query, extensions=extensions, page=page, page_size=page_size
        )

    async def get_document(self, section_id: Optional[str], document_id: Any) -> Optional[Document]:
        await self.ensure_ready()
        return await self.documents.get(section_id, document_id)

    async def document_exists(self, section_id: Optional[str], document_id: Any) -> bool:
        await self.ensure_ready()
        return await self.documents.exists(section_id, document_id)

    async def replace_documents_for_section(self, section_id: Optional[str], documents: Any) -> ReplaceResult:
        await self.ensure_ready()
        return await self.documents.replace_section(section_id, documents)

    async def get_metadata_map(self, section_id: Optional[str] = None) -> Dict[str, Dict[str, MetadataValue]]:
        await self.ensure_ready()
        return await self.metadata.get_map(section_id)

    async def save_document_metadata(
        self, section_id: Optional[str], document_id: Any, metadata: Any
    ) -> SavedMetadata:
        await self.ensure_ready()
        return await self.metadata.upsert(section_id, document_id, metadata)

    async def get_top_searches(self, section_id: Optional[str] = None, limit: Any = None) -> List[SearchStat]:
        await self.ensure_ready()
        return await self.stats.top(section_id, limit)

    async def record_search(self, section_id: Optional[str], query: Any) -> RecordedSearch:
        await self.ensure_ready()
        return await self.stats.record(section_id, query)

    async def index_section(
        self, section_id: Optional[str], index_paths: Optional[Iterable[str]] = None
    ) -> IndexResult:
        """Scan the section's directories and replace its document set."""
        await self.ensure_ready()
        section = normalize_section_id(require_section_input(section_id))
        if index_paths is None:
            settings = await self.settings.get()
            configured = settings.section(section)
            if configured is not None and configured.index_paths:
                index_paths = configured.index_paths
            else:
                index_paths = settings.index_paths
        paths = normalize_index_paths(list(index_paths) if not isinstance(index_paths, str) else index_paths)
        if not paths:
            raise InvalidArgument("No index paths provided.")

        found = await asyncio.to_thread(collect_documents, paths)
        replaced = await self.documents.replace_section(section, found)
        logging.info(
            "Section indexed",
            extra={"section_id": section, "count": replaced.count, "scanned": len(found), "roots": paths},
        )
        return IndexResult(section_id=replaced.section_id, count=replaced.count, scanned=len(found))
