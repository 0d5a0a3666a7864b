import pytest

aiosqlite = pytest.importorskip("aiosqlite")

from filefinder.config import FileFinderConfig
from filefinder.documents import DocumentInput, escape_like, normalize_extensions
from filefinder.identity import stable_document_id
from filefinder.security import InvalidArgument
from filefinder.store import FileFinderStore


def _store(tmp_path, **overrides):
    cfg = FileFinderConfig(
        db_path=str(tmp_path / "data" / "search.sqlite"),
        legacy_root=str(tmp_path / "public"),
        **overrides,
    )
    return FileFinderStore(cfg)


def _docs(*names, folder="/x"):
    return [{"nombre": n, "ruta": f"{folder}/{n}"} for n in names]


def test_escape_like():
    assert escape_like("100%_done\\") == "100\\%\\_done\\\\"


def test_normalize_extensions():
    assert normalize_extensions([".PDF", "pdf", " docx ", "tar.gz", "", 3, "Ñ"]) == ["pdf", "docx"]
    assert normalize_extensions("pdf") == []
    assert normalize_extensions(None) == []


@pytest.mark.asyncio
async def test_replace_section_dedupes_and_skips_invalid(tmp_path):
    async with _store(tmp_path) as store:
        result = await store.replace_documents_for_section(
            "Libros",
            [
                {"nombre": "a.pdf", "ruta": "/x/a.pdf"},
                {"nombre": "A.PDF", "ruta": "\\x\\A.pdf"},
                {"nombre": "  ", "ruta": "/x/blank.pdf"},
                {"nombre": "b.pdf"},
                "not a mapping",
                DocumentInput(nombre="c.pdf", ruta="/x/c.pdf"),
            ],
        )
        assert result.to_dict() == {"sectionId": "libros", "count": 2}

        docs = await store.list_documents("libros")
        assert [d.nombre for d in docs] == ["A.PDF", "c.pdf"]
        assert docs[0].id == stable_document_id("libros", "a.pdf", "/x/a.pdf")


@pytest.mark.asyncio
async def test_replace_section_rejects_non_list(tmp_path):
    async with _store(tmp_path) as store:
        with pytest.raises(InvalidArgument):
            await store.replace_documents_for_section("libros", {"nombre": "a.pdf"})
        with pytest.raises(InvalidArgument):
            await store.replace_documents_for_section(12, [])


@pytest.mark.asyncio
async def test_replace_is_atomic_on_storage_failure(tmp_path):
    async with _store(tmp_path) as store:
        await store.replace_documents_for_section("libros", _docs("a.pdf", "b.pdf", "c.pdf"))
        async with store.database.connection() as db:
            await db.execute(
                """
                CREATE TRIGGER fail_insert BEFORE INSERT ON documents
                WHEN NEW.nombre = 'boom.pdf'
                BEGIN SELECT RAISE(ABORT, 'simulated failure'); END;
                """
            )

        with pytest.raises(aiosqlite.Error):
            await store.replace_documents_for_section("libros", _docs("d.pdf", "boom.pdf", "e.pdf"))

        docs = await store.list_documents("libros")
        assert [d.nombre for d in docs] == ["a.pdf", "b.pdf", "c.pdf"]


@pytest.mark.asyncio
async def test_metadata_survives_reindex_of_same_files(tmp_path):
    async with _store(tmp_path) as store:
        await store.replace_documents_for_section("s", _docs("a.pdf"))
        doc_id = stable_document_id("s", "a.pdf", "/x/a.pdf")
        saved = await store.save_document_metadata("s", doc_id, {"precio": 10, "nota": ""})
        assert saved.to_dict() == {"sectionId": "s", "documentId": doc_id, "metadata": {"precio": 10}}

        await store.replace_documents_for_section("s", _docs("a.pdf"))
        doc = await store.get_document("s", doc_id)
        assert doc is not None
        assert doc.get("precio") == 10
        assert doc.to_dict()["precio"] == 10


@pytest.mark.asyncio
async def test_metadata_is_orphaned_when_path_changes(tmp_path):
    async with _store(tmp_path) as store:
        await store.replace_documents_for_section("s", _docs("a.pdf", folder="/x"))
        old_id = stable_document_id("s", "a.pdf", "/x/a.pdf")
        await store.save_document_metadata("s", old_id, {"precio": 10})

        await store.replace_documents_for_section("s", _docs("a.pdf", folder="/y"))
        new_id = stable_document_id("s", "a.pdf", "/y/a.pdf")
        assert new_id != old_id
        doc = await store.get_document("s", new_id)
        assert doc is not None
        assert doc.metadata == {}
        assert "metadata" not in doc.to_dict()
        assert await store.get_document("s", old_id) is None
        # The row itself is kept for a later re-index that restores the path.
        assert old_id in await store.get_metadata_map("s")


@pytest.mark.asyncio
async def test_get_and_exists_with_invalid_ids(tmp_path):
    async with _store(tmp_path) as store:
        await store.replace_documents_for_section(None, _docs("a.pdf"))
        doc_id = stable_document_id("default", "a.pdf", "/x/a.pdf")
        assert await store.document_exists("", doc_id)
        assert await store.document_exists("todos", f"  {doc_id}  ")
        assert not await store.document_exists("default", "   ")
        assert await store.get_document("default", None) is None
        assert await store.get_document("default", "missing") is None
        with pytest.raises(InvalidArgument):
            await store.save_document_metadata("default", "  ", {"precio": 1})


@pytest.mark.asyncio
async def test_list_all_sections_orders_case_insensitively(tmp_path):
    async with _store(tmp_path) as store:
        await store.replace_documents_for_section("libros", _docs("beta.pdf", "Delta.pdf"))
        await store.replace_documents_for_section("cv", _docs("alpha.pdf", "Charlie.pdf"))
        for section in (None, "", "todos", "ALL"):
            docs = await store.list_documents(section)
            assert [d.nombre for d in docs] == ["alpha.pdf", "beta.pdf", "Charlie.pdf", "Delta.pdf"]
        assert [d.section_id for d in await store.list_documents("cv")] == ["cv", "cv"]


@pytest.mark.asyncio
async def test_pagination_clamps_and_covers_everything(tmp_path):
    names = [f"doc{i:02d}.pdf" for i in range(23)]
    async with _store(tmp_path) as store:
        await store.replace_documents_for_section("s", _docs(*reversed(names)))

        first = await store.list_documents_page("s", page=0, page_size=5)
        assert (first.total, first.total_pages, first.page, first.page_size) == (23, 5, 1, 5)
        assert first == await store.list_documents_page("s", page=1, page_size=5)

        last = await store.list_documents_page("s", page=10**6, page_size=5)
        assert last.page == 5
        assert last == await store.list_documents_page("s", page=5, page_size=5)
        assert [d.nombre for d in last.documents] == names[20:]

        seen = []
        for page in range(1, first.total_pages + 1):
            result = await store.list_documents_page("s", page=page, page_size=5)
            seen.extend(d.nombre for d in result.documents)
        assert seen == names


@pytest.mark.asyncio
async def test_page_size_defaults_and_limits(tmp_path):
    async with _store(tmp_path) as store:
        await store.replace_documents_for_section("s", _docs("a.pdf"))
        assert (await store.list_documents_page("s")).page_size == 20
        assert (await store.list_documents_page("s", page_size=-3)).page_size == 20
        assert (await store.list_documents_page("s", page_size="abc")).page_size == 20
        assert (await store.list_documents_page("s", page_size=10_000)).page_size == 500
        assert (await store.list_documents_page("s", page_size=7.9)).page_size == 7

        empty = await store.list_documents_page("nothing-here", page=3)
        assert empty.to_dict() == {
            "sectionId": "nothing-here",
            "documents": [],
            "total": 0,
            "page": 1,
            "pageSize": 20,
            "totalPages": 1,
        }


@pytest.mark.asyncio
async def test_query_matches_name_or_path_case_insensitively(tmp_path):
    async with _store(tmp_path) as store:
        await store.replace_documents_for_section(
            "s",
            [
                {"nombre": "Informe Anual.pdf", "ruta": "/docs/Informe Anual.pdf"},
                {"nombre": "otro.pdf", "ruta": "/ANUAL/otro.pdf"},
                {"nombre": "Canción.docx", "ruta": "/musica/Canción.docx"},
                {"nombre": "nada.txt", "ruta": "/x/nada.txt"},
            ],
        )
        result = await store.list_documents_page("s", query="  anual ")
        assert [d.nombre for d in result.documents] == ["Informe Anual.pdf", "otro.pdf"]

        accented = await store.list_documents_page("s", query="CANCIÓN")
        assert [d.nombre for d in accented.documents] == ["Canción.docx"]


@pytest.mark.asyncio
async def test_like_wildcards_are_literal(tmp_path):
    async with _store(tmp_path) as store:
        await store.replace_documents_for_section(
            "s",
            [
                {"nombre": "100%_done.pdf", "ruta": "/r/100%_done.pdf"},
                {"nombre": "1000_done.pdf", "ruta": "/r/1000_done.pdf"},
                {"nombre": "100xydone.pdf", "ruta": "/r/100xydone.pdf"},
                {"nombre": "back\\slash.pdf", "ruta": "/r/backslash.pdf"},
            ],
        )
        found = await store.list_documents_page("s", query="100%_done")
        assert [d.nombre for d in found.documents] == ["100%_done.pdf"]

        assert (await store.list_documents_page("s", query="%")).total == 1
        assert (await store.list_documents_page("s", query="_")).total == 2
        slash = await store.list_documents_page("s", query="k\\s")
        assert [d.nombre for d in slash.documents] == ["back\\slash.pdf"]


@pytest.mark.asyncio
async def test_extension_filter_is_exclusive(tmp_path):
    async with _store(tmp_path) as store:
        await store.replace_documents_for_section("s", _docs("a.pdf", "b.PDF", "c.txt", "README", "d.pdf.txt"))

        pdfs = await store.list_documents_page("s", extensions=["pdf"])
        assert [d.nombre for d in pdfs.documents] == ["a.pdf", "b.PDF"]
        assert pdfs.total == 2

        dotted = await store.list_documents_page("s", extensions=[".TXT"])
        assert [d.nombre for d in dotted.documents] == ["c.txt", "d.pdf.txt"]

        unfiltered = await store.list_documents_page("s", extensions=["!!", ""])
        assert unfiltered.total == 5

        combined = await store.list_documents_page("s", query="b", extensions=["pdf", "txt"])
        assert [d.nombre for d in combined.documents] == ["b.PDF"]
