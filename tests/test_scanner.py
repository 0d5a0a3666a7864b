import pytest

pytest.importorskip("aiosqlite")

from filefinder.config import FileFinderConfig
from filefinder.scanner import collect_documents, normalize_index_paths
from filefinder.security import InvalidArgument
from filefinder.store import FileFinderStore


def _tree(root):
    (root / "sub" / "deeper").mkdir(parents=True)
    (root / "b.pdf").write_text("b")
    (root / "sub" / "a.docx").write_text("a")
    (root / "sub" / "deeper" / "c.txt").write_text("c")


def test_normalize_index_paths():
    assert normalize_index_paths([" /a ", "/a", "", None, "/b"]) == ["/a", "/b"]
    assert normalize_index_paths("/a") == ["/a"]
    assert normalize_index_paths(None) == []


def test_collect_documents_walks_recursively_sorted_by_path(tmp_path):
    root = tmp_path / "docs"
    _tree(root)
    docs = collect_documents([str(root), str(tmp_path / "missing")])
    rutas = [d.ruta for d in docs]
    assert rutas == sorted(rutas)
    assert sorted(d.nombre for d in docs) == ["a.docx", "b.pdf", "c.txt"]
    assert all(d.ruta.endswith(d.nombre) for d in docs)


@pytest.mark.asyncio
async def test_index_section_uses_configured_paths(tmp_path):
    root = tmp_path / "docs"
    _tree(root)
    cfg = FileFinderConfig(db_path=str(tmp_path / "search.sqlite"), legacy_root=str(tmp_path / "public"))
    async with FileFinderStore(cfg) as store:
        await store.save_settings({"indexPaths": ["/nonexistent"], "sections": [{"id": "tesis", "indexPaths": [str(root)]}]})
        result = await store.index_section("tesis")
        assert result.to_dict() == {"sectionId": "tesis", "count": 3, "scanned": 3}

        page = await store.list_documents_page("tesis", extensions=["pdf", "docx"])
        assert sorted(d.nombre for d in page.documents) == ["a.docx", "b.pdf"]


@pytest.mark.asyncio
async def test_index_section_falls_back_to_global_paths(tmp_path):
    root = tmp_path / "docs"
    _tree(root)
    cfg = FileFinderConfig(db_path=str(tmp_path / "search.sqlite"), legacy_root=str(tmp_path / "public"))
    async with FileFinderStore(cfg) as store:
        await store.save_settings({"indexPaths": [str(root)], "sections": [{"id": "otros"}]})
        result = await store.index_section("otros")
        assert result.count == 3

        explicit = await store.index_section("otros", [str(root / "sub" / "deeper")])
        assert (explicit.count, explicit.scanned) == (1, 1)
        assert [d.nombre for d in await store.list_documents("otros")] == ["c.txt"]


@pytest.mark.asyncio
async def test_index_section_without_paths_is_rejected(tmp_path):
    cfg = FileFinderConfig(db_path=str(tmp_path / "search.sqlite"), legacy_root=str(tmp_path / "public"))
    async with FileFinderStore(cfg) as store:
        with pytest.raises(InvalidArgument):
            await store.index_section("libros")
        with pytest.raises(InvalidArgument):
            await store.index_section("libros", ["  "])
