from __future__ import annotations

import logging
import os
from typing import Any, Iterable, List

from .documents import DocumentInput
from .security import PathContext, PathNotAllowed


def normalize_index_paths(index_paths: Any) -> List[str]:
    if isinstance(index_paths, str):
        index_paths = [index_paths]
    if not isinstance(index_paths, (list, tuple)):
        return []
    seen: dict[str, None] = {}
    for item in index_paths:
        if isinstance(item, str) and item.strip():
            seen.setdefault(item.strip(), None)
    return list(seen)


def collect_documents(index_paths: Iterable[str]) -> List[DocumentInput]:
    """Walk every index root and return one entry per regular file, sorted by path.

    Blocking; callers on the event loop run it through ``asyncio.to_thread``.
    """
    roots = normalize_index_paths(list(index_paths))
    path_context = PathContext(roots)
    documents: List[DocumentInput] = []
    for root in roots:
        if not os.path.isdir(root):
            logging.warning("Index path is not a directory, skipping: %s", root)
            continue
        try:
            for path in path_context.iter_files(root):
                documents.append(DocumentInput(nombre=path.name, ruta=str(path)))
        except PathNotAllowed:
            logging.warning("Index path could not be resolved, skipping: %s", root, exc_info=True)
    documents.sort(key=lambda doc: doc.ruta)
    return documents
