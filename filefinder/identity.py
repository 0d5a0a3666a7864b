from __future__ import annotations

import hashlib
import re
from typing import Optional

DEFAULT_SECTION_ID = "default"
# Section ids that mean "every section" when listing, and "default" otherwise.
ALL_SECTIONS_ALIASES = frozenset({"todos", "all"})

_SECTION_ID_STRIP = re.compile(r"[^a-z0-9\-_]")
_REPEATED_SLASHES = re.compile(r"/+")


def sanitize_section_id(raw: Optional[str]) -> str:
    if not raw or not isinstance(raw, str):
        return ""
    return _SECTION_ID_STRIP.sub("", raw.lower().strip())


def normalize_section_id(raw: Optional[str]) -> str:
    safe = sanitize_section_id(raw)
    if not safe or safe in ALL_SECTIONS_ALIASES:
        return DEFAULT_SECTION_ID
    return safe


def is_all_sections(raw: Optional[str]) -> bool:
    if raw is None:
        return True
    cleaned = raw.strip().lower()
    return not cleaned or cleaned in ALL_SECTIONS_ALIASES


def normalize_for_id(value: str) -> str:
    return _REPEATED_SLASHES.sub("/", value.replace("\\", "/")).strip().lower()


def stable_document_id(section_id: Optional[str], nombre: str, ruta: str) -> str:
    """Derive the document id from its section, name and path.

    The id only depends on normalized inputs, so re-scanning the same file
    (even with a different separator style or casing) yields the same id and
    keeps metadata rows attached.
    """
    key = "\n".join(
        (normalize_section_id(section_id), normalize_for_id(nombre), normalize_for_id(ruta))
    )
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def document_extension(nombre: str) -> str:
    """Lowercased suffix after the last dot, or "" when the name has none."""
    if "." not in nombre:
        return ""
    return nombre.rsplit(".", 1)[-1].strip().lower()
