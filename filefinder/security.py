from __future__ import annotations

import logging
import math
import os
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional


class InvalidArgument(ValueError):
    """Raised when a write path receives an empty or malformed identifier."""


class PathNotAllowed(Exception):
    """Raised when a path falls outside the configured roots."""


def validate_text_field(value: Any, *, field_name: str) -> str:
    if value is None:
        raise InvalidArgument(f"{field_name} is required.")
    if not isinstance(value, str):
        raise InvalidArgument(f"{field_name} must be a string.")
    cleaned = value.strip()
    if not cleaned:
        raise InvalidArgument(f"{field_name} cannot be empty.")
    return cleaned


def coerce_document_id(value: Any) -> Optional[str]:
    """Return the trimmed document id, or None when it is unusable.

    Finite numbers are accepted and stringified so ids coming from older JSON
    snapshots (which used integer ids) still resolve.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value)) if value.is_integer() else str(value)
    return None


def require_document_id(value: Any) -> str:
    document_id = coerce_document_id(value)
    if document_id is None:
        raise InvalidArgument("documentId is required.")
    return document_id


def require_section_input(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    raise InvalidArgument(f"sectionId must be a string, got {type(value).__name__}.")


class PathContext:
    """Confine filesystem reads to a fixed set of roots."""

    def __init__(self, allowed_roots: Iterable[str]) -> None:
        roots = [self._normalize_root(p) for p in allowed_roots]
        self._allowed_roots = [r for r in roots if r]

    def _normalize_root(self, root: str) -> Optional[str]:
        if not root:
            return None
        return os.path.realpath(os.path.abspath(root))

    def _normalize_case(self, path: str) -> str:
        if os.name == "nt":
            return os.path.normcase(path)
        return path

    def ensure_allowed(self, path: str | Path) -> str:
        if not self._allowed_roots:
            raise PathNotAllowed("No allowed roots configured.")
        ap = os.path.realpath(os.path.abspath(str(path)))
        norm_ap = self._normalize_case(ap)
        for root in self._allowed_roots:
            norm_root = self._normalize_case(root)
            try:
                common = os.path.commonpath([norm_ap, norm_root])
            except ValueError:
                continue
            if common == norm_root:
                return ap
        raise PathNotAllowed(
            f"Path '{ap}' is outside allowed roots. Allowed roots: {self._allowed_roots}"
        )

    def resolve_path(self, path: str | Path) -> Path:
        return Path(self.ensure_allowed(path))

    def exists(self, path: str | Path) -> bool:
        try:
            resolved = self.resolve_path(path)
        except PathNotAllowed:
            return False
        return resolved.exists()

    def read_text(self, path: str | Path, *, encoding: str = "utf-8") -> str:
        resolved = self.resolve_path(path)
        flags = os.O_RDONLY
        if hasattr(os, "O_NOFOLLOW"):
            flags |= os.O_NOFOLLOW
        if hasattr(os, "O_CLOEXEC"):
            flags |= os.O_CLOEXEC
        fd = os.open(resolved, flags)
        with os.fdopen(fd, "r", encoding=encoding) as handle:
            return handle.read()

    def iter_files(self, root: str | Path) -> Iterator[Path]:
        resolved_root = self.resolve_path(root)
        stack = [resolved_root]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as entries:
                    for entry in entries:
                        candidate = Path(entry.path)
                        try:
                            if entry.is_dir(follow_symlinks=False):
                                if not entry.is_symlink():
                                    stack.append(candidate)
                                continue
                            if entry.is_file(follow_symlinks=True):
                                if entry.is_symlink():
                                    try:
                                        self.ensure_allowed(candidate)
                                    except PathNotAllowed:
                                        continue
                                yield candidate
                        except OSError:
                            logging.debug("Skipping unreadable entry: %s", entry.path, exc_info=True)
            except OSError:
                logging.warning("Skipping unreadable directory: %s", current, exc_info=True)
