from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .security import PathContext


@dataclass
class FileFinderConfig:
    # Storage
    db_path: str = "data/search.sqlite"
    # Directory holding the old flat-file snapshots (setting.json, data/*.json)
    legacy_root: str = "public"

    # Connection pool
    pool_size: int = 5
    pool_timeout_s: float = 30.0
    busy_timeout_s: float = 30.0

    # Search
    default_page_size: int = 20
    max_page_size: int = 500
    top_searches_limit: int = 5


class AllowedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    db_path: str = "data/search.sqlite"
    legacy_root: str = "public"

    pool_size: int = 5
    pool_timeout_s: float = 30.0
    busy_timeout_s: float = 30.0

    default_page_size: int = 20
    max_page_size: int = 500
    top_searches_limit: int = 5

    @field_validator("pool_size", "default_page_size", "max_page_size", "top_searches_limit")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if int(value) < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("pool_timeout_s", "busy_timeout_s")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if float(value) <= 0:
            raise ValueError("must be positive")
        return value


def load_config(path: Optional[str] = None) -> FileFinderConfig:
    """Load config from YAML.

    Default path: $FILEFINDER_CONFIG_PATH, else ~/.config/filefinder/filefinder.yaml

    Example:

        db_path: /var/lib/filefinder/search.sqlite
        legacy_root: /srv/filefinder/public
        pool_size: 5
    """

    if path is None:
        env_path = os.environ.get("FILEFINDER_CONFIG_PATH")
        if env_path:
            path = env_path
        else:
            path = os.path.join(
                os.path.expanduser("~"), ".config", "filefinder", "filefinder.yaml"
            )

    cfg = FileFinderConfig()
    config_root = os.path.dirname(os.path.abspath(path)) or os.getcwd()
    path_context = PathContext([config_root])
    if path_context.exists(path):
        data = yaml.safe_load(path_context.read_text(path)) or {}
        try:
            validated = AllowedConfig.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid configuration: {exc}") from exc
        cfg = FileFinderConfig(**validated.model_dump())

    cfg.db_path = os.path.abspath(cfg.db_path)
    cfg.legacy_root = os.path.abspath(cfg.legacy_root)
    if cfg.default_page_size > cfg.max_page_size:
        logging.warning(
            "default_page_size (%s) exceeds max_page_size (%s); adjusting default.",
            cfg.default_page_size,
            cfg.max_page_size,
        )
        cfg.default_page_size = cfg.max_page_size

    return cfg
