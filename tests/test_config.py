import os

import pytest

from filefinder.config import FileFinderConfig, load_config


def test_missing_file_yields_defaults(tmp_path):
    cfg = load_config(str(tmp_path / "absent.yaml"))
    defaults = FileFinderConfig()
    assert cfg.pool_size == defaults.pool_size
    assert cfg.default_page_size == 20
    assert os.path.isabs(cfg.db_path)
    assert os.path.isabs(cfg.legacy_root)


def test_yaml_values_are_applied(tmp_path):
    path = tmp_path / "filefinder.yaml"
    path.write_text(
        "db_path: {}\nlegacy_root: {}\npool_size: 2\ntop_searches_limit: 10\n".format(
            tmp_path / "db" / "search.sqlite", tmp_path / "public"
        )
    )
    cfg = load_config(str(path))
    assert cfg.db_path == str(tmp_path / "db" / "search.sqlite")
    assert cfg.legacy_root == str(tmp_path / "public")
    assert cfg.pool_size == 2
    assert cfg.top_searches_limit == 10


def test_env_var_selects_config_file(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("max_page_size: 50\n")
    monkeypatch.setenv("FILEFINDER_CONFIG_PATH", str(path))
    assert load_config().max_page_size == 50


def test_unknown_keys_are_rejected(tmp_path):
    path = tmp_path / "filefinder.yaml"
    path.write_text("db_pth: typo.sqlite\n")
    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(str(path))


def test_non_positive_values_are_rejected(tmp_path):
    path = tmp_path / "filefinder.yaml"
    path.write_text("pool_size: 0\n")
    with pytest.raises(ValueError):
        load_config(str(path))


def test_default_page_size_is_capped(tmp_path):
    path = tmp_path / "filefinder.yaml"
    path.write_text("default_page_size: 80\nmax_page_size: 40\n")
    cfg = load_config(str(path))
    assert cfg.default_page_size == 40
