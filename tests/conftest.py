"""Shared fixtures: a throwaway project root bound to the config singleton."""

import json
from pathlib import Path
from typing import Iterable

import pytest

from crct.dependency_system.utils.cache_manager import clear_all_caches
from crct.dependency_system.utils.config_manager import ConfigManager
from crct.dependency_system.utils.path_utils import normalize_path


@pytest.fixture(autouse=True)
def project(tmp_path, monkeypatch):
    """Project root with a config file; caches and config are reset around each test."""
    config = {"code_root_directories": ["src"], "doc_directories": ["docs"]}
    (tmp_path / ".crct.config.json").write_text(json.dumps(config), encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    clear_all_caches()
    ConfigManager().reload(str(tmp_path))
    yield tmp_path
    clear_all_caches()
    ConfigManager().reload()


@pytest.fixture
def make_tree(project):
    """Create files (and their directories) under the project root."""
    def _make(paths: Iterable[str]) -> Path:
        for rel in paths:
            target = project / rel
            if rel.endswith("/"):
                target.mkdir(parents=True, exist_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(f"// {rel}\n", encoding="utf-8")
        return project
    return _make


@pytest.fixture
def norm(project):
    """Normalized absolute path of a project-relative path."""
    def _norm(rel: str) -> str:
        return normalize_path(str(project / rel))
    return _norm
