"""Tests for hierarchical key generation, resolution and the global key map."""

import json
import os
import threading

import pytest

from crct.dependency_system.core.key_manager import (
    KeyAmbiguityError, KeyGenerationError, KeyManager, build_key_path_map, generate_keys,
    get_key_from_path, get_path_from_key, load_global_key_map, load_old_global_key_map,
    resolve_key, sort_key_strings_hierarchically, validate_key
)
from crct.dependency_system.utils.batch_processor import OperationCancelled


def _keys_by_rel(project, path_to_key_info):
    root = str(project).replace("\\", "/")
    return {os.path.relpath(path, root).replace("\\", "/"): ki.key_string
            for path, ki in path_to_key_info.items()}


def test_scenario_keys(make_tree, project):
    """src/a.ts and src/util/b.ts get 1A, 1A1, 1Aa, 1Aa1."""
    make_tree(["src/a.ts", "src/util/b.ts"])
    path_to_key_info, new_keys = generate_keys([str(project / "src")])

    assert _keys_by_rel(project, path_to_key_info) == {
        "src": "1A", "src/a.ts": "1A1", "src/util": "1Aa", "src/util/b.ts": "1Aa1",
    }
    assert len(new_keys) == 4
    util = path_to_key_info[str(project / "src" / "util").replace("\\", "/")]
    assert util.parent_key == "1A"
    assert util.is_directory
    assert util.tier == 1


def test_every_key_matches_grammar_and_round_trips(make_tree, project):
    make_tree(["src/a.py", "src/b.py", "src/pkg/c.py", "src/pkg/sub/d.py",
               "src/pkg/sub/deeper/e.py", "lib/x.py", "lib/y/"])
    path_to_key_info, _ = generate_keys([str(project / "src"), str(project / "lib")])

    for path, ki in path_to_key_info.items():
        assert validate_key(ki.key_string), ki
        assert get_path_from_key(get_key_from_path(path, path_to_key_info), path_to_key_info,
                                 os.path.dirname(path)) == path


def test_multiple_roots_get_sequential_letters(make_tree, project):
    make_tree(["src/a.py", "lib/b.py"])
    path_to_key_info, _ = generate_keys([str(project / "src"), str(project / "lib")])
    keys = _keys_by_rel(project, path_to_key_info)
    assert keys["src"] == "1A"
    assert keys["lib"] == "1B"
    assert keys["lib/b.py"] == "1B1"


def test_nested_subdirectory_is_promoted(make_tree, project):
    make_tree(["src/util/deep/c.ts", "src/util/other/d.ts"])
    path_to_key_info, _ = generate_keys([str(project / "src")])
    keys = _keys_by_rel(project, path_to_key_info)

    assert keys["src/util"] == "1Aa"
    assert keys["src/util/deep"] == "2A"
    assert keys["src/util/deep/c.ts"] == "2A1"
    assert keys["src/util/other"] == "2B"
    deep = path_to_key_info[str(project / "src/util/deep").replace("\\", "/")]
    assert deep.tier == 2
    assert deep.parent_key == "1Aa"


def test_promoted_directory_gets_lowercase_subdirectories(make_tree, project):
    make_tree(["src/util/deep/inner/f.ts"])
    path_to_key_info, _ = generate_keys([str(project / "src")])
    keys = _keys_by_rel(project, path_to_key_info)
    assert keys["src/util/deep/inner"] == "2Aa"
    assert keys["src/util/deep/inner/f.ts"] == "2Aa1"


def test_entries_processed_in_name_order(make_tree, project):
    make_tree(["src/b.py", "src/a.py", "src/c.py"])
    keys = _keys_by_rel(project, generate_keys([str(project / "src")])[0])
    assert [keys["src/a.py"], keys["src/b.py"], keys["src/c.py"]] == ["1A1", "1A2", "1A3"]


def test_excluded_items_are_skipped(make_tree, project):
    make_tree(["src/a.py", "src/a.pyc", "src/node_modules/x.js", "src/.gitkeep", "src/src_module.md"])
    keys = _keys_by_rel(project, generate_keys([str(project / "src")])[0])
    assert set(keys) == {"src", "src/a.py"}


def test_too_many_subdirectories_names_parent(make_tree, project):
    """27 direct subdirectories exhaust the lowercase letters."""
    make_tree([f"src/d{i:02d}/" for i in range(27)])
    with pytest.raises(KeyGenerationError) as exc_info:
        generate_keys([str(project / "src")])
    assert exc_info.value.parent_key == "1A"
    assert exc_info.value.parent_path == str(project / "src").replace("\\", "/")


def test_too_many_promotions_names_parent(make_tree, project):
    make_tree([f"src/util/d{i:02d}/" for i in range(27)])
    with pytest.raises(KeyGenerationError) as exc_info:
        generate_keys([str(project / "src")])
    assert exc_info.value.parent_key == "1Aa"


def test_twenty_six_subdirectories_fit(make_tree, project):
    make_tree([f"src/d{i:02d}/" for i in range(26)])
    keys = _keys_by_rel(project, generate_keys([str(project / "src")])[0])
    assert keys["src/d25"] == "1Az"


def test_missing_root_raises(project):
    with pytest.raises(FileNotFoundError):
        generate_keys([str(project / "nope")])


def test_cancellation_stops_the_walk(make_tree, project):
    make_tree(["src/a.py"])
    event = threading.Event()
    event.set()
    with pytest.raises(OperationCancelled):
        generate_keys([str(project / "src")], cancel_event=event)


def test_validate_key():
    for key in ["1A", "1A1", "1A12", "1Aa", "1Aa3", "2A", "10Z9", "3Bc"]:
        assert validate_key(key), key
    for key in ["", "A1", "0A", "1a", "1AB", "1A0", "1Aa0", "1Aab", "1A1a", None]:
        assert not validate_key(key), key


def test_hierarchical_sort():
    keys = ["1B", "1A10", "2A", "1Aa", "1A2", "1A", "1Aa1", "1A1", "1Ab"]
    assert sort_key_strings_hierarchically(keys) == ["1A", "1A1", "1A2", "1A10", "1Aa", "1Aa1", "1Ab", "1B", "2A"]


class TestAmbiguity:
    @pytest.fixture
    def reused_map(self, make_tree, project):
        make_tree(["src/x/y/a.py", "lib/x/y/b.py"])
        path_to_key_info, _ = generate_keys([str(project / "src"), str(project / "lib")])
        return path_to_key_info

    def test_reused_key_is_reported_without_guessing(self, reused_map):
        with pytest.raises(KeyAmbiguityError) as exc_info:
            get_path_from_key("2A", reused_map)
        assert len(exc_info.value.candidates) == 2

    def test_context_picks_candidate(self, reused_map, norm):
        assert get_path_from_key("2A", reused_map, norm("src/x")) == norm("src/x/y")
        assert get_path_from_key("2A", reused_map, norm("lib")) == norm("lib/x/y")

    def test_resolve_key_returns_all_candidates(self, reused_map):
        assert len(resolve_key("2A", reused_map)) == 2
        assert resolve_key("9Z", reused_map) == []

    def test_unknown_key_is_none(self, reused_map):
        assert get_path_from_key("9Z", reused_map) is None

    def test_build_key_path_map_skips_collisions(self, reused_map, norm):
        key_map = build_key_path_map(list(reused_map.values()))
        assert list(key_map).count("2A") == 1
        assert key_map["1A"] == norm("src")


class TestKeyManagerPersistence:
    def test_save_and_load(self, make_tree, project):
        make_tree(["src/a.py", "src/util/b.py"])
        manager = KeyManager()
        manager.regenerate([str(project / "src")])

        map_dir = str(project / "crct_docs")
        with open(os.path.join(map_dir, "global_key_map.json"), encoding="utf-8") as f:
            raw = json.load(f)
        entry = raw[str(project / "src/util/b.py").replace("\\", "/")]
        assert entry == {"key": "1Aa1", "path": str(project / "src/util/b.py").replace("\\", "/"),
                         "parent": "1Aa", "tier": 1, "isDirectory": False}

        loaded = KeyManager()
        assert loaded.load()
        assert loaded.path_to_key_info == manager.path_to_key_info

    def test_previous_map_is_kept(self, make_tree, project):
        make_tree(["src/a.py"])
        manager = KeyManager()
        manager.regenerate([str(project / "src")])
        make_tree(["src/b.py"])
        new_keys = manager.regenerate([str(project / "src")])

        assert [ki.key_string for ki in new_keys] == ["1A2"]
        old = load_old_global_key_map(str(project / "crct_docs"))
        current = load_global_key_map(str(project / "crct_docs"))
        assert len(old) == 2
        assert len(current) == 3

    def test_load_without_map(self, project):
        manager = KeyManager()
        assert manager.load() is False
        assert load_global_key_map(str(project / "crct_docs")) is None

    def test_malformed_map_raises(self, project):
        map_dir = project / "crct_docs"
        map_dir.mkdir()
        (map_dir / "global_key_map.json").write_text(json.dumps({"/x": {"key": "bad"}}), encoding="utf-8")
        with pytest.raises(ValueError):
            load_global_key_map(str(map_dir))

    def test_failed_regeneration_keeps_previous_map(self, make_tree, project):
        make_tree(["src/a.py"])
        manager = KeyManager()
        manager.regenerate([str(project / "src")])
        before = dict(manager.path_to_key_info)
        make_tree([f"src/d{i:02d}/" for i in range(27)])

        with pytest.raises(KeyGenerationError):
            manager.regenerate([str(project / "src")])
        assert manager.path_to_key_info == before

    def test_lookup_helpers(self, make_tree, project, norm):
        make_tree(["src/a.py"])
        manager = KeyManager()
        manager.regenerate([str(project / "src")], persist=False)
        assert manager.key_for_path(norm("src/a.py")) == "1A1"
        assert manager.path_for_key("1A1") == norm("src/a.py")
        assert manager.key_info_for_path(norm("src")).key_string == "1A"
        assert not os.path.exists(project / "crct_docs" / "global_key_map.json")
