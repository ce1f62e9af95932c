"""Tests for the command-line entry point."""

import json
import os

import pytest

from crct.dependency_system import dependency_processor
from crct.dependency_system.core.dependency_grid import get_char_at
from crct.dependency_system.io.tracker_io import read_tracker_file
from crct.dependency_system.utils.config_manager import ConfigManager


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(dependency_processor, "setup_logging", lambda: None)


def run(argv):
    with pytest.raises(SystemExit) as exc_info:
        dependency_processor.main(argv)
    return exc_info.value.code


@pytest.fixture
def analyzed(make_tree, capsys):
    make_tree(["src/a.ts", "src/util/b.ts", "docs/guide.md"])
    assert run(["analyze-project"]) == 0
    assert "Analysis success" in capsys.readouterr().out


def test_compress_commands(capsys):
    assert run(["compress", "nnnnnpppdd"]) == 0
    assert run(["decompress", "n5p3dd"]) == 0
    assert run(["get_char", "p3op4", "3"]) == 0
    assert capsys.readouterr().out.split() == ["n5p3dd", "nnnnnpppdd", "o"]
    assert run(["get_char", "p3", "3"]) == 1


def test_missing_command_is_a_usage_error(capsys):
    assert run([]) == 2


def test_analyze_writes_summary(make_tree, project, capsys):
    make_tree(["src/a.ts", "docs/guide.md"])
    suggestions = project / "suggestions.json"
    suggestions.write_text(json.dumps({"1B1": [["1B", ">"]]}), encoding="utf-8")
    assert run(["analyze-project", "--suggestions", str(suggestions), "--output", str(project / "out.json")]) == 0
    with open(project / "out.json", encoding="utf-8") as f:
        assert json.load(f)["status"] == "success"


def test_show_path(analyzed, capsys, norm):
    assert run(["show-path", "1Ba1"]) == 0
    assert capsys.readouterr().out.strip() == norm("src/util/b.ts")
    assert run(["show-path", "9Z"]) == 1


def test_add_dependency_and_show(analyzed, capsys, norm):
    tracker = norm("src/src_module.md")
    assert run(["add-dependency", "--tracker", tracker, "--source-key", "1B1",
                "--target-key", "1Ba", "--dep-type", "x"]) == 0
    data = read_tracker_file(tracker)
    assert get_char_at(data.grid["1B1"], list(data.keys).index("1Ba")) == "x"
    capsys.readouterr()

    assert run(["show-dependencies", "--key", "1Ba"]) == 0
    out = capsys.readouterr().out
    assert "Mutual ('x'):" in out
    assert "1B1  [src_module.md]" in out

    assert run(["show-keys", "--tracker", tracker]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines == [f"1B1: {norm('src/a.ts')}", f"1Ba: {norm('src/util')} (checks needed: p)"]


def test_add_dependency_with_unknown_target(analyzed, capsys, norm):
    code = run(["add-dependency", "--tracker", norm("src/src_module.md"), "--source-key", "1B1",
                "--target-key", "9Z"])
    assert code == 1
    assert "9Z" in capsys.readouterr().out


def test_remove_commands(analyzed, capsys, norm):
    tracker = norm("src/src_module.md")
    assert run(["remove-dependency", "--tracker", tracker, "--source-key", "1B1", "--target-key", "1Ba"]) == 0
    assert run(["remove-key", tracker, "1Ba"]) == 0
    assert list(read_tracker_file(tracker).keys) == ["1B1"]
    assert run(["remove-key", tracker, "9Z"]) == 1


def test_export_default_path(analyzed, capsys, norm):
    assert run(["export-tracker", norm("src/src_module.md"), "--format", "csv"]) == 0
    assert os.path.exists(norm("src/src_module_export.csv"))


def test_merge_trackers(analyzed, capsys, norm):
    out = norm("merged.md")
    assert run(["merge-trackers", norm("src/src_module.md"), norm("src/util/util_module.md"), "-o", out]) == 0
    assert list(read_tracker_file(out).keys) == ["1B1", "1Ba", "1Ba1"]


def test_config_commands(project, capsys):
    assert run(["update-config", "paths.memory_dir", "notes"]) == 0
    assert ConfigManager().get_path("memory_dir") == str(project / "notes").replace("\\", "/")
    assert ConfigManager().get_path("backups_dir").endswith("crct_docs/backups")

    assert run(["reset-config"]) == 0
    assert ConfigManager().get_path("memory_dir").endswith("/crct_docs")
    assert run(["clear-caches"]) == 0
