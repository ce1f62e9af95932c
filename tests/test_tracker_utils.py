"""Tests for tracker discovery and cross-tracker dependency resolution."""

import pytest

from crct.dependency_system.core.dependency_grid import DependencyType
from crct.dependency_system.core.key_manager import generate_keys
from crct.dependency_system.io.tracker_io import get_tracker_path, update_tracker, write_tracker_file
from crct.dependency_system.utils.tracker_utils import (
    ResolvedDependencies, find_all_tracker_paths, resolve_dependencies
)


@pytest.fixture
def trackers(make_tree, project, norm):
    """src mini tracker records a.ts -> b.ts through a foreign key; util mini tracker records the reverse view."""
    make_tree(["src/a.ts", "src/util/b.ts"])
    key_map = generate_keys([str(project / "src")])[0]
    src_mini = get_tracker_path(str(project), "mini", norm("src"))
    util_mini = get_tracker_path(str(project), "mini", norm("src/util"))
    update_tracker(src_mini, key_map, "mini", module_path=norm("src"), suggestions={"1A1": [("1Aa1", ">")]})
    update_tracker(util_mini, key_map, "mini", module_path=norm("src/util"), suggestions={"1Aa1": [("1A1", "<")]})
    return src_mini, util_mini


def test_find_all_tracker_paths(trackers, project, norm):
    src_mini, util_mini = trackers
    assert find_all_tracker_paths() == sorted([src_mini, util_mini])

    main = get_tracker_path(str(project), "main")
    write_tracker_file(main, {"1A": norm("src")}, {"1A": "o"})
    assert main in find_all_tracker_paths(str(project))


def test_inbound_from_other_rows(trackers):
    src_mini, util_mini = trackers
    resolved = resolve_dependencies("1Aa1", [src_mini, util_mini])
    assert resolved.keys_for(DependencyType.INBOUND) == ["1A1"]
    assert resolved.origins(DependencyType.INBOUND, "1A1") == {src_mini, util_mini}
    assert resolved.keys_for(DependencyType.OUTBOUND) == []


def test_outbound_from_own_row(trackers):
    src_mini, util_mini = trackers
    resolved = resolve_dependencies("1A1", [src_mini, util_mini])
    assert resolved.keys_for(DependencyType.OUTBOUND) == ["1Aa1"]
    assert resolved.origins(DependencyType.OUTBOUND, "1Aa1") == {src_mini, util_mini}
    assert resolved.keys_for(DependencyType.PLACEHOLDER) == ["1Aa", "1Aa1"]


def test_column_scan_keeps_other_relations(project, norm):
    path = str(project / "t.md")
    write_tracker_file(path, {"1A": norm("a"), "1B": norm("b"), "1C": norm("c")},
                       {"1A": "oxn", "1B": "pod", "1C": "S.o"})
    resolved = resolve_dependencies("1A", [path])
    assert resolved.keys_for(DependencyType.MUTUAL) == ["1B"]
    assert resolved.keys_for(DependencyType.SEMANTIC_STRONG) == ["1C"]
    assert "n" not in resolved.as_dict()
    assert "1C" not in resolved.keys_for(DependencyType.PLACEHOLDER)


def test_unreadable_tracker_is_skipped(trackers, project):
    src_mini, util_mini = trackers
    (project / "src" / "util" / "util_module.md").write_text("---mini_tracker_start---\n", encoding="utf-8")
    resolved = resolve_dependencies("1Aa1", [src_mini, util_mini, str(project / "missing.md")])
    assert resolved.origins(DependencyType.INBOUND, "1A1") == {src_mini}


def test_non_utf8_tracker_is_skipped(trackers, project):
    src_mini, util_mini = trackers
    bad = project / "bad_module.md"
    bad.write_bytes(b"\xff\xfe garbage \x80")
    resolved = resolve_dependencies("1Aa1", [str(bad), src_mini, util_mini])
    assert resolved.origins(DependencyType.INBOUND, "1A1") == {src_mini, util_mini}


def test_key_path_filter(trackers, norm):
    src_mini, util_mini = trackers
    assert not resolve_dependencies("1Aa1", [src_mini, util_mini], key_path=norm("src/util/b.ts")).is_empty()
    assert resolve_dependencies("1Aa1", [src_mini, util_mini], key_path=norm("lib/b.ts")).is_empty()


def test_resolved_dependencies_as_dict():
    resolved = ResolvedDependencies("1A")
    resolved.add(DependencyType.OUTBOUND, "1B", "/t2.md")
    resolved.add(DependencyType.OUTBOUND, "1B", "/t1.md")
    resolved.add(DependencyType.OUTBOUND, "1A1", "/t1.md")
    as_dict = resolved.as_dict()
    assert as_dict[">"] == {"1A1": ["/t1.md"], "1B": ["/t1.md", "/t2.md"]}
    assert as_dict["x"] == {}
    assert list(resolved[DependencyType.OUTBOUND]) == ["1B", "1A1"]
    assert not resolved.is_empty()
    assert ResolvedDependencies("1A").is_empty()
