"""Tests for grid compression, validation, editing and queries."""

import pytest

from crct.dependency_system.core.dependency_grid import (
    DependencyType, GridError, GridValidationError, add_dependency, compress, create_initial_grid,
    decompress, ensure_valid_grid, get_char_at, get_dependencies, merge_grids, reindex_grid,
    remove_dependency, set_char_at, validate_grid
)

KEYS = ["1A", "1A1", "1Aa", "1Aa1"]


@pytest.mark.parametrize("raw, packed", [
    ("nnnnnpppdd", "n5p3dd"),
    ("ppp", "ppp"),
    ("pppp", "p4"),
    ("oooo", "oooo"),
    ("pppopppp", "p3op4"),
    ("pp>pp", "pp>pp"),
    ("", ""),
])
def test_compress_and_decompress(raw, packed):
    assert compress(raw) == packed
    assert decompress(packed) == raw


def test_decompress_multi_digit_counts():
    assert decompress("p12o") == "p" * 12 + "o"
    assert compress("p" * 12 + "o") == "p12o"


def test_initial_grid():
    grid = create_initial_grid(KEYS)
    assert grid == {"1A": "op3", "1A1": "popp", "1Aa": "ppop", "1Aa1": "p3o"}
    assert validate_grid(grid, KEYS)


def test_initial_grid_rejects_bad_keys():
    assert create_initial_grid([]) == {}
    with pytest.raises(GridError):
        create_initial_grid(["1A", "1A"])
    with pytest.raises(GridError):
        create_initial_grid(["1A", "bogus"])


def test_char_access():
    row = "p3op4"
    assert get_char_at(row, 0) == "p"
    assert get_char_at(row, 3) == "o"
    assert get_char_at(row, 7) == "p"
    with pytest.raises(IndexError):
        get_char_at(row, 8)
    assert set_char_at(row, 5, ">") == "p3op>pp"
    assert set_char_at(row, 5, DependencyType.MUTUAL) == "p3opxpp"
    with pytest.raises(GridError):
        set_char_at(row, 5, "?")


class TestValidation:
    def test_missing_row(self):
        grid = create_initial_grid(KEYS)
        del grid["1Aa"]
        assert not validate_grid(grid, KEYS)
        with pytest.raises(GridValidationError) as exc_info:
            ensure_valid_grid(grid, KEYS)
        assert exc_info.value.row_key == "1Aa"

    def test_extra_row(self):
        grid = create_initial_grid(KEYS)
        grid["1B"] = "p5"
        assert not validate_grid(grid, KEYS)

    def test_wrong_length(self):
        grid = create_initial_grid(KEYS)
        grid["1A1"] = "pop"
        with pytest.raises(GridValidationError) as exc_info:
            ensure_valid_grid(grid, KEYS)
        assert exc_info.value.row_key == "1A1"

    def test_wrong_diagonal(self):
        grid = create_initial_grid(KEYS)
        grid["1A1"] = "pppp"
        with pytest.raises(GridValidationError, match="diagonal"):
            ensure_valid_grid(grid, KEYS)

    def test_unknown_character(self):
        grid = create_initial_grid(KEYS)
        grid["1A"] = "o?pp"
        assert not validate_grid(grid, KEYS)


class TestEditing:
    def test_add_returns_new_grid(self):
        grid = create_initial_grid(KEYS)
        updated = add_dependency(grid, "1A1", "1Aa1", KEYS, DependencyType.OUTBOUND)
        assert grid["1A1"] == "popp"
        assert updated["1A1"] == "pop>"
        assert updated is not grid

    def test_add_remove_add(self):
        grid = create_initial_grid(KEYS)
        once = add_dependency(grid, "1A1", "1Aa1", KEYS, ">")
        removed = remove_dependency(once, "1A1", "1Aa1", KEYS)
        assert get_char_at(removed["1A1"], 3) == "."
        again = add_dependency(removed, "1A1", "1Aa1", KEYS, ">")
        assert again == once

    @pytest.mark.parametrize("key", KEYS)
    def test_diagonal_edits_fail(self, key):
        grid = create_initial_grid(KEYS)
        with pytest.raises(GridError):
            add_dependency(grid, key, key, KEYS, ">")
        with pytest.raises(GridError):
            remove_dependency(grid, key, key, KEYS)

    def test_diagonal_character_rejected(self):
        with pytest.raises(GridError):
            add_dependency(create_initial_grid(KEYS), "1A", "1A1", KEYS, "o")

    def test_unknown_key_rejected(self):
        with pytest.raises(GridError):
            add_dependency(create_initial_grid(KEYS), "1A", "9Z", KEYS, ">")

    def test_missing_row_is_not_recreated(self):
        grid = create_initial_grid(KEYS)
        del grid["1A1"]
        with pytest.raises(GridValidationError) as exc_info:
            add_dependency(grid, "1A1", "1A", KEYS, ">")
        assert exc_info.value.row_key == "1A1"
        with pytest.raises(GridValidationError):
            remove_dependency(grid, "1A1", "1A", KEYS)
        assert "1A1" not in grid


def test_get_dependencies_groups_own_row():
    grid = create_initial_grid(KEYS)
    grid = add_dependency(grid, "1A1", "1Aa1", KEYS, ">")
    grid = add_dependency(grid, "1A1", "1A", KEYS, "n")
    grid = add_dependency(grid, "1Aa", "1A1", KEYS, "x")

    deps = get_dependencies(grid, "1A1", KEYS)
    assert deps[DependencyType.OUTBOUND] == ["1Aa1"]
    assert deps[DependencyType.PLACEHOLDER] == ["1Aa"]
    assert deps[DependencyType.MUTUAL] == []  # only set in the 1Aa row
    assert DependencyType.NO_DEPENDENCY not in deps
    assert set(deps) == {DependencyType.MUTUAL, DependencyType.DOCUMENTATION, DependencyType.SEMANTIC_STRONG,
                         DependencyType.SEMANTIC_WEAK, DependencyType.OUTBOUND, DependencyType.INBOUND,
                         DependencyType.PLACEHOLDER}


def test_dependency_type_helpers():
    assert DependencyType.from_char(">") is DependencyType.OUTBOUND
    assert DependencyType.OUTBOUND.reversed() is DependencyType.INBOUND
    assert DependencyType.INBOUND.reversed() is DependencyType.OUTBOUND
    assert DependencyType.MUTUAL.reversed() is DependencyType.MUTUAL
    with pytest.raises(GridError):
        DependencyType.from_char("q")


def test_reindex_keeps_shared_cells():
    grid = add_dependency(create_initial_grid(KEYS), "1A1", "1Aa1", KEYS, ">")
    grown_keys = ["1A", "1A1", "1A2", "1Aa", "1Aa1"]
    grown = reindex_grid(grid, KEYS, grown_keys)
    assert validate_grid(grown, grown_keys)
    assert get_char_at(grown["1A1"], 4) == ">"
    assert decompress(grown["1A2"]) == "ppopp"

    shrunk_keys = ["1A1", "1Aa1"]
    shrunk = reindex_grid(grid, KEYS, shrunk_keys)
    assert shrunk == {"1A1": "o>", "1Aa1": "po"}


def test_reindex_follows_renamed_keys():
    grid = add_dependency(create_initial_grid(["1A", "1A1"]), "1A1", "1A", ["1A", "1A1"], "<")
    renamed = reindex_grid(grid, ["1A", "1A1"], ["1A", "1A2"], {"1A": "1A", "1A2": "1A1"})
    assert renamed == {"1A": "op", "1A2": "<o"}


def test_merge_prefers_primary_unless_placeholder():
    keys_a = ["1A", "1A1"]
    keys_b = ["1A", "1A1", "1A2"]
    primary = add_dependency(create_initial_grid(keys_a), "1A1", "1A", keys_a, ">")
    secondary = create_initial_grid(keys_b)
    secondary = add_dependency(secondary, "1A1", "1A", keys_b, "x")
    secondary = add_dependency(secondary, "1A", "1A1", keys_b, "d")
    secondary = add_dependency(secondary, "1A2", "1A", keys_b, "<")

    merged = merge_grids(primary, keys_a, secondary, keys_b, keys_b)
    assert decompress(merged["1A1"]) == ">op"
    assert decompress(merged["1A"]) == "odp"
    assert decompress(merged["1A2"]) == "<po"
    assert validate_grid(merged, keys_b)
