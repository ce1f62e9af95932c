# core/dependency_grid.py

"""
Core module for dependency grid operations.
Handles grid creation, compression, decompression, validation and dependency management.
A grid is a dict mapping key strings to compressed rows; the column order of every row
is the ordered key list passed alongside it. Mutators never modify the grid they are
given and return a new dict instead.
"""

import re
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

import numpy as np

from crct.dependency_system.utils.cache_manager import cached
from .key_manager import validate_key

import logging
logger = logging.getLogger(__name__)


class DependencyType(Enum):
    """Relation symbols stored in grid cells."""
    OUTBOUND = ">"          # row depends on column
    INBOUND = "<"           # column depends on row
    MUTUAL = "x"
    DOCUMENTATION = "d"
    SEMANTIC_WEAK = "s"
    SEMANTIC_STRONG = "S"
    DIAGONAL = "o"
    NO_DEPENDENCY = "n"
    PLACEHOLDER = "p"
    EMPTY = "."

    @property
    def char(self) -> str:
        return self.value

    @classmethod
    def from_char(cls, char: Union[str, "DependencyType"]) -> "DependencyType":
        if isinstance(char, cls):
            return char
        try:
            return cls(char)
        except ValueError:
            raise GridError(f"Unknown dependency character {char!r}") from None

    def reversed(self) -> "DependencyType":
        """The same relation seen from the other end ('>' <-> '<')."""
        if self is DependencyType.OUTBOUND:
            return DependencyType.INBOUND
        if self is DependencyType.INBOUND:
            return DependencyType.OUTBOUND
        return self


# Constants
DIAGONAL_CHAR = DependencyType.DIAGONAL.value
PLACEHOLDER_CHAR = DependencyType.PLACEHOLDER.value
EMPTY_CHAR = DependencyType.EMPTY.value
NO_DEPENDENCY_CHAR = DependencyType.NO_DEPENDENCY.value
VALID_CHARS = frozenset(t.value for t in DependencyType)

# Categories reported by get_dependencies, in reporting order
QUERY_TYPES = (
    DependencyType.MUTUAL, DependencyType.DOCUMENTATION, DependencyType.SEMANTIC_STRONG,
    DependencyType.SEMANTIC_WEAK, DependencyType.OUTBOUND, DependencyType.INBOUND,
    DependencyType.PLACEHOLDER,
)

# Compile regex pattern for RLE compression scheme (repeating characters, excluding 'o')
COMPRESSION_PATTERN = re.compile(r'([^o])\1{2,}')


class GridError(ValueError):
    """Structural misuse of a grid (diagonal edit, unknown key or character)."""


class GridValidationError(GridError):
    """A grid violates its invariants."""
    def __init__(self, message: str, row_key: Optional[str] = None):
        super().__init__(message)
        self.row_key = row_key


def compress(s: str) -> str:
    """
    Compress a dependency string using Run-Length Encoding (RLE).
    Only compresses sequences of 3 or more repeating characters (excluding 'o').

    Args:
        s: String to compress (e.g., "nnnnnpppdd")
    Returns:
        Compressed string (e.g., "n5p3dd")
    """
    if not s or len(s) <= 3:
        return s
    return COMPRESSION_PATTERN.sub(lambda m: m.group(1) + str(len(m.group())), s)


@cached("grid_decompress", key_func=lambda s: f"decompress:{s}")
def decompress(s: str) -> str:
    """
    Decompress a Run-Length Encoded dependency string with caching.

    Args:
        s: Compressed string (e.g., "n5p3dd")
    Returns:
        Decompressed string (e.g., "nnnnnpppdd")
    """
    if not s or (len(s) <= 3 and not any(c.isdigit() for c in s)):
        return s

    result = []
    i = 0
    while i < len(s):
        if i + 1 < len(s) and s[i + 1].isdigit():
            count, j = _parse_count(s, i + 1)
            result.append(s[i] * count); i = j
        else:
            result.append(s[i]); i += 1
    return "".join(result)


def _parse_count(s: str, start: int) -> Tuple[int, int]:
    """Parse the run count starting at s[start]; returns (count, index after count)."""
    j = start
    while j < len(s) and s[j].isdigit(): j += 1
    return int(s[start:j]), j


def _initial_row(size: int, diagonal_index: int) -> str:
    row = [PLACEHOLDER_CHAR] * size
    row[diagonal_index] = DIAGONAL_CHAR
    return compress("".join(row))


# --- Grid Creation ---
def create_initial_grid(keys: List[str]) -> Dict[str, str]:
    """
    Create an initial dependency grid with placeholders and diagonal markers.

    Args:
        keys: Ordered key strings defining rows and columns
    Returns:
        Dictionary mapping key strings to compressed rows
    Raises:
        GridError: If a key is invalid or duplicated
    """
    _check_keys(keys)
    return {key: _initial_row(len(keys), i) for i, key in enumerate(keys)}


def _check_keys(keys: List[str]) -> None:
    invalid = [k for k in keys if not validate_key(k)]
    if invalid:
        raise GridError(f"Invalid keys for grid: {invalid}")
    if len(set(keys)) != len(keys):
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        raise GridError(f"Duplicate keys for grid: {duplicates}")


# --- Character Access ---
def get_char_at(s: str, index: int) -> str:
    """
    Get the character at a specific index in a compressed row, without decompressing it.

    Args:
        s: The compressed string
        index: The index in the decompressed string
    Returns:
        The character at the specified index
    Raises:
        IndexError: If the index is out of range
    """
    if index < 0:
        raise IndexError("Index out of range")
    decompressed_index = 0
    i = 0
    while i < len(s):
        if i + 1 < len(s) and s[i + 1].isdigit():
            char = s[i]; count, i = _parse_count(s, i + 1)
            if decompressed_index + count > index: return char
            decompressed_index += count
        else:
            if decompressed_index == index: return s[i]
            decompressed_index += 1; i += 1
    raise IndexError("Index out of range")


def set_char_at(s: str, index: int, new_char: Union[str, DependencyType]) -> str:
    """
    Set a character at a specific index and return the compressed string.

    Args:
        s: The compressed string
        index: The index in the decompressed string
        new_char: The new character (or DependencyType)
    Returns:
        The updated compressed string
    Raises:
        GridError: If new_char is not a grid character
        IndexError: If the index is out of range
    """
    char = DependencyType.from_char(new_char).value
    decompressed = decompress(s)
    if not 0 <= index < len(decompressed): raise IndexError("Index out of range")
    return compress(decompressed[:index] + char + decompressed[index + 1:])


# --- Grid Validation ---
def find_grid_problem(grid: Dict[str, str], keys: List[str]) -> Optional[Tuple[Optional[str], str]]:
    """
    Check a grid against its key list.

    Returns:
        None if the grid is valid, else (offending row key or None, description)
    """
    num_keys = len(keys)
    if len(set(keys)) != num_keys:
        return None, "Key list contains duplicates"

    missing_rows = set(keys) - set(grid)
    extra_rows = set(grid) - set(keys)
    if missing_rows:
        first = min(missing_rows)
        return first, f"Missing rows for keys: {sorted(missing_rows)}"
    if extra_rows:
        first = min(extra_rows)
        return first, f"Extra rows for keys not in key list: {sorted(extra_rows)}"

    for idx, key in enumerate(keys):
        decompressed = decompress(grid[key])
        if len(decompressed) != num_keys:
            return key, f"Row for '{key}' has length {len(decompressed)}, expected {num_keys}"
        bad_chars = set(decompressed) - VALID_CHARS
        if bad_chars:
            return key, f"Row for '{key}' contains invalid characters {sorted(bad_chars)}"
        if decompressed[idx] != DIAGONAL_CHAR:
            return key, f"Row for '{key}' has '{decompressed[idx]}' on the diagonal (index {idx}), expected '{DIAGONAL_CHAR}'"
        if DIAGONAL_CHAR in decompressed[:idx] + decompressed[idx + 1:]:
            return key, f"Row for '{key}' has '{DIAGONAL_CHAR}' outside the diagonal"
    return None


@cached("grid_validation",
        key_func=lambda grid, keys: f"validate_grid:{hash(tuple(sorted(grid.items())))}:{hash(tuple(keys))}")
def validate_grid(grid: Dict[str, str], keys: List[str]) -> bool:
    """
    Validate a dependency grid for consistency with an ordered key list.

    Args:
        grid: Dictionary mapping key strings to compressed rows
        keys: Ordered key strings
    Returns:
        True if valid, False otherwise (the problem is logged)
    """
    problem = find_grid_problem(grid, keys)
    if problem is not None:
        logger.error(f"Grid validation failed: {problem[1]}")
        return False
    logger.debug("Grid validation successful.")
    return True


def ensure_valid_grid(grid: Dict[str, str], keys: List[str]) -> None:
    """
    Raise GridValidationError naming the offending row if the grid is invalid.
    """
    if validate_grid(grid, keys):
        return
    row_key, message = find_grid_problem(grid, keys)
    raise GridValidationError(message, row_key)


# --- Grid Modification ---
def _cell_indices(source_key: str, target_key: str, keys: List[str]) -> Tuple[int, int]:
    if source_key not in keys or target_key not in keys:
        raise GridError(f"Keys {source_key} or {target_key} not in key list")
    source_idx = keys.index(source_key)
    target_idx = keys.index(target_key)
    if source_idx == target_idx:
        raise GridError(f"Cannot modify diagonal element for key '{source_key}'. Self-dependency is fixed at '{DIAGONAL_CHAR}'.")
    return source_idx, target_idx


def add_dependency(grid: Dict[str, str], source_key: str, target_key: str, keys: List[str],
                   dep_type: Union[str, DependencyType] = DependencyType.OUTBOUND) -> Dict[str, str]:
    """
    Set the relation from source_key to target_key.

    Args:
        grid: Dictionary mapping key strings to compressed rows
        source_key: Row key
        target_key: Column key
        keys: Ordered key strings
        dep_type: Relation to store
    Returns:
        New grid
    Raises:
        GridError: On diagonal targets, unknown keys, or the reserved diagonal character
        GridValidationError: If the grid has no row for source_key
    """
    dep = DependencyType.from_char(dep_type)
    if dep is DependencyType.DIAGONAL:
        raise GridError(f"'{DIAGONAL_CHAR}' is reserved for the diagonal")
    _, target_idx = _cell_indices(source_key, target_key, keys)

    if source_key not in grid:
        raise GridValidationError(f"Grid has no row for key '{source_key}'", source_key)

    new_grid = dict(grid)
    new_grid[source_key] = set_char_at(grid[source_key], target_idx, dep)
    return new_grid


def remove_dependency(grid: Dict[str, str], source_key: str, target_key: str, keys: List[str]) -> Dict[str, str]:
    """
    Clear the relation from source_key to target_key (sets it to '.', not back to 'p').

    Returns:
        New grid
    Raises:
        GridError: On diagonal targets or unknown keys
    """
    return add_dependency(grid, source_key, target_key, keys, DependencyType.EMPTY)


# --- Dependency Retrieval ---
def get_dependencies(grid: Dict[str, str], key: str, keys: List[str]) -> Dict[DependencyType, List[str]]:
    """
    Get the relations recorded in a key's own row, grouped by type.

    'n', '.' and the diagonal are not reported. Other rows are not consulted.

    Args:
        grid: Dictionary mapping key strings to compressed rows
        key: Row key
        keys: Ordered key strings
    Returns:
        Dictionary with one (possibly empty) list per reportable DependencyType
    """
    if key not in keys:
        raise GridError(f"Key {key} not in key list")
    results: Dict[DependencyType, List[str]] = {dep: [] for dep in QUERY_TYPES}
    row = grid.get(key)
    if not row:
        logger.warning(f"No grid row found for key '{key}' during dependency retrieval.")
        return results

    decompressed = decompress(row)
    for col_idx, target_key in enumerate(keys):
        if target_key == key or col_idx >= len(decompressed):
            continue
        dep = DependencyType.from_char(decompressed[col_idx])
        if dep in results:
            results[dep].append(target_key)
    return results


# --- Matrix helpers ---
def grid_to_matrix(grid: Dict[str, str], keys: List[str]) -> np.ndarray:
    """Decompress a valid grid into an N x N character matrix ordered by keys."""
    if not keys:
        return np.empty((0, 0), dtype='<U1')
    return np.array([list(decompress(grid[k])) for k in keys], dtype='<U1')


def matrix_to_grid(matrix: np.ndarray, keys: List[str]) -> Dict[str, str]:
    """Compress an N x N character matrix back into a grid."""
    return {key: compress("".join(matrix[i])) for i, key in enumerate(keys)}


def _placeholder_matrix(size: int) -> np.ndarray:
    matrix = np.full((size, size), PLACEHOLDER_CHAR, dtype='<U1')
    np.fill_diagonal(matrix, DIAGONAL_CHAR)
    return matrix


def _project(matrix: np.ndarray, old_keys: List[str], new_keys: List[str],
             old_key_for: Optional[Dict[str, str]] = None) -> np.ndarray:
    """Place the cells of matrix (over old_keys) into a placeholder matrix over new_keys."""
    result = _placeholder_matrix(len(new_keys))
    old_index = {k: i for i, k in enumerate(old_keys)}
    if old_key_for is None:
        old_key_for = {k: k for k in new_keys if k in old_index}
    pairs = [(i, old_index[old_key_for[k]]) for i, k in enumerate(new_keys)
             if k in old_key_for and old_key_for[k] in old_index]
    if pairs:
        new_idx = [p[0] for p in pairs]
        old_idx = [p[1] for p in pairs]
        result[np.ix_(new_idx, new_idx)] = matrix[np.ix_(old_idx, old_idx)]
    np.fill_diagonal(result, DIAGONAL_CHAR)
    return result


def reindex_grid(grid: Dict[str, str], old_keys: List[str], new_keys: List[str],
                 old_key_for: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Project a grid onto a new key list, keeping cells for keys present in both.

    Args:
        grid: Valid grid over old_keys
        old_keys: Ordered keys of the existing grid
        new_keys: Ordered keys of the result
        old_key_for: Optional new key -> old key mapping for renamed keys
    Returns:
        New grid over new_keys; cells involving new keys are placeholders
    """
    _check_keys(new_keys)
    ensure_valid_grid(grid, old_keys)
    return matrix_to_grid(_project(grid_to_matrix(grid, old_keys), old_keys, new_keys, old_key_for), new_keys)


def merge_grids(primary_grid: Dict[str, str], primary_keys: List[str],
                secondary_grid: Dict[str, str], secondary_keys: List[str],
                merged_keys: List[str]) -> Dict[str, str]:
    """
    Merge two grids over the union key list.

    For each off-diagonal cell the primary character wins unless it is a
    placeholder, in which case the secondary character is used.

    Returns:
        New grid over merged_keys
    """
    _check_keys(merged_keys)
    ensure_valid_grid(primary_grid, primary_keys)
    ensure_valid_grid(secondary_grid, secondary_keys)
    merged = _project(grid_to_matrix(secondary_grid, secondary_keys), secondary_keys, merged_keys)
    primary = _project(grid_to_matrix(primary_grid, primary_keys), primary_keys, merged_keys)
    mask = primary != PLACEHOLDER_CHAR
    merged[mask] = primary[mask]
    return matrix_to_grid(merged, merged_keys)
