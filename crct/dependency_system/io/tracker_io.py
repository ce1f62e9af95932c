# io/tracker_io.py

"""
IO module for tracker file operations.
Handles reading, writing, updating, merging and exporting tracker files.

A tracker holds one ordered key -> path map and one compressed grid over the
hierarchically sorted key list. Main and doc trackers consist of the tracker
block alone; mini-trackers embed the block between marker lines inside a
free-form markdown document whose other content is preserved on rewrite.
"""

import csv
import datetime
import io
import json
import os
import re
import shutil
import tempfile
from typing import Dict, List, NamedTuple, Optional, Tuple

from crct.dependency_system.core.key_manager import (
    KeyInfo, resolve_key, sort_key_strings_hierarchically, validate_key
)
from crct.dependency_system.core.dependency_grid import (
    DIAGONAL_CHAR, EMPTY_CHAR, NO_DEPENDENCY_CHAR, PLACEHOLDER_CHAR, DependencyType,
    add_dependency, create_initial_grid, decompress, ensure_valid_grid, get_char_at,
    merge_grids, reindex_grid, remove_dependency
)
from crct.dependency_system.utils.cache_manager import cached, tracker_modified
from crct.dependency_system.utils.config_manager import ConfigManager
from crct.dependency_system.utils.path_utils import normalize_path

from crct.dependency_system.io.update_doc_tracker import doc_tracker_data
from crct.dependency_system.io.update_main_tracker import main_tracker_data
from crct.dependency_system.io.update_mini_tracker import get_mini_tracker_data, is_mini_tracker_path

import logging
logger = logging.getLogger(__name__)

KEY_DEFINITIONS_START = "---KEY_DEFINITIONS_START---"
KEY_DEFINITIONS_END = "---KEY_DEFINITIONS_END---"
GRID_START = "---DEPENDENCY_GRID_START---"
GRID_END = "---DEPENDENCY_GRID_END---"
LAST_KEY_EDIT_PREFIX = "Last Key Edit:"
LAST_GRID_EDIT_PREFIX = "Last Grid Edit:"

EXPORT_FORMATS = ("json", "csv", "dot")
BACKUPS_TO_KEEP = 2

# Edge styling for DOT export
_DOT_EDGE_STYLES = {
    '>': 'color="blue"',
    '<': 'color="green"',
    'x': 'color="red", dir=both',
    'd': 'color="purple", style=dashed',
    's': 'color="orange", style=dotted',
    'S': 'color="orange", style=dashed',
}
_NON_EDGE_CHARS = (DIAGONAL_CHAR, PLACEHOLDER_CHAR, EMPTY_CHAR, NO_DEPENDENCY_CHAR)


class TrackerFormatError(ValueError):
    """Malformed tracker text (markers, key grammar, duplicate or undefined keys)."""


class TrackerData(NamedTuple):
    """Parsed content of one tracker."""
    keys: Dict[str, str]           # key -> normalized path, in file order
    grid: Dict[str, str]           # key -> compressed row
    last_key_edit: str = ""
    last_grid_edit: str = ""


class MiniTrackerParts(NamedTuple):
    """A mini-tracker document split around its tracker block."""
    prefix: str  # everything up to and including the start marker line
    block: str   # text between the marker lines
    suffix: str  # the end marker line and everything after it


# --- Parsing ---

def _find_marker(lines: List[str], marker: str) -> int:
    positions = [i for i, line in enumerate(lines) if line.strip() == marker]
    if not positions:
        raise TrackerFormatError(f"Missing marker {marker}")
    if len(positions) > 1:
        raise TrackerFormatError(f"Marker {marker} appears {len(positions)} times")
    return positions[0]


def parse_tracker_text(text: str) -> TrackerData:
    """
    Parse a tracker block (key definitions, metadata lines and grid).

    Args:
        text: Tracker block text
    Returns:
        TrackerData with keys in file order
    Raises:
        TrackerFormatError: On missing or misordered markers, invalid keys,
            duplicate keys, or grid rows for keys that are not defined
    """
    lines = text.splitlines()
    key_start = _find_marker(lines, KEY_DEFINITIONS_START)
    key_end = _find_marker(lines, KEY_DEFINITIONS_END)
    grid_start = _find_marker(lines, GRID_START)
    grid_end = _find_marker(lines, GRID_END)
    if not key_start < key_end < grid_start < grid_end:
        raise TrackerFormatError("Tracker markers are out of order")

    keys: Dict[str, str] = {}
    for line in lines[key_start + 1:key_end]:
        if not line.strip():
            continue
        key, sep, path = line.partition(":")
        key = key.strip()
        if not sep or not path.strip():
            raise TrackerFormatError(f"Malformed key definition line: {line!r}")
        if not validate_key(key):
            raise TrackerFormatError(f"Invalid key '{key}' in key definitions")
        if key in keys:
            raise TrackerFormatError(f"Duplicate key '{key}' in key definitions")
        keys[key] = normalize_path(path.strip())

    last_key_edit = last_grid_edit = ""
    for line in lines[key_end + 1:grid_start]:
        stripped = line.strip()
        if stripped.startswith(LAST_KEY_EDIT_PREFIX):
            last_key_edit = stripped[len(LAST_KEY_EDIT_PREFIX):].strip()
        elif stripped.startswith(LAST_GRID_EDIT_PREFIX):
            last_grid_edit = stripped[len(LAST_GRID_EDIT_PREFIX):].strip()

    grid: Dict[str, str] = {}
    for line in lines[grid_start + 1:grid_end]:
        if not line.strip():
            continue
        key, sep, row = line.partition("=")
        key = key.strip()
        if not sep:
            raise TrackerFormatError(f"Malformed grid line: {line!r}")
        if key not in keys:
            raise TrackerFormatError(f"Grid row for undefined key '{key}'")
        if key in grid:
            raise TrackerFormatError(f"Duplicate grid row for key '{key}'")
        grid[key] = row.strip()

    return TrackerData(keys, grid, last_key_edit, last_grid_edit)


def format_tracker_block(data: TrackerData) -> str:
    """Render a tracker block with keys and rows in hierarchical order."""
    sorted_keys = sort_key_strings_hierarchically(list(data.keys))
    out = [KEY_DEFINITIONS_START]
    out.extend(f"{key}: {data.keys[key]}" for key in sorted_keys)
    out.append(KEY_DEFINITIONS_END)
    out.append("")
    out.append(f"{LAST_KEY_EDIT_PREFIX} {data.last_key_edit}".rstrip())
    out.append(f"{LAST_GRID_EDIT_PREFIX} {data.last_grid_edit}".rstrip())
    out.append("")
    out.append(GRID_START)
    out.extend(f"{key} = {data.grid[key]}" for key in sorted_keys)
    out.append(GRID_END)
    return "\n".join(out) + "\n"


def _marker_line_re(marker: str) -> "re.Pattern":
    return re.compile(rf"^[ \t]*{re.escape(marker)}[ \t]*\r?$", re.MULTILINE)


def split_mini_tracker(text: str) -> Optional[MiniTrackerParts]:
    """
    Split a mini-tracker document around its embedded tracker block.

    Returns:
        MiniTrackerParts, or None if the document has no markers at all
    Raises:
        TrackerFormatError: If only one marker is present, a marker repeats,
            or the end marker precedes the start marker
    """
    start_marker, end_marker = get_mini_tracker_data()["markers"]
    starts = list(_marker_line_re(start_marker).finditer(text))
    ends = list(_marker_line_re(end_marker).finditer(text))
    if not starts and not ends:
        return None
    if len(starts) != 1 or len(ends) != 1:
        raise TrackerFormatError(
            f"Mini-tracker markers must appear exactly once each (found {len(starts)} start, {len(ends)} end)")
    start, end = starts[0], ends[0]
    if end.start() < start.end():
        raise TrackerFormatError("Mini-tracker end marker precedes start marker")

    newline_idx = text.find("\n", start.end())
    block_start = len(text) if newline_idx == -1 else newline_idx + 1
    return MiniTrackerParts(text[:block_start], text[block_start:end.start()], text[end.start():])


def join_mini_tracker(parts: MiniTrackerParts, block: str) -> str:
    """Reassemble a mini-tracker document around a new block."""
    return parts.prefix + block + parts.suffix


# --- Reading ---

def _read_text(path: str) -> str:
    try:
        with open(path, 'r', encoding='utf-8', newline='') as f:
            return f.read()
    except UnicodeDecodeError as e:
        raise TrackerFormatError(f"Tracker file {path} is not valid UTF-8: {e}") from e


@cached("tracker_data", key_func=lambda path, mtime_ns, size: f"tracker_data:{path}:{mtime_ns}:{size}")
def _read_tracker_cached(norm_path: str, mtime_ns: int, size: int) -> Optional[TrackerData]:
    text = _read_text(norm_path)
    if is_mini_tracker_path(norm_path):
        parts = split_mini_tracker(text)
        if parts is None or not parts.block.strip():
            logger.debug(f"Mini-tracker '{norm_path}' has no tracker block yet")
            return None
        text = parts.block
    data = parse_tracker_text(text)
    ensure_valid_grid(data.grid, sort_key_strings_hierarchically(list(data.keys)))
    return data


def read_tracker_file(tracker_path: str) -> Optional[TrackerData]:
    """
    Read and validate a tracker file.

    Args:
        tracker_path: Path to the tracker file
    Returns:
        TrackerData, or None if the file does not exist (or is a mini-tracker
        document without a tracker block)
    Raises:
        TrackerFormatError: If the tracker text is malformed or not UTF-8
        GridValidationError: If the grid does not match the key definitions
    """
    norm_path = normalize_path(tracker_path)
    if not os.path.isfile(norm_path):
        return None
    stat = os.stat(norm_path)
    data = _read_tracker_cached(norm_path, stat.st_mtime_ns, stat.st_size)
    if data is None:
        return None
    # Callers get their own dicts; the cached value stays untouched
    return TrackerData(dict(data.keys), dict(data.grid), data.last_key_edit, data.last_grid_edit)


# --- Writing ---

def _atomic_write(path: str, content: str) -> None:
    """Write content to a temporary sibling file and move it over path."""
    dirname = os.path.dirname(path)
    if dirname:
        os.makedirs(dirname, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=dirname or None)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
            f.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def write_tracker_file(tracker_path: str, keys: Dict[str, str], grid: Dict[str, str],
                       last_key_edit: str = "", last_grid_edit: str = "") -> str:
    """
    Validate and write a tracker file.

    Paths are written normalized, the same form parse_tracker_text returns.
    For mini-trackers only the block between the markers is replaced; a document
    without markers gets them appended, and a missing file is created from the
    mini-tracker template.

    Args:
        tracker_path: Path to the tracker file
        keys: Key -> path map
        grid: Key -> compressed row map over the sorted keys
        last_key_edit: Free-text key metadata
        last_grid_edit: Free-text grid metadata
    Returns:
        Normalized path of the written file
    Raises:
        TrackerFormatError: On invalid keys or unpaired mini-tracker markers
        GridValidationError: If the grid is invalid (the file is left untouched)
    """
    tracker_path = normalize_path(tracker_path)
    invalid = [k for k in keys if not validate_key(k)]
    if invalid:
        raise TrackerFormatError(f"Invalid keys for {tracker_path}: {invalid}")
    ensure_valid_grid(grid, sort_key_strings_hierarchically(list(keys)))
    keys = {key: normalize_path(path) for key, path in keys.items()}

    block = format_tracker_block(TrackerData(keys, grid, last_key_edit, last_grid_edit))
    if is_mini_tracker_path(tracker_path):
        mini_data = get_mini_tracker_data()
        if os.path.exists(tracker_path):
            existing_text = _read_text(tracker_path)
            parts = split_mini_tracker(existing_text)
            if parts is None:
                start_marker, end_marker = mini_data["markers"]
                separator = "" if not existing_text or existing_text.endswith("\n") else "\n"
                content = f"{existing_text}{separator}\n{start_marker}\n{block}{end_marker}\n"
            else:
                content = join_mini_tracker(parts, block)
        else:
            content = mini_data["render_template"](os.path.dirname(tracker_path), block)
    else:
        content = block

    _atomic_write(tracker_path, content)
    tracker_modified(tracker_path)
    logger.info(f"Wrote tracker file: {tracker_path} with {len(keys)} keys.")
    return tracker_path


# --- Backup ---

def backup_tracker_file(tracker_path: str) -> str:
    """
    Create a backup of a tracker file, keeping the 2 most recent backups.

    Args:
        tracker_path: Path to the tracker file
    Returns:
        Path to the backup file or empty string if there was nothing to back up
    """
    tracker_path = normalize_path(tracker_path)
    if not os.path.exists(tracker_path):
        logger.warning(f"Tracker file not found for backup: {tracker_path}")
        return ""

    backup_dir = ConfigManager().get_path("backups_dir")
    os.makedirs(backup_dir, exist_ok=True)
    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    base_name = os.path.basename(tracker_path)
    backup_path = normalize_path(os.path.join(backup_dir, f"{base_name}.{timestamp}.bak"))
    shutil.copy2(tracker_path, backup_path)
    logger.info(f"Backed up tracker '{base_name}' to: {os.path.basename(backup_path)}")

    # --- Cleanup old backups ---
    backup_re = re.compile(rf"^{re.escape(base_name)}\.(\d{{8}}_\d{{6}}_\d{{6}})\.bak$")
    backups: List[Tuple[str, str]] = []
    for filename in os.listdir(backup_dir):
        match = backup_re.match(filename)
        if match:
            backups.append((match.group(1), os.path.join(backup_dir, filename)))
    backups.sort(reverse=True)  # timestamps sort lexically, newest first
    for _, old_backup in backups[BACKUPS_TO_KEEP:]:
        try:
            os.remove(old_backup)
        except OSError as e:
            logger.error(f"Error deleting old backup {old_backup}: {e}")
    return backup_path


# --- Tracker paths ---

def get_tracker_path(project_root: str, tracker_type: str = "main", module_path: Optional[str] = None) -> str:
    """
    Get the path to the appropriate tracker file based on type.

    Args:
        project_root: Project root directory
        tracker_type: Type of tracker ('main', 'doc', or 'mini')
        module_path: The module path (required for mini-trackers)
    Returns:
        Normalized path to the tracker file
    """
    project_root = normalize_path(project_root)
    if tracker_type == "main":
        return normalize_path(main_tracker_data["get_tracker_path"](project_root))
    elif tracker_type == "doc":
        return normalize_path(doc_tracker_data["get_tracker_path"](project_root))
    elif tracker_type == "mini":
        if not module_path:
            raise ValueError("module_path must be provided for mini-trackers")
        return normalize_path(get_mini_tracker_data()["get_tracker_path"](module_path))
    raise ValueError(f"Unknown tracker type: {tracker_type}")


def tracker_type_for_path(tracker_path: str) -> str:
    """Infer 'mini', 'doc' or 'main' from a tracker file name."""
    norm_path = normalize_path(tracker_path)
    if is_mini_tracker_path(norm_path):
        return "mini"
    project_root = ConfigManager().project_root
    if norm_path == get_tracker_path(project_root, "doc"):
        return "doc"
    return "main"


# --- Update ---

def _scope_keys(tracker_type: str, path_to_key_info: Dict[str, KeyInfo], module_path: Optional[str]) -> Dict[str, str]:
    project_root = ConfigManager().project_root
    if tracker_type == "main":
        return main_tracker_data["key_filter"](project_root, path_to_key_info)
    elif tracker_type == "doc":
        return doc_tracker_data["key_filter"](project_root, path_to_key_info)
    elif tracker_type == "mini":
        if not module_path:
            raise ValueError("module_path must be provided for mini-trackers")
        return get_mini_tracker_data()["key_filter"](module_path, path_to_key_info)
    raise ValueError(f"Unknown tracker type: {tracker_type}")


def _should_apply(current: str, suggested: str, force: bool) -> bool:
    """Decide whether a suggested character replaces the current cell."""
    if suggested == current or suggested == PLACEHOLDER_CHAR:
        return False
    if force:
        return True
    if current == PLACEHOLDER_CHAR:
        return True
    if current == NO_DEPENDENCY_CHAR:
        return False
    get_priority = ConfigManager().get_char_priority
    return get_priority(suggested) > get_priority(current)


def _resolve_foreign_key(key: str, path_to_key_info: Dict[str, KeyInfo], context_path: Optional[str]) -> Optional[KeyInfo]:
    candidates = resolve_key(key, path_to_key_info, context_path)
    if len(candidates) == 1:
        return candidates[0]
    if not candidates:
        logger.warning(f"Foreign key '{key}' not found in global key map; skipping suggestion.")
    else:
        logger.warning(f"Foreign key '{key}' is ambiguous ({len(candidates)} paths); skipping suggestion.")
    return None


def update_tracker(output_file: str,
                   path_to_key_info: Dict[str, KeyInfo],
                   tracker_type: str = "main",
                   suggestions: Optional[Dict[str, List[Tuple[str, str]]]] = None,
                   new_keys: Optional[List[KeyInfo]] = None,
                   force_apply_suggestions: bool = False,
                   module_path: Optional[str] = None) -> TrackerData:
    """
    Reconcile a tracker with the current global key map and apply suggested edges.

    Existing cells follow their paths when keys were renumbered; entries whose
    paths disappeared are dropped. Mini-trackers keep foreign keys and may pull
    in new ones for suggestion targets outside their scope.

    Args:
        output_file: Tracker file path
        path_to_key_info: Current global path -> KeyInfo map
        tracker_type: 'main', 'doc' or 'mini'
        suggestions: {source_key: [(target_key, dep_char), ...]}
        new_keys: KeyInfo objects created by the latest regeneration (for reporting)
        force_apply_suggestions: Overwrite any differing cell with the suggestion
        module_path: Directory of a mini-tracker
    Returns:
        The tracker data as written (or as found, if nothing changed)
    """
    output_file = normalize_path(output_file)
    scope = _scope_keys(tracker_type, path_to_key_info, module_path)
    existing = read_tracker_file(output_file)

    # --- Reconcile keys ---
    final_keys: Dict[str, str] = dict(scope)
    path_to_final_key = {path: key for key, path in final_keys.items()}
    old_key_for: Dict[str, str] = {}  # final key -> key in the existing tracker
    dropped: List[str] = []
    for old_key, old_path in (existing.keys.items() if existing else []):
        ki = path_to_key_info.get(old_path)
        if ki is None:
            dropped.append(old_key)
            continue
        if old_path in path_to_final_key:
            old_key_for[path_to_final_key[old_path]] = old_key
            continue
        if tracker_type != "mini":
            dropped.append(old_key)
            continue
        if ki.key_string in final_keys:
            logger.warning(f"Key collision in {output_file}: foreign '{ki.key_string}' ({old_path}) "
                           f"clashes with '{final_keys[ki.key_string]}'; dropping the foreign entry.")
            dropped.append(old_key)
            continue
        final_keys[ki.key_string] = old_path
        path_to_final_key[old_path] = ki.key_string
        old_key_for[ki.key_string] = old_key
    if dropped:
        logger.info(f"Dropping {len(dropped)} stale keys from {os.path.basename(output_file)}: {', '.join(dropped)}")

    sorted_keys = sort_key_strings_hierarchically(list(final_keys))
    if existing and existing.keys:
        grid = reindex_grid(existing.grid, sort_key_strings_hierarchically(list(existing.keys)),
                            sorted_keys, old_key_for)
    else:
        grid = create_initial_grid(sorted_keys)
    assigned = [k for k in sorted_keys if k not in old_key_for]

    # --- Apply suggestions ---
    applied = 0
    for source_key, targets in (suggestions or {}).items():
        if source_key not in final_keys:
            logger.debug(f"Suggestion source '{source_key}' not in {os.path.basename(output_file)}; skipping.")
            continue
        for target_key, dep_char in targets:
            try:
                dep = DependencyType.from_char(dep_char)
            except ValueError as e:
                logger.warning(f"Skipping suggestion {source_key} -> {target_key}: {e}")
                continue
            if dep is DependencyType.DIAGONAL or target_key == source_key:
                logger.debug(f"Skipping self/diagonal suggestion {source_key} -> {target_key} ('{dep.value}')")
                continue
            if target_key not in final_keys:
                if tracker_type != "mini":
                    logger.debug(f"Suggestion target '{target_key}' not in {os.path.basename(output_file)}; skipping.")
                    continue
                foreign = _resolve_foreign_key(target_key, path_to_key_info, module_path)
                if foreign is None:
                    continue
                if foreign.norm_path in path_to_final_key:
                    logger.warning(f"Path of foreign key '{target_key}' is already tracked as "
                                   f"'{path_to_final_key[foreign.norm_path]}'; skipping suggestion.")
                    continue
                final_keys[target_key] = foreign.norm_path
                path_to_final_key[foreign.norm_path] = target_key
                grown_keys = sort_key_strings_hierarchically(list(final_keys))
                grid = reindex_grid(grid, sorted_keys, grown_keys)
                sorted_keys = grown_keys
                assigned.append(target_key)
                logger.info(f"Added foreign key '{target_key}' ({foreign.norm_path}) to {os.path.basename(output_file)}")

            current = get_char_at(grid[source_key], sorted_keys.index(target_key))
            if _should_apply(current, dep.value, force_apply_suggestions):
                grid = add_dependency(grid, source_key, target_key, sorted_keys, dep)
                applied += 1
                logger.debug(f"Applied suggestion {source_key} -> {target_key}: '{current}' -> '{dep.value}'")

    keys_changed = existing is None or final_keys != existing.keys
    grid_changed = existing is None or grid != existing.grid
    if not keys_changed and not grid_changed:
        logger.info(f"No changes for {output_file}; leaving it untouched.")
        return existing

    if new_keys:
        fresh = sorted({ki.key_string for ki in new_keys if ki.norm_path in path_to_final_key})
        if fresh:
            logger.debug(f"{len(fresh)} newly generated keys in {os.path.basename(output_file)}")

    if keys_changed:
        last_key_edit = f"Assigned keys: {', '.join(sort_key_strings_hierarchically(assigned))}" if assigned \
            else f"Removed keys: {', '.join(dropped)}"
    else:
        last_key_edit = existing.last_key_edit
    if applied:
        last_grid_edit = f"Applied {applied} suggestions ({'force' if force_apply_suggestions else 'normal'} mode)"
    elif existing is None:
        last_grid_edit = "Initial grid"
    elif grid_changed:
        last_grid_edit = f"Grid resized to {len(sorted_keys)} keys"
    else:
        last_grid_edit = existing.last_grid_edit

    ordered_keys = {key: final_keys[key] for key in sorted_keys}
    if existing is not None:
        backup_tracker_file(output_file)
    write_tracker_file(output_file, ordered_keys, grid, last_key_edit, last_grid_edit)
    return TrackerData(ordered_keys, grid, last_key_edit, last_grid_edit)


# --- File-level edits ---

def _read_existing(tracker_path: str) -> TrackerData:
    data = read_tracker_file(tracker_path)
    if data is None:
        raise FileNotFoundError(f"Tracker file not found: {tracker_path}")
    return data


def remove_key_from_tracker(tracker_path: str, key: str) -> TrackerData:
    """
    Remove one key from a tracker, keeping every other cell.

    Raises:
        FileNotFoundError: If the tracker does not exist
        KeyError: If the key is not defined in the tracker
    """
    data = _read_existing(tracker_path)
    if key not in data.keys:
        raise KeyError(f"Key '{key}' not found in tracker {tracker_path}")
    old_keys = sort_key_strings_hierarchically(list(data.keys))
    new_keys = [k for k in old_keys if k != key]
    grid = reindex_grid(data.grid, old_keys, new_keys)
    keys = {k: data.keys[k] for k in new_keys}

    backup_tracker_file(tracker_path)
    last_key_edit = f"Removed key: {key}"
    write_tracker_file(tracker_path, keys, grid, last_key_edit, data.last_grid_edit)
    logger.info(f"Removed key '{key}' ({data.keys[key]}) from {tracker_path}")
    return TrackerData(keys, grid, last_key_edit, data.last_grid_edit)


def remove_dependency_from_tracker(tracker_path: str, source_key: str, target_key: str) -> TrackerData:
    """
    Clear one cell of a tracker (sets it to '.').

    Raises:
        FileNotFoundError: If the tracker does not exist
        GridError: On diagonal cells or keys missing from the tracker
    """
    data = _read_existing(tracker_path)
    keys = sort_key_strings_hierarchically(list(data.keys))
    grid = remove_dependency(data.grid, source_key, target_key, keys)
    backup_tracker_file(tracker_path)
    last_grid_edit = f"Removed dependency {source_key} -> {target_key}"
    write_tracker_file(tracker_path, data.keys, grid, data.last_key_edit, last_grid_edit)
    return TrackerData(data.keys, grid, data.last_key_edit, last_grid_edit)


# --- Merge ---

def merge_trackers(primary_tracker_path: str, secondary_tracker_path: str,
                   output_path: Optional[str] = None) -> Optional[TrackerData]:
    """
    Merge two trackers into output_path (defaults to the primary).

    Keys are united; where both trackers define a key for different paths the
    primary wins. Each off-diagonal cell takes the primary character unless it
    is a placeholder, in which case the secondary character is used.

    Returns:
        Merged data, or None if neither tracker exists
    """
    primary_path = normalize_path(primary_tracker_path)
    secondary_path = normalize_path(secondary_tracker_path)
    output_path = normalize_path(output_path) if output_path else primary_path

    primary = read_tracker_file(primary_path)
    secondary = read_tracker_file(secondary_path)
    if primary is None and secondary is None:
        logger.error(f"Neither {primary_path} nor {secondary_path} exists; nothing to merge.")
        return None
    primary = primary or TrackerData({}, {})
    secondary = secondary or TrackerData({}, {})

    merged_keys = dict(primary.keys)
    primary_paths = set(primary.keys.values())
    kept_secondary: List[str] = []
    for key, path in secondary.keys.items():
        if key in merged_keys:
            if merged_keys[key] != path:
                logger.warning(f"Merge conflict for key '{key}': primary '{merged_keys[key]}' kept over secondary '{path}'")
            else:
                kept_secondary.append(key)
            continue
        if path in primary_paths:
            logger.warning(f"Merge conflict for path '{path}': secondary key '{key}' dropped in favour of the primary key")
            continue
        merged_keys[key] = path
        kept_secondary.append(key)

    secondary_sorted = sort_key_strings_hierarchically(list(secondary.keys))
    kept_sorted = sort_key_strings_hierarchically(kept_secondary)
    secondary_grid = secondary.grid
    if kept_sorted != secondary_sorted:
        secondary_grid = reindex_grid(secondary.grid, secondary_sorted, kept_sorted)

    merged_sorted = sort_key_strings_hierarchically(list(merged_keys))
    grid = merge_grids(primary.grid, sort_key_strings_hierarchically(list(primary.keys)),
                       secondary_grid, kept_sorted, merged_sorted)
    keys = {key: merged_keys[key] for key in merged_sorted}
    note = f"Merged from {os.path.basename(primary_path)} and {os.path.basename(secondary_path)}"

    if os.path.exists(output_path):
        backup_tracker_file(output_path)
    write_tracker_file(output_path, keys, grid, note, note)
    logger.info(f"Merged {primary_path} and {secondary_path} into {output_path} ({len(keys)} keys)")
    return TrackerData(keys, grid, note, note)


# --- Export ---

def _iter_edges(data: TrackerData):
    """Yield (source_key, target_key, char) for every recorded relation."""
    keys = sort_key_strings_hierarchically(list(data.keys))
    for key in keys:
        row = decompress(data.grid[key])
        for col_idx, char in enumerate(row):
            if char not in _NON_EDGE_CHARS:
                yield key, keys[col_idx], char


def _dot_escape(value: str) -> str:
    return value.replace('\\', '\\\\').replace('"', '\\"')


def _dot_quote(value: str) -> str:
    return f'"{_dot_escape(value)}"'


def _export_dot(data: TrackerData) -> str:
    out = ["digraph Dependencies {", "  rankdir=LR;", "  node [shape=box];"]
    for key in sort_key_strings_hierarchically(list(data.keys)):
        name = _dot_escape(os.path.basename(data.keys[key]))
        out.append(f'  {_dot_quote(key)} [label="{key}\\n{name}"];')
    for source, target, char in _iter_edges(data):
        if char == '<':
            # Drawn in the direction of the dependency
            source, target = target, source
        style = _DOT_EDGE_STYLES.get(char, 'color="black"')
        out.append(f'  {_dot_quote(source)} -> {_dot_quote(target)} [label={_dot_quote(char)}, {style}];')
    out.append("}")
    return "\n".join(out) + "\n"


def _export_csv(data: TrackerData) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["Source", "Target", "Relation"])
    for edge in _iter_edges(data):
        writer.writerow(edge)
    return buffer.getvalue()


def export_tracker(tracker_path: str, output_format: str = "json", output_path: Optional[str] = None) -> str:
    """
    Export a tracker as JSON, CSV or Graphviz DOT.

    Args:
        tracker_path: Path to the tracker file
        output_format: 'json', 'csv' or 'dot'
        output_path: Optional file to write the export to
    Returns:
        The exported text
    Raises:
        ValueError: For unsupported formats
        FileNotFoundError: If the tracker does not exist
    """
    if output_format not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format '{output_format}'. Choose from {', '.join(EXPORT_FORMATS)}.")
    data = _read_existing(tracker_path)

    if output_format == "json":
        text = json.dumps(data._asdict(), indent=2, ensure_ascii=False) + "\n"
    elif output_format == "csv":
        text = _export_csv(data)
    else:
        text = _export_dot(data)

    if output_path:
        _atomic_write(normalize_path(output_path), text)
        logger.info(f"Exported {tracker_path} as {output_format} to {output_path}")
    return text
