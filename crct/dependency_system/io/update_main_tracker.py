# io/update_main_tracker.py

"""
IO module for main tracker specific data, including key filtering
and dependency aggregation logic.
"""
import os
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple
import logging

import numpy as np

from crct.dependency_system.core.dependency_grid import (
    DIAGONAL_CHAR, EMPTY_CHAR, NO_DEPENDENCY_CHAR, PLACEHOLDER_CHAR, GridError, grid_to_matrix
)
from crct.dependency_system.core.key_manager import KeyInfo, build_key_path_map, sort_key_strings_hierarchically
from crct.dependency_system.io.update_mini_tracker import get_mini_tracker_path
from crct.dependency_system.utils.config_manager import ConfigManager
from crct.dependency_system.utils.path_utils import is_subpath, join_paths, normalize_path

logger = logging.getLogger(__name__)

MAIN_TRACKER_FILENAME = "module_relationship_tracker.md"
_NON_EDGE_CHARS = [PLACEHOLDER_CHAR, DIAGONAL_CHAR, EMPTY_CHAR, NO_DEPENDENCY_CHAR]

# --- Main Tracker Path ---

def get_main_tracker_path(project_root: str) -> str:
    """Gets the path to the main tracker file (module_relationship_tracker.md)."""
    memory_dir = ConfigManager().get_path("memory_dir")
    return join_paths(memory_dir, MAIN_TRACKER_FILENAME)

# --- Key Filtering Logic ---

def main_key_filter(project_root: str, path_to_key_info: Dict[str, KeyInfo]) -> Dict[str, str]:
    """
    Logic for determining which keys (representing directories) to include
    in the main tracker. Includes only directories within configured code roots.
    """
    code_roots = [join_paths(project_root, p) for p in ConfigManager().get_code_root_directories()]
    if not code_roots:
        logger.warning("No code root directories defined for main tracker key filtering.")
        return {}

    modules = [ki for path, ki in path_to_key_info.items()
               if ki.is_directory and any(is_subpath(path, root) for root in code_roots)]
    filtered_keys = build_key_path_map(modules, "main tracker")
    logger.debug(f"Main key filter selected {len(filtered_keys)} module keys.")
    return filtered_keys

# --- Dependency Aggregation Logic ---

def _module_for_path(path: str, module_paths: Set[str]) -> Optional[str]:
    """Nearest enclosing module directory of path (the path itself if it is a module)."""
    current = normalize_path(path)
    while current:
        if current in module_paths:
            return current
        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent
    return None


def aggregate_dependencies(project_root: str,
                           path_to_key_info: Dict[str, KeyInfo],
                           module_keys: Dict[str, str]) -> Dict[str, List[Tuple[str, str]]]:
    """
    Aggregates dependencies recorded in mini-trackers up to module level.

    An edge between two items of different modules becomes a suggestion between
    the modules. When several edges map onto the same module pair, the character
    with the highest configured priority wins; '<' and '>' of equal priority
    combine into 'x'.

    Args:
        project_root: Absolute path to the project root.
        path_to_key_info: Global path -> KeyInfo map.
        module_keys: Main tracker keys {key: module path}.

    Returns:
        A dictionary where keys are source module keys and values are lists of
        (target_module_key, aggregated_dependency_char) tuples.
    """
    from crct.dependency_system.io.tracker_io import TrackerFormatError, read_tracker_file

    if not module_keys:
        logger.warning("No module keys provided for main tracker aggregation.")
        return {}

    get_priority = ConfigManager().get_char_priority
    path_to_module_key = {path: key for key, path in module_keys.items()}
    module_paths = set(path_to_module_key)
    aggregated: Dict[str, Dict[str, Tuple[str, int]]] = defaultdict(dict)

    processed_mini_trackers = 0
    for module_path in sorted(module_paths):
        mini_tracker_path = get_mini_tracker_path(module_path)
        try:
            mini_data = read_tracker_file(mini_tracker_path)
        except (OSError, TrackerFormatError, GridError) as e:
            logger.error(f"Error reading mini tracker {mini_tracker_path} during aggregation: {e}")
            continue
        if mini_data is None or not mini_data.keys:
            continue
        processed_mini_trackers += 1

        mini_keys = sort_key_strings_hierarchically(list(mini_data.keys))
        matrix = grid_to_matrix(mini_data.grid, mini_keys)
        rows, cols = np.nonzero(~np.isin(matrix, _NON_EDGE_CHARS))
        for row_idx, col_idx in zip(rows.tolist(), cols.tolist()):
            dep_char = str(matrix[row_idx, col_idx])
            source_module = _module_for_path(mini_data.keys[mini_keys[row_idx]], module_paths)
            target_module = _module_for_path(mini_data.keys[mini_keys[col_idx]], module_paths)
            if not source_module or not target_module or source_module == target_module:
                continue
            source_key = path_to_module_key[source_module]
            target_key = path_to_module_key[target_module]
            priority = get_priority(dep_char)
            stored_char, stored_priority = aggregated[source_key].get(target_key, (PLACEHOLDER_CHAR, -1))
            if priority > stored_priority:
                aggregated[source_key][target_key] = (dep_char, priority)
            elif priority == stored_priority and {dep_char, stored_char} == {'<', '>'}:
                logger.debug(f"Aggregation: merging '{stored_char}'/'{dep_char}' to 'x' for {source_key}->{target_key}")
                aggregated[source_key][target_key] = ('x', priority)

    logger.info(f"Aggregated module dependencies from {processed_mini_trackers} mini-trackers.")
    return {source_key: sorted((target_key, char) for target_key, (char, _) in targets.items())
            for source_key, targets in aggregated.items()}

# --- Data Structure Export ---

# This structure is imported by tracker_io.py to dispatch calls
main_tracker_data = {
    "key_filter": main_key_filter,
    "dependency_aggregation": aggregate_dependencies,
    "get_tracker_path": get_main_tracker_path
}
