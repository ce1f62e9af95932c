# utils/tracker_utils.py

"""
Cross-tracker helpers: locating tracker files and resolving every relation a
key takes part in across all of them.
"""

import glob
import os
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set

import numpy as np

from .config_manager import ConfigManager
from .path_utils import join_paths, normalize_path
from crct.dependency_system.core.dependency_grid import (
    DIAGONAL_CHAR, EMPTY_CHAR, NO_DEPENDENCY_CHAR, PLACEHOLDER_CHAR, QUERY_TYPES,
    DependencyType, GridError, get_dependencies, grid_to_matrix
)
from crct.dependency_system.core.key_manager import MINI_TRACKER_SUFFIX, sort_key_strings_hierarchically
from crct.dependency_system.io.tracker_io import TrackerFormatError, get_tracker_path, read_tracker_file

import logging
logger = logging.getLogger(__name__)

# Column cells that do not express a relation
_COLUMN_SKIP_CHARS = [PLACEHOLDER_CHAR, EMPTY_CHAR, DIAGONAL_CHAR, NO_DEPENDENCY_CHAR]


def find_all_tracker_paths(project_root: Optional[str] = None) -> List[str]:
    """
    Finds all main, doc, and mini tracker files in the project.

    Args:
        project_root: Project root (defaults to the configured one)
    Returns:
        Sorted list of existing tracker paths
    """
    config = ConfigManager()
    project_root = normalize_path(project_root) if project_root else config.project_root
    all_tracker_paths: Set[str] = set()

    for tracker_type in ("main", "doc"):
        tracker_path = get_tracker_path(project_root, tracker_type)
        if os.path.exists(tracker_path):
            all_tracker_paths.add(tracker_path)
        else:
            logger.debug(f"{tracker_type.capitalize()} tracker not found at: {tracker_path}")

    code_roots = config.get_code_root_directories()
    if not code_roots:
        logger.warning("No code_root_directories configured. Cannot find mini trackers.")
    for code_root in code_roots:
        code_root_abs = join_paths(project_root, code_root)
        pattern = os.path.join(code_root_abs, '**', f'*{MINI_TRACKER_SUFFIX}')
        found = {normalize_path(p) for p in glob.glob(pattern, recursive=True)}
        all_tracker_paths.update(found)
        logger.debug(f"Found {len(found)} mini trackers under '{code_root}'.")

    logger.info(f"Found {len(all_tracker_paths)} total tracker files.")
    return sorted(all_tracker_paths)


class ResolvedDependencies:
    """
    Relations of one key gathered from several trackers.

    For every relation type, maps each related key to the set of tracker
    files that assert the relation.
    """

    def __init__(self, key: str):
        self.key = key
        self._by_type: Dict[DependencyType, Dict[str, Set[str]]] = {dep: defaultdict(set) for dep in QUERY_TYPES}

    def add(self, dep_type: DependencyType, target_key: str, origin: str) -> None:
        self._by_type[dep_type][target_key].add(origin)

    def __getitem__(self, dep_type: DependencyType) -> Dict[str, Set[str]]:
        return dict(self._by_type[dep_type])

    def keys_for(self, dep_type: DependencyType) -> List[str]:
        """Related keys of one type, hierarchically sorted."""
        return sort_key_strings_hierarchically(list(self._by_type[dep_type]))

    def origins(self, dep_type: DependencyType, target_key: str) -> Set[str]:
        return set(self._by_type[dep_type].get(target_key, ()))

    def as_dict(self) -> Dict[str, Dict[str, List[str]]]:
        """Plain representation: {char: {target_key: [origin, ...]}}."""
        return {dep.value: {target: sorted(self._by_type[dep][target]) for target in self.keys_for(dep)}
                for dep in QUERY_TYPES}

    def is_empty(self) -> bool:
        return not any(self._by_type.values())


def resolve_dependencies(key: str, tracker_paths: Iterable[str], key_path: Optional[str] = None) -> ResolvedDependencies:
    """
    Collect every relation of a key across tracker files.

    Outbound relations come from the key's own row. Inbound relations come from
    the key's column in every other row, with '>' and '<' flipped so they read
    from this key's point of view; other relation types are carried through
    unchanged.

    Args:
        key: Key string to resolve
        tracker_paths: Tracker files to scan
        key_path: If given, only trackers mapping the key to this path are used
    Returns:
        ResolvedDependencies with tracker origins per relation
    """
    resolved = ResolvedDependencies(key)
    norm_key_path = normalize_path(key_path) if key_path else None

    for tracker_path in tracker_paths:
        try:
            data = read_tracker_file(tracker_path)
        except (OSError, TrackerFormatError, GridError) as e:
            logger.error(f"Skipping unreadable tracker {tracker_path}: {e}")
            continue
        if data is None or key not in data.keys:
            continue
        if norm_key_path and data.keys[key] != norm_key_path:
            logger.debug(f"Key '{key}' in {tracker_path} refers to {data.keys[key]}; skipping.")
            continue

        origin = normalize_path(tracker_path)
        keys = sort_key_strings_hierarchically(list(data.keys))
        for dep_type, targets in get_dependencies(data.grid, key, keys).items():
            for target in targets:
                resolved.add(dep_type, target, origin)

        key_idx = keys.index(key)
        column = grid_to_matrix(data.grid, keys)[:, key_idx]
        for row_idx in np.nonzero(~np.isin(column, _COLUMN_SKIP_CHARS))[0].tolist():
            if row_idx == key_idx:
                continue
            dep_type = DependencyType.from_char(str(column[row_idx])).reversed()
            resolved.add(dep_type, keys[row_idx], origin)

    return resolved
