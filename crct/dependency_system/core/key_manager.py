"""
Core module for key management.
Handles hierarchical key generation, validation, sorting, resolution
and persistence of the global key map.
"""

import json
import os
import re
import shutil
import threading
from typing import Dict, List, NamedTuple, Optional, Set, Tuple

from crct.dependency_system.utils.batch_processor import check_cancelled
from crct.dependency_system.utils.config_manager import ConfigManager
from crct.dependency_system.utils.path_utils import normalize_path, HIERARCHICAL_KEY_PATTERN, KEY_PATTERN

import logging
logger = logging.getLogger(__name__)

# Constants
ASCII_A = 65  # 'A'
ASCII_a = 97  # 'a'
ALPHABET_SIZE = 26
MINI_TRACKER_SUFFIX = "_module.md"

GLOBAL_KEY_MAP_FILENAME = "global_key_map.json"
OLD_GLOBAL_KEY_MAP_FILENAME = "global_key_map_old.json"

_TIER_UPPER_RE = re.compile(r'^[1-9]\d*[A-Z]$')
_TIER_UPPER_LOWER_RE = re.compile(r'^[1-9]\d*[A-Z][a-z]$')
_KEY_RE = re.compile(HIERARCHICAL_KEY_PATTERN)
_KEY_PARTS_RE = re.compile(KEY_PATTERN)


class KeyInfo(NamedTuple):
    """One tracked path and its hierarchical key."""
    key_string: str
    norm_path: str
    parent_path: Optional[str]
    parent_key: Optional[str]
    tier: int
    is_directory: bool


class KeyGenerationError(Exception):
    """Raised when a directory needs more letters than the alphabet has."""
    def __init__(self, message: str, parent_key: Optional[str] = None, parent_path: Optional[str] = None):
        super().__init__(message)
        self.parent_key = parent_key
        self.parent_path = parent_path


class KeyAmbiguityError(Exception):
    """Raised when a key maps to several paths and no context singles one out."""
    def __init__(self, key: str, candidates: List[KeyInfo]):
        paths = ", ".join(ki.norm_path for ki in candidates)
        super().__init__(f"Key '{key}' is ambiguous: {paths}")
        self.key = key
        self.candidates = candidates


def validate_key(key: str) -> bool:
    """
    Validate if a key follows the hierarchical key format.

    Args:
        key: The hierarchical key to validate
    Returns:
        True if valid, False otherwise
    """
    return isinstance(key, str) and bool(_KEY_RE.match(key))


def _key_sort_parts(key: str) -> List[Tuple[int, object]]:
    # Numeric runs compare numerically and sort before alphabetic runs at the same position
    return [(0, int(p)) if p.isdigit() else (1, p) for p in _KEY_PARTS_RE.findall(key)]


def sort_key_strings_hierarchically(keys: List[str]) -> List[str]:
    """
    Sort key strings hierarchically (e.g. 1A, 1A1, 1A2, 1A10, 1Aa, 1B, 2A).

    Args:
        keys: Key strings to sort
    Returns:
        New sorted list
    """
    return sorted((k for k in keys if k), key=_key_sort_parts)


def sort_keys(key_infos: List[KeyInfo]) -> List[KeyInfo]:
    """Sort KeyInfo objects by key string, then by path."""
    return sorted(key_infos, key=lambda ki: (_key_sort_parts(ki.key_string), ki.norm_path))


def generate_keys(root_paths: List[str], excluded_dirs: Optional[Set[str]] = None,
                  excluded_extensions: Optional[Set[str]] = None,
                  previous_map: Optional[Dict[str, KeyInfo]] = None,
                  cancel_event: Optional[threading.Event] = None) -> Tuple[Dict[str, KeyInfo], List[KeyInfo]]:
    """
    Generate hierarchical keys for files and directories.

    Args:
        root_paths: Root directory paths; each receives the next tier-1 letter
        excluded_dirs: Directory/file names to skip (defaults to config)
        excluded_extensions: File extensions to skip (defaults to config)
        previous_map: Earlier path -> KeyInfo map, used to decide which keys are new
        cancel_event: Cooperative cancel signal, checked between directory entries
    Returns:
        Tuple containing:
        - Dictionary mapping normalized paths to KeyInfo
        - List of KeyInfo whose path was untracked or whose key changed
    Raises:
        FileNotFoundError: If a root path is not an existing directory
        KeyGenerationError: If a directory exhausts the letters available to it
        OperationCancelled: If cancel_event is set during the walk
    """
    if isinstance(root_paths, str):
        root_paths = [root_paths]

    config_manager = ConfigManager()
    excluded_names = set(excluded_dirs) if excluded_dirs is not None else set(config_manager.get_excluded_dirs())
    excluded_exts = set(excluded_extensions) if excluded_extensions is not None else set(config_manager.get_excluded_extensions())

    norm_roots: List[str] = []
    for root_path in root_paths:
        norm_root = normalize_path(root_path)
        if not os.path.isdir(norm_root):
            raise FileNotFoundError(f"Root path '{root_path}' does not exist or is not a directory.")
        if norm_root not in norm_roots:
            norm_roots.append(norm_root)
    if len(norm_roots) > ALPHABET_SIZE:
        raise KeyGenerationError(f"Too many root paths ({len(norm_roots)}); at most {ALPHABET_SIZE} are supported.")

    path_to_key_info: Dict[str, KeyInfo] = {}

    def _is_skipped(item_name: str, is_dir: bool) -> bool:
        if item_name in excluded_names or item_name == ".gitkeep":
            return True
        if is_dir:
            return False
        if item_name.endswith(MINI_TRACKER_SUFFIX):
            return True
        _, ext = os.path.splitext(item_name)
        return ext in excluded_exts or item_name in excluded_exts

    def process_directory(dir_info: KeyInfo) -> None:
        """Assigns keys to the children of an already-keyed directory, depth first."""
        check_cancelled(cancel_event, "Key generation")
        dir_path = dir_info.norm_path
        dir_key = dir_info.key_string
        try:
            items = sorted(os.listdir(dir_path))
        except OSError as e:
            logger.error(f"Error accessing directory '{dir_path}': {e}")
            return

        parent_is_subdir = bool(_TIER_UPPER_LOWER_RE.match(dir_key))
        file_count = 1
        subdir_count = 0
        promoted_count = 0

        for item_name in items:
            check_cancelled(cancel_event, "Key generation")
            item_path = normalize_path(os.path.join(dir_path, item_name))
            is_dir = os.path.isdir(item_path)
            if _is_skipped(item_name, is_dir):
                logger.debug(f"Skipping excluded item '{item_name}' in '{dir_path}'")
                continue
            if is_dir and os.path.islink(item_path):
                logger.debug(f"Skipping symlinked directory '{item_path}'")
                continue

            if not is_dir:
                if not os.path.isfile(item_path):
                    continue
                file_key = f"{dir_key}{file_count}"
                file_count += 1
                path_to_key_info[item_path] = KeyInfo(file_key, item_path, dir_path, dir_key, dir_info.tier, False)
                continue

            if parent_is_subdir:
                # 1Ab cannot grow another letter: promote to the next tier
                if promoted_count >= ALPHABET_SIZE:
                    raise KeyGenerationError(
                        f"Directory '{dir_path}' (key {dir_key}) has more than {ALPHABET_SIZE} subdirectories to promote. "
                        f"Exclude some of them and retry.", dir_key, dir_path)
                sub_tier = dir_info.tier + 1
                sub_key = f"{sub_tier}{chr(ASCII_A + promoted_count)}"
                promoted_count += 1
                logger.debug(f"Promoted '{item_path}' to tier {sub_tier} key {sub_key}")
            elif _TIER_UPPER_RE.match(dir_key):
                if subdir_count >= ALPHABET_SIZE:
                    raise KeyGenerationError(
                        f"Directory '{dir_path}' (key {dir_key}) has more than {ALPHABET_SIZE} subdirectories. "
                        f"Exclude some of them and retry.", dir_key, dir_path)
                sub_tier = dir_info.tier
                sub_key = f"{dir_key}{chr(ASCII_a + subdir_count)}"
                subdir_count += 1
            else:
                raise KeyGenerationError(f"Directory key '{dir_key}' cannot parent a subdirectory.", dir_key, dir_path)

            sub_info = KeyInfo(sub_key, item_path, dir_path, dir_key, sub_tier, True)
            path_to_key_info[item_path] = sub_info
            process_directory(sub_info)

    for index, norm_root in enumerate(norm_roots):
        root_key = f"1{chr(ASCII_A + index)}"
        root_info = KeyInfo(root_key, norm_root, normalize_path(os.path.dirname(norm_root)), None, 1, True)
        path_to_key_info[norm_root] = root_info
        process_directory(root_info)

    previous_map = previous_map or {}
    new_keys = [ki for path, ki in path_to_key_info.items()
                if path not in previous_map or previous_map[path].key_string != ki.key_string]
    logger.info(f"Generated {len(path_to_key_info)} keys ({len(new_keys)} new) for {len(norm_roots)} root(s).")
    return path_to_key_info, new_keys


def get_key_from_path(path: str, path_to_key_info: Dict[str, KeyInfo]) -> Optional[str]:
    """
    Get the key string for a path.

    Args:
        path: The file/directory path
        path_to_key_info: Global path -> KeyInfo map
    Returns:
        The key string or None if the path is not tracked
    """
    ki = path_to_key_info.get(normalize_path(path))
    return ki.key_string if ki else None


def resolve_key(key: str, path_to_key_info: Dict[str, KeyInfo], context_path: Optional[str] = None) -> List[KeyInfo]:
    """
    Find the KeyInfo entries a key string may refer to.

    With a context path, candidates whose parent directory is the context win;
    failing that, candidates located under the context path.

    Args:
        key: Key string
        path_to_key_info: Global path -> KeyInfo map
        context_path: Optional directory to disambiguate with
    Returns:
        Matching KeyInfo objects (empty, one, or several if still ambiguous)
    """
    candidates = [ki for ki in path_to_key_info.values() if ki.key_string == key]
    if len(candidates) <= 1 or not context_path:
        return candidates
    norm_context = normalize_path(context_path)
    by_parent = [ki for ki in candidates if ki.parent_path == norm_context]
    if by_parent:
        return by_parent
    under_context = [ki for ki in candidates if ki.norm_path.startswith(norm_context + "/")]
    return under_context or candidates


def get_path_from_key(key: str, path_to_key_info: Dict[str, KeyInfo], context_path: Optional[str] = None) -> Optional[str]:
    """
    Get the path for a key string.

    Args:
        key: Key string
        path_to_key_info: Global path -> KeyInfo map
        context_path: Optional directory used when the key is reused across trees
    Returns:
        The path, or None if the key is unknown
    Raises:
        KeyAmbiguityError: If several paths remain after applying the context
    """
    candidates = resolve_key(key, path_to_key_info, context_path)
    if not candidates:
        return None
    if len(candidates) > 1:
        raise KeyAmbiguityError(key, sort_keys(candidates))
    return candidates[0].norm_path


def build_key_path_map(key_infos: List[KeyInfo], scope_name: str = "tracker") -> Dict[str, str]:
    """
    Build an ordered key -> path map for one tracker scope.

    A key string that occurs twice in the same scope cannot be told apart
    inside a single tracker; the later path (in sort order) is skipped.

    Args:
        key_infos: KeyInfo objects in scope
        scope_name: Label used in log messages
    Returns:
        Dictionary mapping key strings to normalized paths, hierarchically sorted
    """
    key_map: Dict[str, str] = {}
    for ki in sort_keys(key_infos):
        if ki.key_string in key_map:
            logger.warning(f"Key collision in {scope_name}: '{ki.key_string}' already maps to "
                           f"'{key_map[ki.key_string]}'; skipping '{ki.norm_path}'")
            continue
        key_map[ki.key_string] = ki.norm_path
    return key_map


# --- Global key map persistence ---

def _key_info_to_json(ki: KeyInfo) -> Dict[str, object]:
    return {"key": ki.key_string, "path": ki.norm_path, "parent": ki.parent_key,
            "tier": ki.tier, "isDirectory": ki.is_directory}


def save_global_key_map(path_to_key_info: Dict[str, KeyInfo], map_dir: str) -> str:
    """
    Write the global key map, keeping the previous version as *_old.

    Args:
        path_to_key_info: Map to persist
        map_dir: Directory holding the map files
    Returns:
        Path of the written map
    """
    os.makedirs(map_dir, exist_ok=True)
    map_path = normalize_path(os.path.join(map_dir, GLOBAL_KEY_MAP_FILENAME))
    old_map_path = normalize_path(os.path.join(map_dir, OLD_GLOBAL_KEY_MAP_FILENAME))
    content = json.dumps({path: _key_info_to_json(ki) for path, ki in path_to_key_info.items()}, indent=2)

    if os.path.exists(map_path):
        shutil.copy2(map_path, old_map_path)
        logger.debug(f"Preserved previous global key map as '{old_map_path}'")
    tmp_path = map_path + ".tmp"
    with open(tmp_path, 'w', encoding='utf-8') as f:
        f.write(content + "\n")
    os.replace(tmp_path, map_path)
    logger.info(f"Saved global key map with {len(path_to_key_info)} entries to '{map_path}'")
    return map_path


def _load_key_map_file(map_path: str) -> Optional[Dict[str, KeyInfo]]:
    if not os.path.exists(map_path):
        return None
    with open(map_path, 'r', encoding='utf-8') as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"Global key map '{map_path}' is not a JSON object")

    path_to_key_info: Dict[str, KeyInfo] = {}
    for path, entry in raw.items():
        try:
            key = entry["key"]
            ki = KeyInfo(key, entry.get("path", path), normalize_path(os.path.dirname(path)),
                         entry.get("parent"), int(entry["tier"]), bool(entry["isDirectory"]))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed entry for '{path}' in global key map '{map_path}': {e}") from e
        if not validate_key(key):
            raise ValueError(f"Invalid key '{key}' for '{path}' in global key map '{map_path}'")
        path_to_key_info[path] = ki
    return path_to_key_info


def load_global_key_map(map_dir: str) -> Optional[Dict[str, KeyInfo]]:
    """Load the current global key map, or None if it has not been written yet."""
    return _load_key_map_file(normalize_path(os.path.join(map_dir, GLOBAL_KEY_MAP_FILENAME)))


def load_old_global_key_map(map_dir: str) -> Optional[Dict[str, KeyInfo]]:
    """Load the previous global key map, or None if there is none."""
    return _load_key_map_file(normalize_path(os.path.join(map_dir, OLD_GLOBAL_KEY_MAP_FILENAME)))


class KeyManager:
    """
    Session object owning one global key map.

    Regeneration is serialized by an internal lock; persistence is the explicit
    load()/save() pair.
    """

    def __init__(self, map_dir: Optional[str] = None):
        self.map_dir = normalize_path(map_dir) if map_dir else ConfigManager().get_path("memory_dir")
        self.path_to_key_info: Dict[str, KeyInfo] = {}
        self._regeneration_lock = threading.Lock()

    def load(self) -> bool:
        """Load the persisted map. Returns False if none exists."""
        loaded = load_global_key_map(self.map_dir)
        if loaded is None:
            logger.info(f"No global key map found in '{self.map_dir}'")
            return False
        self.path_to_key_info = loaded
        return True

    def save(self) -> str:
        return save_global_key_map(self.path_to_key_info, self.map_dir)

    def regenerate(self, root_paths: List[str], excluded_dirs: Optional[Set[str]] = None,
                   excluded_extensions: Optional[Set[str]] = None,
                   cancel_event: Optional[threading.Event] = None, persist: bool = True) -> List[KeyInfo]:
        """
        Regenerate keys for the given roots and optionally persist the new map.

        The in-memory map is only replaced after generation fully succeeds.

        Returns:
            KeyInfo objects that are new or whose key changed
        """
        with self._regeneration_lock:
            new_map, new_keys = generate_keys(root_paths, excluded_dirs, excluded_extensions,
                                              previous_map=self.path_to_key_info, cancel_event=cancel_event)
            self.path_to_key_info = new_map
            if persist:
                self.save()
            return new_keys

    def key_for_path(self, path: str) -> Optional[str]:
        return get_key_from_path(path, self.path_to_key_info)

    def path_for_key(self, key: str, context_path: Optional[str] = None) -> Optional[str]:
        return get_path_from_key(key, self.path_to_key_info, context_path)

    def key_info_for_path(self, path: str) -> Optional[KeyInfo]:
        return self.path_to_key_info.get(normalize_path(path))
