"""
IO module for doc tracker specific data.
"""
from typing import Dict
from crct.dependency_system.core.key_manager import KeyInfo, build_key_path_map
from crct.dependency_system.utils.config_manager import ConfigManager
from crct.dependency_system.utils.path_utils import is_subpath, join_paths

DOC_TRACKER_FILENAME = "doc_tracker.md"


def doc_key_filter(project_root: str, path_to_key_info: Dict[str, KeyInfo]) -> Dict[str, str]:
    """Logic for determining which paths to include in the doc tracker."""
    config_manager = ConfigManager()
    doc_roots = [join_paths(project_root, d) for d in config_manager.get_doc_directories()]
    in_scope = [ki for path, ki in path_to_key_info.items()
                if any(is_subpath(path, doc_root) for doc_root in doc_roots)]
    return build_key_path_map(in_scope, "doc tracker")


def get_doc_tracker_path(project_root: str) -> str:
    """Gets the path to the doc tracker file."""
    memory_dir = ConfigManager().get_path("memory_dir")
    return join_paths(memory_dir, DOC_TRACKER_FILENAME)


# Data structure for doc tracker
doc_tracker_data = {
    "key_filter": doc_key_filter,
    "get_tracker_path": get_doc_tracker_path
}
