"""
Core module for path utilities.
Handles path normalization, validation, and comparison.
"""

import os
# tier + UPPER, then either lower[+int] or int
HIERARCHICAL_KEY_PATTERN = r'^[1-9]\d*[A-Z](?:[a-z](?:[1-9]\d*)?|[1-9]\d*)?$'
KEY_PATTERN = r'\d+|\D+'

CONFIG_FILENAME = ".crct.config.json"
ROOT_INDICATORS = [CONFIG_FILENAME, '.git', 'pyproject.toml', 'setup.py', 'package.json']


def normalize_path(path: str) -> str:
    """
    Normalize a file path for consistent comparison.

    Args:
        path: Path to normalize

    Returns:
        Absolute path with forward slashes (lowercased on Windows)
    """
    if not path:
        return ""
    if not os.path.isabs(path):
        path = os.path.abspath(path)
    normalized = os.path.normpath(path).replace("\\", "/")
    if os.name == 'nt':
        normalized = normalized.lower()
    return normalized


def get_project_root() -> str:
    """
    Find the project root directory by walking up from the working directory.

    Returns:
        Path to the project root directory
    """
    current_dir = os.path.abspath(os.getcwd())
    while current_dir != os.path.dirname(current_dir):
        for indicator in ROOT_INDICATORS:
            if os.path.exists(os.path.join(current_dir, indicator)):
                return normalize_path(current_dir)
        current_dir = os.path.dirname(current_dir)
    return normalize_path(os.getcwd())


def join_paths(base_path: str, *paths: str) -> str:
    """Join paths and normalize the result."""
    return normalize_path(os.path.join(base_path, *paths))


def is_subpath(path: str, parent_path: str) -> bool:
    """
    Check if a path is a subpath of another path.

    Args:
        path: Path to check
        parent_path: Potential parent path

    Returns:
        True if path is a subpath of parent_path, False otherwise
    """
    norm_path = normalize_path(path)
    norm_parent = normalize_path(parent_path)

    if norm_path.startswith(norm_parent):
        if not norm_parent.endswith('/'):
            return len(norm_path) == len(norm_parent) or norm_path[len(norm_parent):].startswith('/')
        return True
    return False

