# io/update_mini_tracker.py

"""
IO module for mini-tracker specific data: file naming, the markdown template new
mini-trackers are created from, and the key filter selecting a directory's own items.
"""
import os
from typing import Any, Dict

from crct.dependency_system.core.key_manager import KeyInfo, MINI_TRACKER_SUFFIX, build_key_path_map
from crct.dependency_system.utils.path_utils import normalize_path

MINI_TRACKER_START_MARKER = "---mini_tracker_start---"
MINI_TRACKER_END_MARKER = "---mini_tracker_end---"

# {block} is the formatted key/grid block, ending with a newline
MINI_TRACKER_TEMPLATE = """# {module_name} Module

## Overview

Purpose and responsibilities of `{module_name}`.

{start_marker}
{block}{end_marker}

## Implementation Details

"""


def get_mini_tracker_path(module_path: str) -> str:
    """Gets the path of the mini-tracker for a directory: <dir>/<dirname>_module.md."""
    norm_module_path = normalize_path(module_path)
    module_name = os.path.basename(norm_module_path) or "root"
    return normalize_path(os.path.join(norm_module_path, f"{module_name}{MINI_TRACKER_SUFFIX}"))


def is_mini_tracker_path(tracker_path: str) -> bool:
    return os.path.basename(tracker_path).endswith(MINI_TRACKER_SUFFIX)


def mini_key_filter(module_path: str, path_to_key_info: Dict[str, KeyInfo]) -> Dict[str, str]:
    """Selects the direct children of module_path."""
    norm_module_path = normalize_path(module_path)
    children = [ki for ki in path_to_key_info.values() if ki.parent_path == norm_module_path
                and ki.norm_path != norm_module_path]
    return build_key_path_map(children, f"mini tracker for '{norm_module_path}'")


def render_mini_tracker_template(module_path: str, block: str) -> str:
    """Full content of a new mini-tracker file holding the given block."""
    return MINI_TRACKER_TEMPLATE.format(module_name=os.path.basename(normalize_path(module_path)),
                                        start_marker=MINI_TRACKER_START_MARKER,
                                        end_marker=MINI_TRACKER_END_MARKER,
                                        block=block)


def get_mini_tracker_data() -> Dict[str, Any]:
    """Returns the dispatch table used by tracker_io for mini-trackers."""
    return {
        "template": MINI_TRACKER_TEMPLATE,
        "markers": (MINI_TRACKER_START_MARKER, MINI_TRACKER_END_MARKER),
        "key_filter": mini_key_filter,
        "render_template": render_mini_tracker_template,
        "get_tracker_path": get_mini_tracker_path,
    }
