# analysis/project_analyzer.py

"""
Project-wide orchestration: regenerate keys, persist the global key map and
bring every tracker in line with it.
"""

import os
import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from crct.dependency_system.core import key_manager
from crct.dependency_system.io import tracker_io
from crct.dependency_system.io.update_doc_tracker import doc_tracker_data
from crct.dependency_system.io.update_main_tracker import main_tracker_data
from crct.dependency_system.utils.batch_processor import BatchProcessor, OperationCancelled
from crct.dependency_system.utils.config_manager import ConfigManager
from crct.dependency_system.utils.path_utils import join_paths, normalize_path

import logging
logger = logging.getLogger(__name__)

Suggestions = Dict[str, List[Tuple[str, str]]]


def _combine_suggestions(*sources: Optional[Suggestions]) -> Suggestions:
    combined: Dict[str, List[Tuple[str, str]]] = defaultdict(list)
    for source in sources:
        for source_key, targets in (source or {}).items():
            combined[source_key].extend((target, char) for target, char in targets)
    return dict(combined)


def _mini_tracker_modules(path_to_key_info: Dict[str, key_manager.KeyInfo], module_paths: List[str]) -> List[str]:
    """Module directories that hold at least one keyed item."""
    parents = {ki.parent_path for ki in path_to_key_info.values()}
    return sorted(p for p in module_paths if p in parents)


def analyze_project(project_root: Optional[str] = None,
                    suggestions: Optional[Suggestions] = None,
                    force_apply: bool = False,
                    cancel_event: Optional[threading.Event] = None,
                    max_workers: Optional[int] = None,
                    root_directories: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Regenerates keys over the code and doc roots and updates all trackers.

    Mini-trackers are updated in parallel, then the doc tracker, then the main
    tracker (which also receives module-level dependencies aggregated from the
    mini-trackers).

    Args:
        project_root: Project root (defaults to the configured one)
        suggestions: {source_key: [(target_key, dep_char), ...]} offered to every tracker
        force_apply: Overwrite existing cells with suggestions
        cancel_event: Cooperative cancel signal
        max_workers: Worker count for the mini-tracker batch
        root_directories: Roots to key, relative to the project root (defaults to code + doc roots)
    Returns:
        Dictionary containing status ('success', 'warning', 'error' or 'cancelled'),
        message, warnings, key generation counts and per-tracker results
    """
    config = ConfigManager()
    if project_root and normalize_path(project_root) != config.project_root:
        config.reload(normalize_path(project_root))
    project_root = config.project_root
    logger.info(f"Starting project analysis in directory: {project_root}")

    results: Dict[str, Any] = {
        "status": "success",
        "message": "",
        "warnings": [],
        "key_generation": {},
        "tracker_updates": {"mini": {}, "doc": "skipped", "main": "skipped"},
    }

    # --- Root Directories Setup ---
    code_roots = config.get_code_root_directories()
    doc_roots = config.get_doc_directories()
    roots_rel = root_directories if root_directories is not None else sorted(set(code_roots + doc_roots))
    roots_abs = []
    for root in roots_rel:
        root_abs = join_paths(project_root, root)
        if os.path.isdir(root_abs):
            roots_abs.append(root_abs)
        else:
            results["warnings"].append(f"Configured root directory not found: {root}")
            logger.warning(f"Configured root directory not found: {root_abs}")
    if not roots_abs:
        results["status"] = "error"
        results["message"] = "No existing root directories to analyze."
        logger.error(results["message"])
        return results

    # --- Key Generation ---
    manager = key_manager.KeyManager()
    try:
        manager.load()
    except ValueError as e:
        results["warnings"].append(f"Ignoring unreadable global key map: {e}")
        logger.warning(f"Ignoring unreadable global key map: {e}")

    try:
        new_keys = manager.regenerate(roots_abs, set(config.get_excluded_dirs()),
                                      set(config.get_excluded_extensions()), cancel_event=cancel_event)
    except key_manager.KeyGenerationError as kge:
        results["status"] = "error"
        results["message"] = f"Key generation failed: {kge}"
        results["key_generation"] = {"parent_key": kge.parent_key, "parent_path": kge.parent_path}
        logger.critical(results["message"])
        return results
    except OperationCancelled as e:
        results["status"] = "cancelled"
        results["message"] = str(e)
        logger.warning("Project analysis cancelled during key generation.")
        return results
    except OSError as e:
        results["status"] = "error"
        results["message"] = f"Key generation failed: {e}"
        logger.critical(results["message"])
        return results

    path_to_key_info = manager.path_to_key_info
    results["key_generation"] = {"count": len(path_to_key_info), "new_count": len(new_keys)}

    # --- Mini Trackers ---
    module_keys = main_tracker_data["key_filter"](project_root, path_to_key_info)
    modules = _mini_tracker_modules(path_to_key_info, list(module_keys.values()))

    def _update_mini(module_path: str) -> Tuple[str, Optional[str]]:
        tracker_path = tracker_io.get_tracker_path(project_root, "mini", module_path)
        try:
            tracker_io.update_tracker(tracker_path, path_to_key_info, "mini", suggestions=suggestions,
                                      new_keys=new_keys, force_apply_suggestions=force_apply,
                                      module_path=module_path)
            return module_path, None
        except (OSError, ValueError) as e:
            logger.error(f"Failed to update mini tracker {tracker_path}: {e}")
            return module_path, str(e)

    def _summarize_mini(mini_results: List[Tuple[str, Optional[str]]]) -> Dict[str, Any]:
        failed_modules = {path: error for path, error in mini_results if error}
        return {"updated": len(mini_results) - len(failed_modules), "failed": failed_modules}

    processor = BatchProcessor(max_workers=max_workers, cancel_event=cancel_event)
    mini_summary = processor.process_with_collector(modules, _update_mini, _summarize_mini)
    results["tracker_updates"]["mini"] = mini_summary
    failed = mini_summary["failed"]
    if failed:
        results["warnings"].append(f"{len(failed)} mini tracker(s) failed to update")

    if processor.cancelled:
        results["status"] = "cancelled"
        results["message"] = (f"Cancelled after updating {mini_summary['updated']} of {len(modules)} "
                              f"mini trackers.")
        logger.warning(results["message"])
        return results

    # --- Doc Tracker ---
    doc_tracker_path = tracker_io.get_tracker_path(project_root, "doc")
    if doc_tracker_data["key_filter"](project_root, path_to_key_info) or os.path.exists(doc_tracker_path):
        results["tracker_updates"]["doc"] = _update_kind(doc_tracker_path, path_to_key_info, "doc",
                                                         suggestions, new_keys, force_apply, results)

    # --- Main Tracker ---
    if module_keys:
        aggregated = main_tracker_data["dependency_aggregation"](project_root, path_to_key_info, module_keys)
        main_suggestions = _combine_suggestions(aggregated, suggestions)
        main_tracker_path = tracker_io.get_tracker_path(project_root, "main")
        results["tracker_updates"]["main"] = _update_kind(main_tracker_path, path_to_key_info, "main",
                                                          main_suggestions, new_keys, force_apply, results)

    if results["warnings"] and results["status"] == "success":
        results["status"] = "warning"
    results["message"] = ("Project analysis completed successfully." if results["status"] == "success"
                          else f"Project analysis completed with warnings: {'; '.join(results['warnings'])}")
    logger.info(results["message"])
    return results


def _update_kind(tracker_path: str, path_to_key_info: Dict[str, key_manager.KeyInfo], tracker_type: str,
                 suggestions: Optional[Suggestions], new_keys: List[key_manager.KeyInfo],
                 force_apply: bool, results: Dict[str, Any]) -> str:
    try:
        tracker_io.update_tracker(tracker_path, path_to_key_info, tracker_type, suggestions=suggestions,
                                  new_keys=new_keys, force_apply_suggestions=force_apply)
        return "success"
    except (OSError, ValueError) as e:
        logger.error(f"Failed to update {tracker_type} tracker {tracker_path}: {e}")
        results["warnings"].append(f"{tracker_type} tracker update failed: {e}")
        return "failure"
