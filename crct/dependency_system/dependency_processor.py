# dependency_processor.py

"""
Main entry point for the dependency tracking system.
Processes command-line arguments and delegates to appropriate handlers.
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

# --- Core Imports ---
from crct.dependency_system.core.dependency_grid import (
    PLACEHOLDER_CHAR, QUERY_TYPES, DependencyType, GridError, compress, decompress, get_char_at
)
from crct.dependency_system.core.key_manager import (
    KeyAmbiguityError, KeyInfo, load_global_key_map, get_path_from_key, sort_key_strings_hierarchically
)

# --- IO Imports ---
from crct.dependency_system.io.tracker_io import (
    TrackerFormatError, export_tracker, merge_trackers, read_tracker_file, remove_dependency_from_tracker,
    remove_key_from_tracker, tracker_type_for_path, update_tracker
)

# --- Analysis Imports ---
from crct.dependency_system.analysis.project_analyzer import analyze_project

# --- Utility Imports ---
from crct.dependency_system.utils.cache_manager import clear_all_caches
from crct.dependency_system.utils.config_manager import ConfigManager
from crct.dependency_system.utils.path_utils import get_project_root, normalize_path
from crct.dependency_system.utils.tracker_utils import find_all_tracker_paths, resolve_dependencies

logger = logging.getLogger(__name__)

# Relation characters that still need a decision
CHECK_NEEDED_CHARS = (PLACEHOLDER_CHAR, DependencyType.SEMANTIC_WEAK.value, DependencyType.SEMANTIC_STRONG.value)


def _load_global_map_or_none() -> Optional[Dict[str, KeyInfo]]:
    """Load the global key map, printing a hint if it is missing."""
    map_dir = ConfigManager().get_path("memory_dir")
    try:
        global_map = load_global_key_map(map_dir)
    except ValueError as e:
        print(f"Error: Global key map in {map_dir} is unreadable: {e}")
        return None
    if global_map is None:
        print(f"Error: No global key map found in {map_dir}. Run 'analyze-project' first.")
    return global_map


def _load_suggestions(path: Optional[str]) -> Optional[Dict[str, List[Tuple[str, str]]]]:
    """Read {source_key: [[target_key, char], ...]} from a JSON file."""
    if not path:
        return None
    with open(path, 'r', encoding='utf-8') as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError("Suggestions file must contain a JSON object")
    return {source: [(target, char) for target, char in targets] for source, targets in raw.items()}


def command_handler_analyze_project(args: argparse.Namespace) -> int:
    """Handle the analyze-project command."""
    try:
        suggestions = _load_suggestions(args.suggestions)
        results = analyze_project(args.project_root, suggestions=suggestions, force_apply=args.force_apply,
                                  max_workers=args.max_workers)
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                json.dump(results, f, indent=2)
        print(f"Analysis {results['status']}: {results['message']}")
        return 0 if results["status"] in ("success", "warning") else 1
    except (OSError, ValueError) as e:
        logger.exception(f"analyze-project failed: {e}")
        print(f"Error: {e}")
        return 1


def handle_compress(args: argparse.Namespace) -> int:
    print(compress(args.string))
    return 0


def handle_decompress(args: argparse.Namespace) -> int:
    print(decompress(args.string))
    return 0


def handle_get_char(args: argparse.Namespace) -> int:
    try:
        print(get_char_at(args.string, args.index))
        return 0
    except IndexError as e:
        print(f"Error: {e}")
        return 1


def handle_add_dependency(args: argparse.Namespace) -> int:
    """Handle the add-dependency command. Explicit edits always overwrite the current cell."""
    tracker_path = normalize_path(args.tracker)
    try:
        dep_type = DependencyType.from_char(args.dep_type)
    except GridError as e:
        print(f"Error: {e}")
        return 1
    if dep_type is DependencyType.DIAGONAL:
        print(f"Error: '{dep_type.value}' is reserved for the diagonal.")
        return 1

    global_map = _load_global_map_or_none()
    if global_map is None:
        return 1
    tracker_type = tracker_type_for_path(tracker_path)
    module_path = os.path.dirname(tracker_path) if tracker_type == "mini" else None
    targets = [t for t in args.target_key if t != args.source_key]
    if len(targets) != len(args.target_key):
        print(f"Warning: Skipping self-dependency for {args.source_key}.")

    try:
        result = update_tracker(tracker_path, global_map, tracker_type,
                                suggestions={args.source_key: [(t, dep_type.value) for t in targets]},
                                force_apply_suggestions=True, module_path=module_path)
    except (OSError, ValueError) as e:
        logger.error(f"Error processing add-dependency for '{tracker_path}': {e}", exc_info=True)
        print(f"Error: {e}")
        return 1

    if args.source_key not in result.keys:
        print(f"Error: Source key '{args.source_key}' is not part of {tracker_path}.")
        return 1
    keys = sort_key_strings_hierarchically(list(result.keys))
    row = result.grid[args.source_key]
    missing = [t for t in targets if t not in result.keys]
    applied = [t for t in targets if t in result.keys and get_char_at(row, keys.index(t)) == dep_type.value]
    if applied:
        print(f"Set {args.source_key} {dep_type.value} {', '.join(applied)} in {tracker_path}")
    if missing:
        print(f"Warning: Target key(s) not in tracker and not addable: {', '.join(missing)}")
    return 0 if not missing else 1


def handle_remove_dependency(args: argparse.Namespace) -> int:
    """Handle the remove-dependency command."""
    try:
        remove_dependency_from_tracker(args.tracker, args.source_key, args.target_key)
        print(f"Removed dependency {args.source_key} -> {args.target_key} from {args.tracker}")
        return 0
    except (OSError, ValueError) as e:
        logger.error(f"remove-dependency failed: {e}")
        print(f"Error: {e}")
        return 1


def handle_remove_key(args: argparse.Namespace) -> int:
    """Handle the remove-key command."""
    try:
        remove_key_from_tracker(args.tracker_file, args.key)
        print(f"Removed key {args.key} from {args.tracker_file}")
        return 0
    except KeyError as e:
        print(f"Error: {e.args[0]}")
        return 1
    except (OSError, ValueError) as e:
        logger.error(f"remove-key failed: {e}")
        print(f"Error: {e}")
        return 1


def handle_merge_trackers(args: argparse.Namespace) -> int:
    """Handle the merge-trackers command."""
    try:
        output_path = normalize_path(args.output) if args.output else normalize_path(args.primary_tracker_path)
        merged = merge_trackers(args.primary_tracker_path, args.secondary_tracker_path, output_path)
        if merged is None:
            print("Error: Neither tracker exists.")
            return 1
        print(f"Merged trackers into {output_path}. Total keys: {len(merged.keys)}")
        return 0
    except (OSError, ValueError) as e:
        logger.exception(f"Failed merge: {e}")
        print(f"Error: {e}")
        return 1


def handle_export_tracker(args: argparse.Namespace) -> int:
    """Handle the export-tracker command."""
    output_path = args.output or f"{os.path.splitext(normalize_path(args.tracker_file))[0]}_export.{args.format}"
    try:
        export_tracker(args.tracker_file, args.format, output_path)
        print(f"Tracker exported to {output_path}")
        return 0
    except (OSError, ValueError) as e:
        logger.error(f"Error exporting tracker: {e}")
        print(f"Error: {e}")
        return 1


def handle_show_dependencies(args: argparse.Namespace) -> int:
    """Handle the show-dependencies command."""
    tracker_paths = find_all_tracker_paths()
    resolved = resolve_dependencies(args.key, tracker_paths, key_path=args.path)
    if resolved.is_empty():
        print(f"No dependencies found for {args.key}.")
        return 0

    print(f"Dependencies for {args.key}:")
    for dep_type in QUERY_TYPES:
        targets = resolved.keys_for(dep_type)
        if not targets:
            continue
        print(f"  {dep_type.name.replace('_', ' ').title()} ('{dep_type.value}'):")
        for target in targets:
            origins = ", ".join(os.path.basename(o) for o in sorted(resolved.origins(dep_type, target)))
            print(f"    {target}  [{origins}]")
    return 0


def handle_show_keys(args: argparse.Namespace) -> int:
    """Handle the show-keys command, flagging rows that still hold p, s or S."""
    try:
        data = read_tracker_file(args.tracker)
    except (TrackerFormatError, GridError) as e:
        print(f"Error: {e}")
        return 1
    if data is None:
        print(f"Error: Tracker file not found: {args.tracker}")
        return 1

    for key in sort_key_strings_hierarchically(list(data.keys)):
        row = decompress(data.grid[key])
        pending = sorted({c for c in row if c in CHECK_NEEDED_CHARS})
        suffix = f" (checks needed: {', '.join(pending)})" if pending else ""
        print(f"{key}: {data.keys[key]}{suffix}")
    return 0


def handle_show_path(args: argparse.Namespace) -> int:
    """Handle the show-path command."""
    global_map = _load_global_map_or_none()
    if global_map is None:
        return 1
    try:
        path = get_path_from_key(args.key, global_map, args.context)
    except KeyAmbiguityError as e:
        print(f"Error: {e}. Use --context to pick one.")
        return 1
    if path is None:
        print(f"Error: Key '{args.key}' not found.")
        return 1
    print(path)
    return 0


def handle_clear_caches(args: argparse.Namespace) -> int:
    clear_all_caches()
    print("All caches cleared.")
    return 0


def _nested_update(dotted_key: str, value: Any) -> Dict[str, Any]:
    update: Dict[str, Any] = value
    for part in reversed(dotted_key.split(".")):
        update = {part: update}
    return update


def handle_update_config(args: argparse.Namespace) -> int:
    """Handle the update-config command."""
    try:
        value_parsed = json.loads(args.value)
    except json.JSONDecodeError:
        value_parsed = args.value
    if ConfigManager().update_config(_nested_update(args.key, value_parsed)):
        print(f"Updated config: {args.key} = {value_parsed}")
        return 0
    print(f"Error: Failed to update config key '{args.key}'.")
    return 1


def handle_reset_config(args: argparse.Namespace) -> int:
    """Handle the reset-config command."""
    if ConfigManager().reset_to_defaults():
        print("Config reset to defaults.")
        return 0
    print("Error: Failed to reset config.")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dependency tracking system CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands", required=True)

    # --- Analysis Commands ---
    analyze_project_parser = subparsers.add_parser("analyze-project", help="Regenerate keys and update all trackers")
    analyze_project_parser.add_argument("project_root", nargs='?', default=None, help="Project directory path (default: discovered root)")
    analyze_project_parser.add_argument("--suggestions", help="JSON file with {source_key: [[target_key, char], ...]}")
    analyze_project_parser.add_argument("--force-apply", action="store_true", help="Overwrite existing cells with suggestions")
    analyze_project_parser.add_argument("--max-workers", type=int, default=None, help="Worker threads for mini-tracker updates")
    analyze_project_parser.add_argument("--output", help="Save analysis summary to JSON file")
    analyze_project_parser.set_defaults(func=command_handler_analyze_project)

    # --- Grid Manipulation Commands ---
    compress_parser = subparsers.add_parser("compress", help="Compress RLE string")
    compress_parser.add_argument("string", help="String to compress")
    compress_parser.set_defaults(func=handle_compress)

    decompress_parser = subparsers.add_parser("decompress", help="Decompress RLE string")
    decompress_parser.add_argument("string", help="String to decompress")
    decompress_parser.set_defaults(func=handle_decompress)

    get_char_parser = subparsers.add_parser("get_char", help="Get char at logical index in compressed string")
    get_char_parser.add_argument("string", help="Compressed string")
    get_char_parser.add_argument("index", type=int, help="Logical index")
    get_char_parser.set_defaults(func=handle_get_char)

    add_dep_parser = subparsers.add_parser("add-dependency", help="Set the relation between keys in a tracker")
    add_dep_parser.add_argument("--tracker", required=True, help="Path to tracker file")
    add_dep_parser.add_argument("--source-key", required=True, help="Source key string (e.g., '1A1')")
    add_dep_parser.add_argument("--target-key", required=True, nargs='+', help="One or more target key strings")
    add_dep_parser.add_argument("--dep-type", default=">", help="Dependency type (e.g., '>', '<', 'x')")
    add_dep_parser.set_defaults(func=handle_add_dependency)

    remove_dep_parser = subparsers.add_parser("remove-dependency", help="Clear the relation between two keys (sets '.')")
    remove_dep_parser.add_argument("--tracker", required=True, help="Path to tracker file")
    remove_dep_parser.add_argument("--source-key", required=True, help="Row key")
    remove_dep_parser.add_argument("--target-key", required=True, help="Column key")
    remove_dep_parser.set_defaults(func=handle_remove_dependency)

    # --- Tracker File Management ---
    remove_key_parser = subparsers.add_parser("remove-key", help="Remove a key from a specific tracker")
    remove_key_parser.add_argument("tracker_file", help="Path to the tracker file (.md)")
    remove_key_parser.add_argument("key", type=str, help="The key to remove")
    remove_key_parser.set_defaults(func=handle_remove_key)

    merge_parser = subparsers.add_parser("merge-trackers", help="Merge two tracker files")
    merge_parser.add_argument("primary_tracker_path", help="Primary tracker")
    merge_parser.add_argument("secondary_tracker_path", help="Secondary tracker")
    merge_parser.add_argument("--output", "-o", help="Output path (defaults to overwriting primary)")
    merge_parser.set_defaults(func=handle_merge_trackers)

    export_parser = subparsers.add_parser("export-tracker", help="Export tracker data")
    export_parser.add_argument("tracker_file", help="Path to tracker file")
    export_parser.add_argument("--format", choices=["json", "csv", "dot"], default="json", help="Export format")
    export_parser.add_argument("--output", "-o", help="Output file path (default: <tracker>_export.<format>)")
    export_parser.set_defaults(func=handle_export_tracker)

    # --- Query Commands ---
    show_deps_parser = subparsers.add_parser("show-dependencies", help="Show dependencies of a key across all trackers")
    show_deps_parser.add_argument("--key", required=True, help="Key string to show dependencies for")
    show_deps_parser.add_argument("--path", help="Only use trackers where the key refers to this path")
    show_deps_parser.set_defaults(func=handle_show_dependencies)

    show_keys_parser = subparsers.add_parser("show-keys", help="Show keys from tracker, indicating if checks needed (p, s, S)")
    show_keys_parser.add_argument("--tracker", required=True, help="Path to the tracker file (.md)")
    show_keys_parser.set_defaults(func=handle_show_keys)

    show_path_parser = subparsers.add_parser("show-path", help="Show the path a key refers to")
    show_path_parser.add_argument("key", help="Key string")
    show_path_parser.add_argument("--context", help="Directory used to pick between reused keys")
    show_path_parser.set_defaults(func=handle_show_path)

    # --- Utility Commands ---
    clear_caches_parser = subparsers.add_parser("clear-caches", help="Clear all internal caches")
    clear_caches_parser.set_defaults(func=handle_clear_caches)

    reset_config_parser = subparsers.add_parser("reset-config", help="Reset config to defaults")
    reset_config_parser.set_defaults(func=handle_reset_config)

    update_config_parser = subparsers.add_parser("update-config", help="Update a config setting")
    update_config_parser.add_argument("key", help="Config key path (e.g., 'paths.memory_dir')")
    update_config_parser.add_argument("value", help="New value (JSON parse attempted)")
    update_config_parser.set_defaults(func=handle_update_config)

    return parser


def setup_logging() -> None:
    """Debug log to <project root>/debug.txt, INFO and above to stdout."""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    log_file_path = normalize_path(os.path.join(get_project_root(), 'debug.txt'))
    try:
        file_handler = logging.FileHandler(log_file_path, mode='w')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        root_logger.addHandler(file_handler)
    except OSError as e:
        print(f"Error setting up file logger {log_file_path}: {e}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
    root_logger.addHandler(console_handler)


def main(argv: Optional[List[str]] = None):
    """Parse arguments and dispatch to handlers."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging()
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
