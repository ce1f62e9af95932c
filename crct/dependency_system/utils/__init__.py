"""
Utilities package initialization.
"""

from crct.dependency_system.utils.batch_processor import (
    BatchProcessor,
    OperationCancelled,
    check_cancelled,
    process_items,
    process_with_collector
)

from crct.dependency_system.utils.cache_manager import (
    cached,
    clear_all_caches,
    get_cache_stats,
    invalidate_dependent_entries,
    tracker_modified
)

__all__ = [
    # batch_processor
    'BatchProcessor',
    'OperationCancelled',
    'check_cancelled',
    'process_items',
    'process_with_collector',

    # cache_manager
    'cached',
    'clear_all_caches',
    'get_cache_stats',
    'invalidate_dependent_entries',
    'tracker_modified'
]
