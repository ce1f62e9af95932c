"""
Utility module for running independent units of work on a thread pool.
Items are split into batches; a shared cancel signal stops new work from starting.
"""

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterator, List, Optional, TypeVar

import logging
logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


class OperationCancelled(Exception):
    """Raised when a long-running operation notices its cancel signal."""


def check_cancelled(cancel_event: Optional[threading.Event], what: str = "operation") -> None:
    """Raise OperationCancelled if the given cancel signal is set."""
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled(f"{what} cancelled")


class BatchProcessor:
    """Runs one function over many items on a thread pool, batch by batch."""

    def __init__(self, max_workers: Optional[int] = None, batch_size: Optional[int] = None,
                 show_progress: bool = False, cancel_event: Optional[threading.Event] = None):
        """
        Args:
            max_workers: Thread count (defaults to twice the CPU count, at most 32)
            batch_size: Fixed batch size; adaptive when None
            show_progress: Log a progress line after each batch
            cancel_event: Cooperative cancel signal, checked before each batch and each item
        """
        self.max_workers = max_workers or min(32, (os.cpu_count() or 1) * 2)
        self.batch_size = batch_size
        self.show_progress = show_progress
        self.cancel_event = cancel_event
        self.total_items = 0
        self.processed_items = 0
        self._started = 0.0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def process_items(self, items: List[T], processor_func: Callable[[T], R]) -> List[R]:
        """
        Apply processor_func to every item.

        Results keep input order. An item is left out when its call raised,
        returned None, or never started because of cancellation.

        Args:
            items: Work items
            processor_func: Called once per item, possibly from several threads
        Returns:
            Results of the completed items
        """
        if not callable(processor_func):
            logger.error("processor_func must be callable")
            raise ValueError("processor_func must be a callable")

        self.total_items = len(items)
        self.processed_items = 0
        if not items:
            logger.info("No items to process")
            return []

        self._started = time.time()
        results: List[R] = []
        for batch in self._batches(items):
            if self.cancelled:
                logger.warning(f"Batch processing cancelled after {self.processed_items}/{self.total_items} items")
                break
            results.extend(self._run_batch(batch, processor_func))
            self.processed_items += len(batch)
            if self.show_progress:
                self._log_progress()

        logger.info(f"Processed {self.processed_items} items in {time.time() - self._started:.2f} seconds")
        return results

    def process_with_collector(self, items: List[T], processor_func: Callable[[T], R],
                               collector_func: Callable[[List[R]], Any]) -> Any:
        """Run process_items and hand the result list to collector_func."""
        if not callable(collector_func):
            logger.error("collector_func must be callable")
            raise ValueError("collector_func must be a callable")
        return collector_func(self.process_items(items, processor_func))

    def _batch_size_for(self, count: int) -> int:
        if self.batch_size is not None:
            return max(1, self.batch_size)
        if count < 100:
            return max(1, count // 4)
        if count < 1000:
            return max(10, count // 10)
        return max(50, count // 20)

    def _batches(self, items: List[T]) -> Iterator[List[T]]:
        size = self._batch_size_for(len(items))
        logger.debug(f"Using batch size {size} with {self.max_workers} workers")
        for start in range(0, len(items), size):
            yield items[start:start + size]

    def _run_one(self, processor_func: Callable[[T], R], item: T) -> Optional[R]:
        if self.cancelled:
            return None
        return processor_func(item)

    def _run_batch(self, batch: List[T], processor_func: Callable[[T], R]) -> List[R]:
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(batch))) as executor:
            futures = [executor.submit(self._run_one, processor_func, item) for item in batch]

        results: List[R] = []
        for idx, future in enumerate(futures):
            try:
                result = future.result()
            except Exception as e:
                logger.exception(f"Error processing item {idx} of batch: {e}")
                continue
            if result is not None:
                results.append(result)
        return results

    def _log_progress(self) -> None:
        elapsed = max(0.1, time.time() - self._started)
        rate = self.processed_items / elapsed
        remaining = self.total_items - self.processed_items
        eta = remaining / rate if rate else 0.0
        logger.info(f"Progress: {self.processed_items}/{self.total_items} "
                    f"({100.0 * self.processed_items / self.total_items:.1f}%), {rate:.1f} items/s, ETA: {eta:.1f}s")


def process_items(items: List[T], processor_func: Callable[[T], R], max_workers: Optional[int] = None,
                  batch_size: Optional[int] = None, show_progress: bool = False,
                  cancel_event: Optional[threading.Event] = None) -> List[R]:
    """Process items with a one-off BatchProcessor."""
    return BatchProcessor(max_workers, batch_size, show_progress, cancel_event).process_items(items, processor_func)


def process_with_collector(items: List[T], processor_func: Callable[[T], R], collector_func: Callable[[List[R]], Any],
                           max_workers: Optional[int] = None, batch_size: Optional[int] = None,
                           show_progress: bool = False, cancel_event: Optional[threading.Event] = None) -> Any:
    """Process items with a one-off BatchProcessor and collect the results."""
    processor = BatchProcessor(max_workers, batch_size, show_progress, cancel_event)
    return processor.process_with_collector(items, processor_func, collector_func)
