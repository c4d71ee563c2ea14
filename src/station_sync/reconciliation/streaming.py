"""
Memory-bounded page streaming over persisted records.

Pages are fetched strictly one after another and records are handed to the
operation one at a time, so at most one page is held in memory. Progress
counters can be polled from another thread while a stream is running.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterator, List, Optional, Sequence, TypeVar

from tqdm import tqdm

from ..utils.errors import RunCancelled
from .models import BatchProcessResult
from .throttling import CancellationToken


logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class ProgressCounters:
    """Lock-protected total/current/success/failure counters."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self._total = 0
        self._current = 0
        self._success = 0
        self._failure = 0

    def reset(self, total: int = 0) -> None:
        with self.lock:
            self._total = total
            self._current = 0
            self._success = 0
            self._failure = 0

    def record(self, success: bool) -> None:
        with self.lock:
            self._current += 1
            if success:
                self._success += 1
            else:
                self._failure += 1

    def snapshot(self) -> dict[str, int]:
        with self.lock:
            return {
                "total": self._total,
                "current": self._current,
                "success": self._success,
                "failure": self._failure,
            }


class StreamingBatchProcessor:
    """
    Sequential page streamer with per-record progress tracking.

    Args:
        page_size: Default records per page
        show_progress: Show a tqdm bar while streaming
    """

    def __init__(self, page_size: int = 20, show_progress: bool = False):
        if page_size <= 0:
            raise ValueError("page_size must be > 0")
        self.page_size = page_size
        self.show_progress = show_progress
        self.progress = ProgressCounters()

    def for_each_page(
        self,
        count_fn: Callable[[], int],
        fetch_page_fn: Callable[[int, int], Sequence[T]],
        operation: Callable[[T], R],
        page_size: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
        shrinking: bool = False,
        is_success: Callable[[Any], bool] = bool,
    ) -> Iterator[R]:
        """
        Stream every record through `operation`, yielding its results.

        A record whose operation raises counts as a failure and yields
        nothing; the stream carries on. With `shrinking=True` the source is
        expected to drop successful records from its result set, so the
        offset only advances past records that failed.

        Args:
            count_fn: Returns the number of records to process (called once)
            fetch_page_fn: fetch_page_fn(offset, limit) -> records
            operation: Called once per record
            page_size: Overrides the processor's default page size
            cancel_token: Checked before every page and record
            shrinking: Whether successful records leave the result set
            is_success: Decides whether an operation result counts as a success

        Raises:
            RunCancelled: the token was cancelled
        """
        size = page_size or self.page_size
        total = count_fn()
        self.progress.reset(total)
        if total <= 0:
            logger.info("Nothing to process")
            return

        logger.info(f"Streaming {total} records in pages of {size}")
        bar = tqdm(total=total, desc="Streaming", disable=not self.show_progress)
        offset = 0
        try:
            while self.progress.snapshot()["current"] < total:
                self._check(cancel_token)
                page = list(fetch_page_fn(offset, size))
                if not page:
                    break

                stayed = 0
                for record in page:
                    self._check(cancel_token)
                    try:
                        result = operation(record)
                    except RunCancelled:
                        raise
                    except Exception as e:
                        logger.warning(f"Failed to process record {record!r}: {e}")
                        self.progress.record(False)
                        stayed += 1
                    else:
                        success = is_success(result)
                        self.progress.record(success)
                        if not success:
                            stayed += 1
                        yield result
                    bar.update(1)
                    if self.progress.snapshot()["current"] >= total:
                        break

                offset += stayed if shrinking else len(page)
                if len(page) < size:
                    break
        finally:
            bar.close()

        snap = self.progress.snapshot()
        logger.info(
            f"Streaming finished: {snap['current']}/{snap['total']} processed, "
            f"{snap['success']} succeeded, {snap['failure']} failed"
        )

    def run_batch(
        self,
        fetch_page_fn: Callable[[int, int], Sequence[T]],
        batch_operation: Callable[[List[T]], Optional[int]],
        page_size: Optional[int] = None,
        count_fn: Optional[Callable[[], int]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BatchProcessResult:
        """
        Apply `batch_operation` to whole pages.

        `batch_operation` returns how many records of the page it processed
        (None means all of them). A raising batch counts as zero processed.
        """
        size = page_size or self.page_size
        total = count_fn() if count_fn is not None else 0
        seen = 0
        processed = 0
        offset = 0

        while True:
            self._check(cancel_token)
            page = list(fetch_page_fn(offset, size))
            if not page:
                break
            seen += len(page)
            try:
                done = batch_operation(page)
            except RunCancelled:
                raise
            except Exception as e:
                logger.warning(f"Batch at offset {offset} failed: {e}")
                done = 0
            processed += len(page) if done is None else done
            offset += len(page)
            if len(page) < size:
                break

        return BatchProcessResult(total=total if count_fn is not None else seen, processed=processed)

    @staticmethod
    def _check(cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
