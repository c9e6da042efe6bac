# core/batch_processor.py

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Dict, Iterator, List, Optional, Sequence

import numpy as np

from core.exceptions import ExtractionError, ScanCancelledError
from core.feature_extractors import FeatureExtractor
from core.models import AssetRecord

logger = logging.getLogger(__name__)

# how often a queued task is checked for having started
POLL_INTERVAL_S = 0.05


class ExtractionTask:
    """One embed() call; started_at is set when a worker picks it up"""

    def __init__(self, record: AssetRecord, extractor: FeatureExtractor):
        self.record = record
        self.extractor = extractor
        self.started_at: Optional[float] = None
        self.future = None

    def run(self) -> np.ndarray:
        self.started_at = time.monotonic()
        return self.extractor.embed(self.record.locator)

    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return time.monotonic() - self.started_at


class BatchProcessor:
    """
    Concurrent feature extraction in bounded batches

    Extraction runs on a thread pool (I/O and model bound); results are
    collected on the calling thread in input order, so callers see a
    deterministic sequence regardless of completion order.

    The timeout counts from the moment a worker starts a task. A task
    that overruns it is abandoned together with its worker: the pool is
    replaced and tasks still queued behind it move to the new pool.
    """

    def __init__(self,
                 n_workers: int = 4,
                 batch_size: int = 32,
                 timeout: Optional[float] = 30.0):
        self.n_workers = max(1, n_workers)
        self.batch_size = max(1, batch_size)
        self.timeout = timeout
        self._executor: Optional[ThreadPoolExecutor] = None

    def batches(self, records: Sequence[AssetRecord]) -> Iterator[List[AssetRecord]]:
        for i in range(0, len(records), self.batch_size):
            yield list(records[i:i + self.batch_size])

    def extract_features(self,
                         records: Sequence[AssetRecord],
                         extractor: FeatureExtractor,
                         feature_cache=None,
                         cancel_event: Optional[threading.Event] = None
                         ) -> Dict[str, Optional[np.ndarray]]:
        """
        Extract vectors for records, batch by batch

        Returns a dict in input order mapping record id to its vector, or
        None where extraction failed or timed out. Cached vectors are
        looked up by record id and the extractor's feature_type.
        Cancellation is checked between batches.
        """
        results: Dict[str, Optional[np.ndarray]] = {}
        feature_type = extractor.feature_type
        self._executor = self._new_executor()

        try:
            for batch in self.batches(records):
                if cancel_event is not None and cancel_event.is_set():
                    raise ScanCancelledError("cancelled during feature extraction")

                tasks = []
                for record in batch:
                    cached = self._lookup_cache(feature_cache, record, feature_type)
                    if cached is not None:
                        results[record.id] = cached
                        continue
                    task = ExtractionTask(record, extractor)
                    task.future = self._executor.submit(task.run)
                    tasks.append(task)

                for task in tasks:
                    vector = self._collect(task, tasks)
                    results[task.record.id] = vector
                    if vector is not None and feature_cache is not None:
                        feature_cache.cache_features(
                            task.record.id, feature_type, task.record.content_key, vector
                        )
        finally:
            # hung extractions must not block the scan
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

        return {record.id: results.get(record.id) for record in records}

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.n_workers)

    def _wait_time(self, task: ExtractionTask) -> Optional[float]:
        if self.timeout is None:
            return None
        if task.started_at is None:
            return POLL_INTERVAL_S
        return max(self.timeout - task.elapsed(), 0.0)

    def _collect(self, task: ExtractionTask,
                 batch_tasks: List[ExtractionTask]) -> Optional[np.ndarray]:
        record = task.record

        while True:
            try:
                vector = task.future.result(timeout=self._wait_time(task))
                break
            except FutureTimeoutError:
                if task.started_at is None or task.elapsed() < self.timeout:
                    continue
                logger.warning("Feature extraction timed out for %s after %ss",
                               record.id, self.timeout)
                self._replace_executor(batch_tasks)
                return None
            except ExtractionError as e:
                logger.warning("Feature extraction failed for %s: %s", record.id, e)
                return None
            except Exception as e:
                logger.warning("Unexpected extractor error for %s: %s", record.id, e)
                return None

        vector = np.asarray(vector, dtype=np.float32).ravel()
        if vector.size == 0 or not np.all(np.isfinite(vector)):
            logger.warning("Extractor returned an unusable vector for %s", record.id)
            return None
        return vector

    def _replace_executor(self, batch_tasks: List[ExtractionTask]):
        """Leave the hung worker behind and requeue tasks that never started"""
        stalled = self._executor
        self._executor = self._new_executor()

        requeued = 0
        for task in batch_tasks:
            if task.future.cancel():
                task.future = self._executor.submit(task.run)
                requeued += 1

        stalled.shutdown(wait=False, cancel_futures=True)
        logger.debug("Replaced extraction pool; %d queued tasks moved", requeued)

    @staticmethod
    def _lookup_cache(feature_cache, record: AssetRecord,
                      feature_type: str) -> Optional[np.ndarray]:
        if feature_cache is None:
            return None
        return feature_cache.get_cached_features(record.id, feature_type, record.content_key)
