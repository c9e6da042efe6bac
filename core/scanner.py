# core/scanner.py

import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from config import FeatureExtractionConfig, ScanConfig
from core.asset_source import AssetSource
from core.batch_processor import BatchProcessor
from core.duplicate_detection import ExactDuplicateDetector
from core.embedding_similarity import EmbeddingSimilarityDetector
from core.exceptions import (
    MetadataReadError,
    ModelUnavailableError,
    PersistenceWriteError,
    ScanCancelledError,
    SourceUnavailableError,
)
from core.feature_extractors import FeatureExtractor
from core.models import AssetRecord, Group, ScanOutcome, ScanResult, ScanState, canonical_order
from core.quality_filter import classify_quality
from core.temporal_grouper import TemporalSimilarityGrouper

logger = logging.getLogger(__name__)

# exact-duplicate pass and similarity pass
GROUP_PASSES = 2


class PhotoScanner:
    """
    Scan orchestrator: Idle -> Running -> Completed | Failed | Cancelled

    Ingests assets one by one (quality filter inline), then runs the
    exact-duplicate and similarity passes over the full record set. A scan
    is all-or-nothing: only a completed scan produces a ScanResult and
    reaches the history store.
    """

    def __init__(self,
                 source: AssetSource,
                 scan_config: Optional[ScanConfig] = None,
                 extractor: Optional[FeatureExtractor] = None,
                 store=None,
                 feature_cache=None,
                 extraction_config: Optional[FeatureExtractionConfig] = None,
                 progress_callback: Optional[Callable[[float], None]] = None):
        self.source = source
        self.config = scan_config or ScanConfig()
        self.extractor = extractor
        self.store = store
        self.feature_cache = feature_cache
        self.extraction_config = extraction_config or FeatureExtractionConfig()
        self.progress_callback = progress_callback

        self.config.validate()

        self._state = ScanState.IDLE
        self._progress = 0.0
        self._skipped = 0
        self._cancel_event = threading.Event()

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def progress(self) -> float:
        return self._progress

    def cancel(self):
        """Request cancellation; honored at the next record or group boundary"""
        self._cancel_event.set()

    def scan(self) -> ScanOutcome:
        """Run one scan to a terminal state"""
        if self._state is ScanState.RUNNING:
            raise RuntimeError("A scan is already running")

        self._cancel_event.clear()
        self._state = ScanState.RUNNING
        self._progress = 0.0
        self._skipped = 0

        logger.info("Scan started (mode=%s, limit=%d)",
                    self.config.similarity_mode, self.config.max_assets_per_scan)

        try:
            result = self._run()
        except ScanCancelledError:
            logger.info("Scan cancelled; partial results discarded")
            return self._finish(ScanState.CANCELLED, reason="Cancelled", skipped=self._skipped)
        except SourceUnavailableError as e:
            logger.error("Asset source unavailable: %s", e)
            return self._finish(ScanState.FAILED, reason="SourceUnavailable", skipped=self._skipped)
        except Exception as e:
            logger.exception("Scan aborted")
            return self._finish(ScanState.FAILED,
                                reason=f"{type(e).__name__}: {e}",
                                skipped=self._skipped)

        if self.store is not None:
            try:
                self.store.write_scan_summary(result)
            except PersistenceWriteError as e:
                logger.error("Scan summary not persisted: %s", e)

        logger.info(
            "Scan completed: %d scanned, %d skipped, %d low quality, "
            "%d duplicate groups, %d similar groups",
            result.total_scanned, result.skipped_count, len(result.low_quality),
            len(result.duplicates), len(result.similar)
        )
        return self._finish(ScanState.COMPLETED, result=result, skipped=result.skipped_count)

    def _finish(self, state: ScanState, result: Optional[ScanResult] = None,
                reason: Optional[str] = None, skipped: int = 0) -> ScanOutcome:
        self._state = state
        return ScanOutcome(state=state, result=result, reason=reason, skipped_count=skipped)

    def _run(self) -> ScanResult:
        try:
            entries = self.source.list_photo_assets(self.config.max_assets_per_scan)
        except SourceUnavailableError:
            raise
        except Exception as e:
            raise SourceUnavailableError(str(e)) from e

        entries = list(entries)[:self.config.max_assets_per_scan]
        total_steps = len(entries) + GROUP_PASSES

        records: List[AssetRecord] = []
        low_quality: List[AssetRecord] = []
        seen_ids = set()

        for step, entry in enumerate(entries, 1):
            self._check_cancelled()

            try:
                record = self._ingest(entry)
            except MetadataReadError as e:
                logger.warning("Skipping asset: %s", e)
                self._skipped += 1
                self._report(step, total_steps)
                continue

            if record.id in seen_ids:
                logger.warning("Skipping repeated asset id %s", record.id)
                self._skipped += 1
                self._report(step, total_steps)
                continue

            seen_ids.add(record.id)
            records.append(record)
            if classify_quality(record, self.config.low_quality_byte_threshold):
                low_quality.append(record)

            self._report(step, total_steps)

        ordered = canonical_order(records)

        self._check_cancelled()
        duplicates = ExactDuplicateDetector().find_exact_duplicates(ordered)
        self._report(len(entries) + 1, total_steps)

        self._check_cancelled()
        similar, embedding_used = self._find_similar(ordered)
        self._report(total_steps, total_steps)

        result = ScanResult(
            low_quality=tuple(canonical_order(low_quality)),
            duplicates=tuple(duplicates),
            similar=tuple(similar),
            total_scanned=len(records),
            skipped_count=self._skipped,
            embedding_used=embedding_used,
        )
        result.validate()
        return result

    def _ingest(self, entry: Dict) -> AssetRecord:
        """Build a record from a source entry. Raises MetadataReadError."""
        try:
            asset_id = str(entry['id'])
            locator = entry['locator']
        except (KeyError, TypeError) as e:
            raise MetadataReadError(f"Malformed asset entry {entry!r}") from e

        byte_size = self.source.get_byte_size(locator)

        try:
            return AssetRecord(
                id=asset_id,
                filename=entry.get('filename', ''),
                locator=locator,
                byte_size=int(byte_size),
                width=int(entry.get('width') or 0),
                height=int(entry.get('height') or 0),
                creation_time=int(entry.get('creation_time') or 0),
            )
        except (TypeError, ValueError) as e:
            raise MetadataReadError(f"Invalid metadata for {asset_id}: {e}") from e

    def _find_similar(self, records: List[AssetRecord]) -> Tuple[List[Group], bool]:
        """Similarity groups and whether embeddings were used"""
        heuristic = TemporalSimilarityGrouper(
            time_window_ms=self.config.time_window_ms,
            size_sim_min=self.config.heuristic_size_sim_min,
            dim_sim_min=self.config.heuristic_dim_sim_min,
            pair_ceiling=self.config.per_bucket_pair_ceiling,
        )

        if self.config.similarity_mode == "heuristic" or self.extractor is None:
            if self.config.similarity_mode == "embedding":
                logger.warning("Embedding mode requested without an extractor; using heuristics")
            return heuristic.group(records, self._cancel_event), False

        detector = EmbeddingSimilarityDetector(
            threshold=self.config.embedding_similarity_threshold,
            batch_processor=BatchProcessor(
                n_workers=self.extraction_config.n_workers,
                batch_size=self.extraction_config.batch_size,
                timeout=self.extraction_config.extraction_timeout_s,
            ),
            time_window_ms=self.config.embedding_time_window_ms,
        )

        try:
            embedding_pass = detector.detect(
                records, self.extractor, self.feature_cache, self._cancel_event
            )
        except ModelUnavailableError as e:
            logger.warning("Model unavailable, falling back to heuristics: %s", e)
            return heuristic.group(records, self._cancel_event), False

        groups = list(embedding_pass.groups)
        if self.config.similarity_mode == "auto" and embedding_pass.unevaluated:
            logger.info("Heuristic grouping for %d records without embeddings",
                        len(embedding_pass.unevaluated))
            groups.extend(heuristic.group(embedding_pass.unevaluated, self._cancel_event))

        return groups, True

    def _check_cancelled(self):
        if self._cancel_event.is_set():
            raise ScanCancelledError("scan cancelled")

    def _report(self, processed: int, total: int):
        fraction = processed / total if total else 1.0
        if fraction < self._progress:
            return
        self._progress = fraction
        if self.progress_callback:
            self.progress_callback(fraction)
