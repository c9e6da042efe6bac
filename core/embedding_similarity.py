# core/embedding_similarity.py

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from core.batch_processor import BatchProcessor
from core.exceptions import ScanCancelledError
from core.feature_extractors import FeatureExtractor
from core.models import AssetRecord, Group, GroupKind, canonical_order
from core.temporal_grouper import bucket_by_time

logger = logging.getLogger(__name__)


def cosine_similarity(v1: np.ndarray, v2: np.ndarray) -> float:
    """Cosine similarity clamped to [-1, 1]; 0.0 if either vector is zero"""
    a = np.asarray(v1, dtype=np.float64).ravel()
    b = np.asarray(v2, dtype=np.float64).ravel()

    norm_product = np.linalg.norm(a) * np.linalg.norm(b)
    if norm_product == 0:
        return 0.0

    return float(np.clip(np.dot(a, b) / norm_product, -1.0, 1.0))


@dataclass
class EmbeddingPass:
    """Groups found by the embedding pass and the records it could not judge"""
    groups: List[Group] = field(default_factory=list)
    unevaluated: List[AssetRecord] = field(default_factory=list)


class EmbeddingSimilarityDetector:
    """
    Near-duplicate grouping by cosine similarity of feature vectors

    Anchor + scan forward: each unassigned record collects every later
    unassigned record whose similarity reaches the threshold. When
    time_window_ms is set, candidates are restricted to the same time
    bucket instead of the whole collection.

    Memory: every candidate vector is held as float32 until its last
    comparison, so peak usage is about 4 * n * d bytes for n candidates
    of dimension d. Extraction batches do not bound it; a time window
    shrinks n by skipping photos alone in their window.
    Vectors whose length differs from the most common one are reported
    as unevaluated.
    """

    def __init__(self,
                 threshold: float = 0.85,
                 batch_processor: Optional[BatchProcessor] = None,
                 time_window_ms: Optional[int] = None,
                 group_id_prefix: str = "embedding"):
        self.threshold = threshold
        self.batch_processor = batch_processor or BatchProcessor()
        self.time_window_ms = time_window_ms
        self.group_id_prefix = group_id_prefix

    def find_near_duplicates(self,
                             records: Sequence[AssetRecord],
                             extractor: FeatureExtractor,
                             feature_cache=None,
                             cancel_event: Optional[threading.Event] = None) -> List[Group]:
        return self.detect(records, extractor, feature_cache, cancel_event).groups

    def detect(self,
               records: Sequence[AssetRecord],
               extractor: FeatureExtractor,
               feature_cache=None,
               cancel_event: Optional[threading.Event] = None) -> EmbeddingPass:
        """
        Run the embedding pass

        Raises ModelUnavailableError if the extractor cannot initialize.
        Per-record extraction failures end up in `unevaluated`.

        Time Complexity: O(n^2 * d) within each candidate window
        """
        extractor.initialize()

        if self.time_window_ms:
            windows = bucket_by_time(records, self.time_window_ms)
        else:
            windows = [canonical_order(records)]

        # singleton windows have nothing to compare against
        windows = [w for w in windows if len(w) > 1]
        candidates = [r for window in windows for r in window]

        vectors = self.batch_processor.extract_features(
            candidates, extractor, feature_cache, cancel_event
        )

        result = EmbeddingPass()
        unit_vectors: Dict[str, np.ndarray] = {}

        # most common length wins; ties go to the first length seen
        lengths = Counter(v.size for v in vectors.values() if v is not None)
        dimension = lengths.most_common(1)[0][0] if lengths else None

        for record in candidates:
            vector = vectors.pop(record.id, None)
            if vector is not None and vector.size != dimension:
                logger.warning("Ignoring %d-d vector for %s, expected %d-d",
                               vector.size, record.id, dimension)
                vector = None

            norm = np.linalg.norm(vector) if vector is not None else 0.0
            if vector is None or norm == 0:
                result.unevaluated.append(record)
                continue
            unit = np.asarray(vector, dtype=np.float32) / np.float32(norm)
            unit_vectors[record.id] = unit.astype(np.float32, copy=False)

        for window in windows:
            evaluated = [r for r in window if r.id in unit_vectors]
            result.groups.extend(
                self._scan_window(evaluated, unit_vectors, len(result.groups), cancel_event)
            )

        logger.info("Embedding pass: %d groups, %d records unevaluated",
                    len(result.groups), len(result.unevaluated))
        return result

    def _scan_window(self,
                     window: List[AssetRecord],
                     unit_vectors: Dict[str, np.ndarray],
                     group_offset: int,
                     cancel_event: Optional[threading.Event]) -> List[Group]:
        """Anchor scan over one window; vectors are dropped after their last use"""
        groups = []
        assigned = set()

        for i, anchor in enumerate(window):
            if cancel_event is not None and cancel_event.is_set():
                raise ScanCancelledError("cancelled during embedding comparison")

            if anchor.id in assigned:
                continue

            anchor_vector = unit_vectors.pop(anchor.id)
            later = [r for r in window[i + 1:] if r.id not in assigned]
            if not later:
                continue

            matrix = np.stack([unit_vectors[r.id] for r in later])
            similarities = np.clip(matrix @ anchor_vector, -1.0, 1.0)

            members = []
            scores = {}
            for record, similarity in zip(later, similarities):
                # negative similarity never groups, whatever the threshold
                if similarity < 0 or similarity < self.threshold:
                    continue
                members.append(record)
                scores[record.id] = float(similarity)
                assigned.add(record.id)
                del unit_vectors[record.id]

            if members:
                groups.append(Group(
                    id=f"{self.group_id_prefix}-{group_offset + len(groups)}",
                    original=anchor,
                    members=tuple(members),
                    kind=GroupKind.EMBEDDING,
                    scores=scores,
                ))

        return groups
