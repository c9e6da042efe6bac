# core/temporal_grouper.py

import logging
import threading
from typing import Dict, List, Optional, Sequence

from core.exceptions import ScanCancelledError
from core.models import AssetRecord, Group, GroupKind, canonical_order

logger = logging.getLogger(__name__)


def ratio_similarity(a: int, b: int) -> float:
    """min/max ratio; 0.0 when both values are unknown (zero)"""
    larger = max(a, b)
    if larger <= 0:
        return 0.0
    return min(a, b) / larger


def size_similarity(a: AssetRecord, b: AssetRecord) -> float:
    return ratio_similarity(a.byte_size, b.byte_size)


def dimension_similarity(a: AssetRecord, b: AssetRecord) -> float:
    return ratio_similarity(a.area, b.area)


def heuristic_score(a: AssetRecord, b: AssetRecord) -> float:
    return (size_similarity(a, b) + dimension_similarity(a, b)) / 2


def bucket_by_time(records: Sequence[AssetRecord],
                   window_ms: int) -> List[List[AssetRecord]]:
    """
    Split records into runs where consecutive creation times are at most
    window_ms apart.

    Time Complexity: O(n log n), dominated by the sort
    """
    buckets = []
    current: List[AssetRecord] = []
    previous = None

    for record in canonical_order(records):
        if previous is not None and record.creation_time - previous.creation_time > window_ms:
            buckets.append(current)
            current = []
        current.append(record)
        previous = record

    if current:
        buckets.append(current)

    return buckets


class UnionFind:
    """Disjoint Set Union (Union-Find) for transitive clustering."""

    def __init__(self, n):
        self.parent = list(range(n))
        self.rank = [0] * n

    def find(self, x):
        """Find root with path compression."""
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, x, y):
        """Union by rank."""
        px, py = self.find(x), self.find(y)
        if px == py:
            return False
        if self.rank[px] < self.rank[py]:
            px, py = py, px
        self.parent[py] = px
        if self.rank[px] == self.rank[py]:
            self.rank[px] += 1
        return True


class TemporalSimilarityGrouper:
    """
    Similarity grouping from capture time, byte size and pixel count

    Used when no embeddings are available. Records are bucketed by time,
    then linked pairwise inside each bucket when both the size ratio and
    the pixel-count ratio exceed their minimums.
    """

    def __init__(self,
                 time_window_ms: int = 60_000,
                 size_sim_min: float = 0.7,
                 dim_sim_min: float = 0.7,
                 pair_ceiling: int = 200,
                 group_id_prefix: str = "heuristic"):
        self.time_window_ms = time_window_ms
        self.size_sim_min = size_sim_min
        self.dim_sim_min = dim_sim_min
        self.pair_ceiling = pair_ceiling
        self.group_id_prefix = group_id_prefix

    def is_similar(self, a: AssetRecord, b: AssetRecord) -> bool:
        return (size_similarity(a, b) > self.size_sim_min and
                dimension_similarity(a, b) > self.dim_sim_min)

    def group(self,
              records: Sequence[AssetRecord],
              cancel_event: Optional[threading.Event] = None) -> List[Group]:
        """
        Build heuristic similarity groups

        Time Complexity: O(n log n + sum(k^2)) for bucket sizes k up to the
        pair ceiling; larger buckets fall back to an O(k log k) size sweep.
        """
        clusters: List[List[AssetRecord]] = []

        for bucket in bucket_by_time(records, self.time_window_ms):
            if cancel_event is not None and cancel_event.is_set():
                raise ScanCancelledError("cancelled during heuristic grouping")

            if len(bucket) < 2:
                continue

            if len(bucket) > self.pair_ceiling:
                logger.warning(
                    "Time bucket of %d records exceeds pair ceiling %d; "
                    "falling back to size-only bucketing",
                    len(bucket), self.pair_ceiling
                )
                clusters.extend(self._cluster_by_size(bucket))
            else:
                clusters.extend(self._cluster_pairwise(bucket))

        groups = []
        for cluster in clusters:
            original, members = cluster[0], cluster[1:]
            groups.append(Group(
                id=f"{self.group_id_prefix}-{len(groups)}",
                original=original,
                members=tuple(members),
                kind=GroupKind.HEURISTIC,
                scores={m.id: heuristic_score(original, m) for m in members},
            ))

        return groups

    def _cluster_pairwise(self, bucket: List[AssetRecord]) -> List[List[AssetRecord]]:
        """Connected components of the pairwise similarity graph"""
        uf = UnionFind(len(bucket))

        for i in range(len(bucket)):
            for j in range(i + 1, len(bucket)):
                if self.is_similar(bucket[i], bucket[j]):
                    uf.union(i, j)

        components: Dict[int, List[AssetRecord]] = {}
        for i, record in enumerate(bucket):
            components.setdefault(uf.find(i), []).append(record)

        return [c for c in components.values() if len(c) > 1]

    def _cluster_by_size(self, bucket: List[AssetRecord]) -> List[List[AssetRecord]]:
        """Linear sweep over byte size, for buckets too large to compare pairwise"""
        clusters = []
        current: List[AssetRecord] = []

        for record in sorted(bucket, key=lambda r: (r.byte_size, r.creation_time, r.id)):
            if current and size_similarity(current[0], record) <= self.size_sim_min:
                clusters.append(current)
                current = []
            current.append(record)

        if current:
            clusters.append(current)

        return [canonical_order(c) for c in clusters if len(c) > 1]
