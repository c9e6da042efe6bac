# core/duplicate_detection.py

import logging
from typing import Dict, List, Sequence, Tuple

from core.models import AssetRecord, Group, GroupKind

logger = logging.getLogger(__name__)

Fingerprint = Tuple[int, int]


class ExactDuplicateDetector:
    """
    Exact duplicate detection by (byte size, creation time) fingerprint

    Two different photos sharing both values are reported as duplicates.
    That false positive is an accepted limitation of the fingerprint.
    """

    def __init__(self, group_id_prefix: str = "exact"):
        self.group_id_prefix = group_id_prefix

    @staticmethod
    def fingerprint(record: AssetRecord) -> Fingerprint:
        return (record.byte_size, record.creation_time)

    def find_exact_duplicates(self, records: Sequence[AssetRecord]) -> List[Group]:
        """
        Group records sharing a fingerprint

        The first record seen for a fingerprint becomes the original;
        repeats are appended in traversal order.

        Time Complexity: O(n)
        """
        first_seen: Dict[Fingerprint, AssetRecord] = {}
        repeats: Dict[Fingerprint, List[AssetRecord]] = {}

        for record in records:
            key = self.fingerprint(record)

            if key not in first_seen:
                first_seen[key] = record
                continue

            if record.id == first_seen[key].id:
                continue

            repeats.setdefault(key, []).append(record)

        groups = []
        # dicts keep insertion order, so groups follow first-repeat order
        for index, (key, members) in enumerate(repeats.items()):
            groups.append(Group(
                id=f"{self.group_id_prefix}-{index}",
                original=first_seen[key],
                members=tuple(members),
                kind=GroupKind.EXACT,
                scores={m.id: 1.0 for m in members},
            ))

        logger.debug("Found %d exact duplicate groups among %d records",
                     len(groups), len(records))
        return groups


def find_exact_duplicates(records: Sequence[AssetRecord]) -> List[Group]:
    return ExactDuplicateDetector().find_exact_duplicates(records)
