# components/cleanup_manager.py

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List

from core.exceptions import PartialDeletionError, PersistenceWriteError
from core.models import AssetRecord, ScanResult

logger = logging.getLogger(__name__)


def select_removal_candidates(result: ScanResult,
                              include_low_quality: bool = False) -> List[AssetRecord]:
    """
    Assets to propose for removal

    Every group member except the group's recommended asset; optionally
    the low-quality assets too. An asset recommended by any group is
    never proposed.
    """
    groups = result.duplicates + result.similar
    keep = {group.recommended.id for group in groups}

    candidates: Dict[str, AssetRecord] = {}
    for group in groups:
        for record in group.all_records:
            if record.id not in keep:
                candidates.setdefault(record.id, record)

    if include_low_quality:
        for record in result.low_quality:
            if record.id not in keep:
                candidates.setdefault(record.id, record)

    return list(candidates.values())


class DeletionExecutor:
    """
    Contract for irreversible asset removal

    delete_assets raises PartialDeletionError carrying the ids that were
    not removed; returning normally means every id was removed.
    """

    def delete_assets(self, asset_ids: Iterable[str]):
        raise NotImplementedError


class TrashDeletionExecutor(DeletionExecutor):
    """
    Moves asset files into a trash directory instead of unlinking them
    """

    def __init__(self, locators: Dict[str, str], trash_dir: str = "data/trash"):
        self.locators = dict(locators)
        self.trash_dir = Path(trash_dir)
        self.trash_dir.mkdir(parents=True, exist_ok=True)
        self.operation_log = []

    def delete_assets(self, asset_ids: Iterable[str]):
        failed = set()

        for asset_id in asset_ids:
            locator = self.locators.get(asset_id)
            if locator is None:
                logger.warning("No locator known for asset %s", asset_id)
                failed.add(asset_id)
                continue

            if not self._move_to_trash(asset_id, Path(locator)):
                failed.add(asset_id)

        if failed:
            raise PartialDeletionError(failed)

    def _move_to_trash(self, asset_id: str, source: Path) -> bool:
        if not source.exists():
            logger.warning("File not found: %s", source)
            return False

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        trash_path = self.trash_dir / f"{timestamp}_{source.name}"
        counter = 1
        while trash_path.exists():
            trash_path = self.trash_dir / f"{timestamp}_{counter}_{source.name}"
            counter += 1

        try:
            shutil.move(str(source), str(trash_path))
        except OSError as e:
            logger.warning("Error moving %s to trash: %s", source, e)
            return False

        self.operation_log.append({
            'operation': 'move_to_trash',
            'asset_id': asset_id,
            'source': str(source),
            'destination': str(trash_path),
            'timestamp': timestamp
        })
        return True


@dataclass
class DeletionReport:
    """What a deletion request actually achieved"""
    result: ScanResult
    deleted_ids: FrozenSet[str] = field(default_factory=frozenset)
    remaining_ids: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def complete(self) -> bool:
        return not self.remaining_ids


class CleanupManager:
    """
    Applies deletions to a scan result and keeps the history in step
    """

    def __init__(self, executor: DeletionExecutor, store=None):
        self.executor = executor
        self.store = store

    def apply_deletion(self, result: ScanResult, asset_ids: Iterable[str]) -> DeletionReport:
        """
        Delete assets and recompute the result without the ones removed

        Deletion is never assumed to be all-or-nothing: ids reported back
        by PartialDeletionError stay in the recomputed result.
        """
        requested = frozenset(asset_ids)
        if not requested:
            return DeletionReport(result=result)

        remaining = frozenset()
        try:
            self.executor.delete_assets(requested)
        except PartialDeletionError as e:
            remaining = e.remaining_ids & requested
            logger.warning("%d of %d assets could not be deleted",
                           len(remaining), len(requested))

        deleted = requested - remaining
        updated = result.without(deleted)

        if self.store is not None and deleted:
            try:
                self.store.write_scan_summary(updated)
            except PersistenceWriteError as e:
                logger.error("Scan history not updated after deletion: %s", e)

        logger.info("Deleted %d assets", len(deleted))
        return DeletionReport(result=updated, deleted_ids=deleted, remaining_ids=remaining)
