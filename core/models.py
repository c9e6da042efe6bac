# core/models.py

import uuid
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple


class ClassificationTag(Enum):
    LOW_QUALITY = "low_quality"
    DUPLICATE = "duplicate"
    SIMILAR = "similar"


class GroupKind(Enum):
    EXACT = "exact"
    HEURISTIC = "heuristic"
    EMBEDDING = "embedding"


class ScanState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AssetRecord:
    """
    Immutable metadata snapshot of one photo.

    Width and height are 0 when unknown. creation_time is in milliseconds
    since the epoch.
    """
    id: str
    filename: str
    locator: str
    byte_size: int
    width: int
    height: int
    creation_time: int

    def __post_init__(self):
        if self.byte_size < 0:
            raise ValueError(f"byte_size must be non-negative, got {self.byte_size}")
        if self.width < 0 or self.height < 0:
            raise ValueError(f"dimensions must be non-negative, got {self.width}x{self.height}")

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def content_key(self) -> str:
        """Key used to validate cached feature vectors"""
        return f"{self.byte_size}-{self.creation_time}"

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'AssetRecord':
        return cls(
            id=str(data['id']),
            filename=data.get('filename', ''),
            locator=data.get('locator', ''),
            byte_size=int(data.get('byte_size', 0)),
            width=int(data.get('width', 0)),
            height=int(data.get('height', 0)),
            creation_time=int(data.get('creation_time', 0)),
        )


@dataclass(frozen=True)
class Group:
    """
    One original plus the assets related to it.

    `original` is the structural anchor (first seen in canonical order);
    `recommended` is the best-quality asset and may differ from it.
    scores maps member id -> similarity to the original in [0, 1].
    """
    id: str
    original: AssetRecord
    members: Tuple[AssetRecord, ...]
    kind: GroupKind
    scores: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'members', tuple(self.members))

        if not self.members:
            raise ValueError(f"group {self.id} has no members besides its original")

        member_ids = [m.id for m in self.members]
        if len(set(member_ids)) != len(member_ids):
            raise ValueError(f"group {self.id} lists a member more than once")
        if self.original.id in member_ids:
            raise ValueError(f"group {self.id} lists its original as a member")

        for member_id, score in self.scores.items():
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"score for {member_id} outside [0, 1]: {score}")

    @property
    def all_records(self) -> Tuple[AssetRecord, ...]:
        return (self.original,) + self.members

    @property
    def asset_ids(self) -> Set[str]:
        return {r.id for r in self.all_records}

    @property
    def recommended(self) -> AssetRecord:
        from core.best_pick import pick_best
        return pick_best(self)

    def score_for(self, asset_id: str) -> float:
        if asset_id == self.original.id:
            return 1.0
        return self.scores.get(asset_id, 0.0)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'kind': self.kind.value,
            'original': self.original.to_dict(),
            'members': [m.to_dict() for m in self.members],
            'scores': dict(self.scores),
            'recommended_id': self.recommended.id,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Group':
        return cls(
            id=data['id'],
            original=AssetRecord.from_dict(data['original']),
            members=tuple(AssetRecord.from_dict(m) for m in data['members']),
            kind=GroupKind(data['kind']),
            scores={k: float(v) for k, v in data.get('scores', {}).items()},
        )


def _prune_groups(groups: Iterable[Group], removed: Set[str]) -> Tuple[Group, ...]:
    """Drop removed assets from groups, promoting a new original where needed"""
    pruned = []

    for group in groups:
        remaining = [r for r in group.all_records if r.id not in removed]
        if len(remaining) < 2:
            continue

        original, members = remaining[0], remaining[1:]
        scores = {m.id: group.score_for(m.id) for m in members}
        pruned.append(Group(
            id=group.id,
            original=original,
            members=tuple(members),
            kind=group.kind,
            scores=scores,
        ))

    return tuple(pruned)


@dataclass(frozen=True)
class ScanResult:
    """Outcome of one completed scan"""
    low_quality: Tuple[AssetRecord, ...]
    duplicates: Tuple[Group, ...]
    similar: Tuple[Group, ...]
    total_scanned: int
    skipped_count: int = 0
    embedding_used: bool = False
    scan_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    completed_at: str = field(
        default_factory=lambda: datetime.now().isoformat(timespec='seconds')
    )

    def __post_init__(self):
        object.__setattr__(self, 'low_quality', tuple(self.low_quality))
        object.__setattr__(self, 'duplicates', tuple(self.duplicates))
        object.__setattr__(self, 'similar', tuple(self.similar))

    def validate(self):
        """Check the cross-field invariants. Raises ValueError."""
        if self.total_scanned < 0 or self.skipped_count < 0:
            raise ValueError("scan counts must be non-negative")

        low_quality_ids = [r.id for r in self.low_quality]
        if len(set(low_quality_ids)) != len(low_quality_ids):
            raise ValueError("low quality list contains repeated assets")

        group_ids = [g.id for g in self.duplicates + self.similar]
        if len(set(group_ids)) != len(group_ids):
            raise ValueError("group ids are not unique")

        if any(g.kind is not GroupKind.EXACT for g in self.duplicates):
            raise ValueError("duplicate list may only hold exact groups")
        if any(g.kind is GroupKind.EXACT for g in self.similar):
            raise ValueError("similar list may not hold exact groups")

    def tags_for(self, asset_id: str) -> Set[ClassificationTag]:
        tags = set()
        if any(r.id == asset_id for r in self.low_quality):
            tags.add(ClassificationTag.LOW_QUALITY)
        if any(asset_id in g.asset_ids for g in self.duplicates):
            tags.add(ClassificationTag.DUPLICATE)
        if any(asset_id in g.asset_ids for g in self.similar):
            tags.add(ClassificationTag.SIMILAR)
        return tags

    def records_by_id(self) -> Dict[str, AssetRecord]:
        """Every asset referenced by this result, keyed by id"""
        records = {r.id: r for r in self.low_quality}
        for group in self.duplicates + self.similar:
            for record in group.all_records:
                records[record.id] = record
        return records

    def without(self, asset_ids: Iterable[str]) -> 'ScanResult':
        """Recompute this result with the given assets removed"""
        removed = set(asset_ids)
        return replace(
            self,
            low_quality=tuple(r for r in self.low_quality if r.id not in removed),
            duplicates=_prune_groups(self.duplicates, removed),
            similar=_prune_groups(self.similar, removed),
        )

    def summary_counts(self) -> Dict[str, int]:
        return {
            'low_quality_count': len(self.low_quality),
            'duplicate_count': len(self.duplicates),
            'similar_count': len(self.similar),
            'total_scanned': self.total_scanned,
            'skipped_count': self.skipped_count,
        }

    def to_dict(self) -> Dict:
        return {
            'scan_id': self.scan_id,
            'completed_at': self.completed_at,
            'total_scanned': self.total_scanned,
            'skipped_count': self.skipped_count,
            'embedding_used': self.embedding_used,
            'low_quality': [r.to_dict() for r in self.low_quality],
            'duplicates': [g.to_dict() for g in self.duplicates],
            'similar': [g.to_dict() for g in self.similar],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ScanResult':
        return cls(
            low_quality=tuple(AssetRecord.from_dict(r) for r in data.get('low_quality', [])),
            duplicates=tuple(Group.from_dict(g) for g in data.get('duplicates', [])),
            similar=tuple(Group.from_dict(g) for g in data.get('similar', [])),
            total_scanned=int(data.get('total_scanned', 0)),
            skipped_count=int(data.get('skipped_count', 0)),
            embedding_used=bool(data.get('embedding_used', False)),
            scan_id=data.get('scan_id') or uuid.uuid4().hex,
            completed_at=data.get('completed_at') or datetime.now().isoformat(timespec='seconds'),
        )


@dataclass
class ScanOutcome:
    """Terminal state of a scan request. result is None unless completed."""
    state: ScanState
    result: Optional[ScanResult] = None
    reason: Optional[str] = None
    skipped_count: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state is ScanState.COMPLETED


def canonical_order(records: Iterable[AssetRecord]) -> List[AssetRecord]:
    """Sort by creation time, then id. Grouping depends on this order."""
    return sorted(records, key=lambda r: (r.creation_time, r.id))
