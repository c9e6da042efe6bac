# core/best_pick.py

from typing import Sequence, Union

from core.models import AssetRecord, Group


def quality_key(record: AssetRecord):
    """Sort key: larger pixel count, then larger file, then smallest id"""
    return (-record.area, -record.byte_size, record.id)


def pick_best(group: Union[Group, Sequence[AssetRecord]]) -> AssetRecord:
    """
    Select the recommended asset to keep, original included.

    Accepts a Group or a plain sequence of records. Deterministic and
    side-effect free; a group's original is left as it is.
    """
    records = group.all_records if isinstance(group, Group) else tuple(group)
    if not records:
        raise ValueError("cannot pick the best of an empty group")
    return min(records, key=quality_key)
