# core/quality_filter.py

from core.models import AssetRecord

LOW_QUALITY_BYTES_THRESHOLD = 100_000


def classify_quality(record: AssetRecord,
                     threshold: int = LOW_QUALITY_BYTES_THRESHOLD) -> bool:
    """
    True if the asset is below the size threshold.

    A zero byte size (unreadable file) counts as low quality.
    """
    return record.byte_size < threshold
