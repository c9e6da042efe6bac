"""
Exception hierarchy for the photo declutter engine.

Per-asset errors are recoverable and only counted; collaborator
unavailability aborts the scan.
"""
from typing import Iterable


class PhotoDeclutterError(Exception):
    """Base exception for all photo declutter errors."""
    pass


class ConfigurationError(PhotoDeclutterError):
    """Raised when a configuration value is out of range."""
    pass


class SourceUnavailableError(PhotoDeclutterError):
    """Raised when the asset source cannot be reached. Fatal for a scan."""
    pass


class MetadataReadError(PhotoDeclutterError):
    """Raised when metadata for a single asset cannot be read."""
    pass


class AssetNotFoundError(MetadataReadError):
    """Raised when an asset locator no longer resolves to a file."""
    pass


class ExtractionError(PhotoDeclutterError):
    """Raised when a feature vector cannot be produced for one asset."""
    pass


class ModelUnavailableError(PhotoDeclutterError):
    """Raised when the feature extraction model cannot be loaded."""
    pass


class PersistenceWriteError(PhotoDeclutterError):
    """Raised when a scan summary cannot be written."""
    pass


class ScanCancelledError(PhotoDeclutterError):
    """Raised inside a scan when cancellation has been requested."""
    pass


class PartialDeletionError(PhotoDeclutterError):
    """Raised when only some of the requested assets could be deleted."""

    def __init__(self, remaining_ids: Iterable[str], message: str = None):
        self.remaining_ids = frozenset(remaining_ids)
        super().__init__(
            message or f"{len(self.remaining_ids)} assets could not be deleted"
        )
