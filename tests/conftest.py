# tests/conftest.py

import numpy as np
import pytest

from core.asset_source import AssetSource
from core.exceptions import (
    AssetNotFoundError,
    ExtractionError,
    ModelUnavailableError,
    SourceUnavailableError,
)
from core.feature_extractors import FeatureExtractor
from core.models import AssetRecord


def make_record(asset_id, byte_size=200_000, creation_time=0,
                width=4000, height=3000, filename=None):
    return AssetRecord(
        id=asset_id,
        filename=filename or f"{asset_id}.jpg",
        locator=f"/photos/{asset_id}.jpg",
        byte_size=byte_size,
        width=width,
        height=height,
        creation_time=creation_time,
    )


class FakeAssetSource(AssetSource):
    """In-memory photo library"""

    def __init__(self, records, missing=(), available=True, fail_after=None):
        self.records = list(records)
        self.missing = set(missing)
        self.available = available
        self.fail_after = fail_after
        self.size_calls = 0

    def list_photo_assets(self, limit):
        if not self.available:
            raise SourceUnavailableError("library offline")
        return [{
            'id': r.id,
            'filename': r.filename,
            'locator': r.locator,
            'creation_time': r.creation_time,
            'width': r.width,
            'height': r.height,
        } for r in self.records][:limit]

    def get_byte_size(self, locator):
        self.size_calls += 1
        if self.fail_after is not None and self.size_calls > self.fail_after:
            raise RuntimeError("connection to photo library lost")
        for record in self.records:
            if record.locator == locator and record.id not in self.missing:
                return record.byte_size
        raise AssetNotFoundError(locator)


class FakeExtractor(FeatureExtractor):
    """Serves fixed vectors keyed by locator"""

    def __init__(self, vectors, unavailable=False, failing=(), name="fake"):
        self.vectors = {k: np.asarray(v, dtype=np.float32) for k, v in vectors.items()}
        self.unavailable = unavailable
        self.failing = set(failing)
        self.name = name
        self.embedded = []

    @property
    def feature_type(self):
        return self.name

    def initialize(self):
        if self.unavailable:
            raise ModelUnavailableError("no model")

    def embed(self, locator):
        self.embedded.append(locator)
        if locator in self.failing or locator not in self.vectors:
            raise ExtractionError(f"cannot embed {locator}")
        return self.vectors[locator]


@pytest.fixture
def burst_records():
    """Three near-identical shots in one burst plus an unrelated later photo"""
    return [
        make_record("a", byte_size=2_000_000, creation_time=1_000),
        make_record("b", byte_size=2_100_000, creation_time=3_000),
        make_record("c", byte_size=1_900_000, creation_time=5_000),
        make_record("d", byte_size=2_000_000, creation_time=500_000),
    ]
