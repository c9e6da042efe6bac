# tests/test_embedding_similarity.py

import logging
import threading
import time

import numpy as np
import pytest

from core.batch_processor import BatchProcessor
from core.database import ScanHistoryStore
from core.embedding_similarity import EmbeddingSimilarityDetector, cosine_similarity
from core.exceptions import ExtractionError, ModelUnavailableError, ScanCancelledError
from core.feature_extractors import FeatureExtractor, PrecomputedFeatureExtractor
from core.models import GroupKind
from conftest import FakeExtractor, make_record


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def detector():
    return EmbeddingSimilarityDetector(batch_processor=BatchProcessor(n_workers=2, batch_size=2))


def test_self_similarity_is_one(rng):
    v = rng.normal(size=512)
    assert cosine_similarity(v, v) == pytest.approx(1.0, abs=1e-6)


def test_similarity_is_symmetric(rng):
    for _ in range(10):
        a, b = rng.normal(size=128), rng.normal(size=128)
        assert cosine_similarity(a, b) == cosine_similarity(b, a)


def test_similarity_is_clamped_and_zero_safe():
    v = np.array([1e-3, 2e-3, 3e-3])
    assert -1.0 <= cosine_similarity(v, -v) <= 1.0
    assert cosine_similarity(v, -v) == pytest.approx(-1.0)
    assert cosine_similarity(np.zeros(3), v) == 0.0


def test_identical_embeddings_group_regardless_of_metadata(detector):
    """Very different size and dimensions still group on identical vectors"""
    records = [
        make_record("a", byte_size=5_000_000, width=6000, height=4000, creation_time=0),
        make_record("b", byte_size=40_000, width=320, height=240, creation_time=9_999_999),
    ]
    vector = [0.3, 0.1, 0.9, 0.4]
    extractor = FakeExtractor({r.locator: vector for r in records})

    groups = detector.find_near_duplicates(records, extractor)

    assert len(groups) == 1
    assert groups[0].kind is GroupKind.EMBEDDING
    assert groups[0].original.id == "a"
    assert groups[0].scores["b"] == pytest.approx(1.0, abs=1e-6)


def test_threshold_separates_groups(detector):
    records = [make_record(n, creation_time=i) for i, n in enumerate("abcd")]
    extractor = FakeExtractor({
        records[0].locator: [1.0, 0.0, 0.0],
        records[1].locator: [0.0, 1.0, 0.0],
        records[2].locator: [0.95, 0.1, 0.0],
        records[3].locator: [0.1, 0.99, 0.0],
    })

    groups = detector.find_near_duplicates(records, extractor)

    assert [(g.original.id, [m.id for m in g.members]) for g in groups] == [
        ("a", ["c"]),
        ("b", ["d"]),
    ]
    assert all(0.85 <= s <= 1.0 for g in groups for s in g.scores.values())


def test_opposite_vectors_never_group():
    detector = EmbeddingSimilarityDetector(threshold=0.0)
    records = [make_record("a", creation_time=0), make_record("b", creation_time=1)]
    extractor = FakeExtractor({records[0].locator: [1.0, 0.0], records[1].locator: [-1.0, 0.0]})

    assert detector.find_near_duplicates(records, extractor) == []


def test_assigned_records_are_not_anchors(detector):
    records = [make_record(n, creation_time=i) for i, n in enumerate("abc")]
    extractor = FakeExtractor({r.locator: [1.0, 1.0] for r in records})

    groups = detector.find_near_duplicates(records, extractor)

    assert len(groups) == 1
    assert [m.id for m in groups[0].members] == ["b", "c"]


def test_failed_extraction_is_skipped_and_reported(detector):
    records = [make_record(n, creation_time=i) for i, n in enumerate("abc")]
    extractor = FakeExtractor(
        {r.locator: [1.0, 0.5] for r in records},
        failing={records[1].locator},
    )

    embedding_pass = detector.detect(records, extractor)

    assert [r.id for r in embedding_pass.unevaluated] == ["b"]
    assert len(embedding_pass.groups) == 1
    assert [m.id for m in embedding_pass.groups[0].members] == ["c"]


def test_model_unavailable_propagates(detector, burst_records):
    with pytest.raises(ModelUnavailableError):
        detector.detect(burst_records, FakeExtractor({}, unavailable=True))


def test_time_window_restricts_candidates():
    detector = EmbeddingSimilarityDetector(time_window_ms=60_000)
    records = [
        make_record("a", creation_time=0),
        make_record("b", creation_time=1000),
        make_record("late", creation_time=10_000_000),
    ]
    extractor = FakeExtractor({r.locator: [1.0, 2.0, 3.0] for r in records})

    groups = detector.find_near_duplicates(records, extractor)

    assert [(g.original.id, [m.id for m in g.members]) for g in groups] == [("a", ["b"])]
    # singleton windows need no vector at all
    assert records[2].locator not in extractor.embedded


def test_cancellation_stops_detection(detector, burst_records):
    cancel_event = threading.Event()
    cancel_event.set()
    extractor = FakeExtractor({r.locator: [1.0] for r in burst_records})

    with pytest.raises(ScanCancelledError):
        detector.detect(burst_records, extractor, cancel_event=cancel_event)


class SlowExtractor(FeatureExtractor):
    """Sleeps for the given number of seconds before answering"""

    def __init__(self, delays):
        self.delays = dict(delays)

    def embed(self, locator):
        time.sleep(self.delays.get(locator, 0.0))
        return np.ones(4, dtype=np.float32)


def test_extraction_timeout_marks_record_unevaluated():
    records = [make_record(n, creation_time=i) for i, n in enumerate("abc")]
    processor = BatchProcessor(n_workers=3, batch_size=3, timeout=0.2)

    vectors = processor.extract_features(records, SlowExtractor({records[1].locator: 1.0}))

    assert list(vectors) == ["a", "b", "c"]
    assert vectors["b"] is None
    assert vectors["a"] is not None and vectors["c"] is not None


def test_hung_extraction_does_not_starve_queue():
    """A single worker stuck on one photo still serves the photos queued behind it"""
    hung = make_record("hung", creation_time=0)
    queued = [make_record(f"r{i}", creation_time=i + 1) for i in range(4)]
    processor = BatchProcessor(n_workers=1, batch_size=8, timeout=0.3)

    vectors = processor.extract_features([hung] + queued, SlowExtractor({hung.locator: 2.0}))

    assert vectors["hung"] is None
    assert all(vectors[r.id] is not None for r in queued)


def test_timeout_counts_from_task_start():
    """Queue time behind other tasks does not count against a photo"""
    records = [make_record(n, creation_time=i) for i, n in enumerate("abcd")]
    processor = BatchProcessor(n_workers=1, batch_size=4, timeout=0.5)

    vectors = processor.extract_features(
        records, SlowExtractor({r.locator: 0.2 for r in records})
    )

    assert all(v is not None for v in vectors.values())


def test_feature_cache_reused(tmp_path):
    records = [make_record("a", creation_time=0), make_record("b", creation_time=1)]
    extractor = FakeExtractor({r.locator: [0.2, 0.4, 0.6] for r in records})

    with ScanHistoryStore(str(tmp_path / "history.db")) as store:
        processor = BatchProcessor(n_workers=1)
        processor.extract_features(records, extractor, feature_cache=store)
        assert len(extractor.embedded) == 2

        vectors = processor.extract_features(records, extractor, feature_cache=store)

    assert len(extractor.embedded) == 2
    assert np.allclose(vectors["a"], [0.2, 0.4, 0.6])


def test_feature_cache_not_shared_between_extractors(tmp_path):
    records = [make_record("a", creation_time=0), make_record("b", creation_time=1)]
    first = FakeExtractor({r.locator: [1.0, 0.0] for r in records}, name="first")
    second = FakeExtractor({records[0].locator: [1.0, 0.0, 0.0],
                            records[1].locator: [0.0, 1.0, 0.0]}, name="second")
    detector = EmbeddingSimilarityDetector()

    with ScanHistoryStore(str(tmp_path / "history.db")) as store:
        assert len(detector.find_near_duplicates(records, first, feature_cache=store)) == 1
        groups = detector.find_near_duplicates(records, second, feature_cache=store)

    assert sorted(second.embedded) == sorted(r.locator for r in records)
    assert groups == []


def test_mismatched_vector_length_is_unevaluated(detector, caplog):
    records = [make_record(n, creation_time=i) for i, n in enumerate("abcd")]
    extractor = FakeExtractor({
        records[0].locator: [1.0, 0.0],
        records[1].locator: [1.0, 0.0, 0.0],
        records[2].locator: [1.0, 0.0, 0.0],
        records[3].locator: [0.0, 0.0, 1.0],
    })

    with caplog.at_level(logging.WARNING):
        embedding_pass = detector.detect(records, extractor)

    assert [r.id for r in embedding_pass.unevaluated] == ["a"]
    assert [(g.original.id, [m.id for m in g.members]) for g in embedding_pass.groups] == [
        ("b", ["c"]),
    ]
    assert "Ignoring 2-d vector for a" in caplog.text


def test_precomputed_feature_type_follows_content():
    one = PrecomputedFeatureExtractor({"x.jpg": [1.0, 0.0]})
    same = PrecomputedFeatureExtractor({"x.jpg": np.array([1.0, 0.0])})
    other = PrecomputedFeatureExtractor({"x.jpg": [0.0, 1.0]})

    assert one.feature_type == same.feature_type
    assert one.feature_type != other.feature_type
    assert one.feature_type.startswith("precomputed:")


def test_unit_vectors_do_not_change_scores(detector):
    records = [make_record("a", creation_time=0), make_record("b", creation_time=1)]
    extractor = FakeExtractor({records[0].locator: [3.0, 4.0], records[1].locator: [4.0, 3.0]})

    groups = detector.find_near_duplicates(records, extractor)

    assert groups[0].scores["b"] == pytest.approx(0.96, abs=1e-6)


def test_precomputed_extractor_from_npz(tmp_path):
    path = tmp_path / "vectors.npz"
    np.savez(path, **{"one.jpg": np.array([1.0, 0.0]), "two.jpg": np.array([0.0, 1.0])})

    extractor = PrecomputedFeatureExtractor.from_npz(str(path))

    assert np.allclose(extractor.embed("one.jpg"), [1.0, 0.0])
    with pytest.raises(ExtractionError):
        extractor.embed("missing.jpg")
