# tests/test_scanner.py

import numpy as np
import pytest

from config import ScanConfig
from core.database import ScanHistoryStore
from core.exceptions import ConfigurationError, PersistenceWriteError
from core.models import GroupKind, ScanState
from core.scanner import PhotoScanner
from conftest import FakeAssetSource, FakeExtractor, make_record


@pytest.fixture
def store(tmp_path):
    with ScanHistoryStore(str(tmp_path / "history.db")) as store:
        yield store


@pytest.fixture
def library(burst_records):
    """Burst of three, one late photo, a thumbnail and an exact copy of `a`"""
    return burst_records + [
        make_record("thumb", byte_size=40_000, creation_time=900_000, width=320, height=240),
        make_record("a-copy", byte_size=2_000_000, creation_time=1_000),
    ]


class BrokenStore:
    def write_scan_summary(self, result):
        raise PersistenceWriteError("disk full")


def test_completed_scan_classifies_everything(library, store):
    scanner = PhotoScanner(FakeAssetSource(library), store=store)

    outcome = scanner.scan()

    assert outcome.state is ScanState.COMPLETED
    assert scanner.state is ScanState.COMPLETED
    result = outcome.result
    assert result.total_scanned == 6
    assert [r.id for r in result.low_quality] == ["thumb"]

    assert len(result.duplicates) == 1
    assert result.duplicates[0].original.id == "a"
    assert [m.id for m in result.duplicates[0].members] == ["a-copy"]

    assert all(g.kind is GroupKind.HEURISTIC for g in result.similar)
    assert not result.embedding_used
    assert store.read_latest_scan_summary().scan_id == result.scan_id


def test_unavailable_source_fails_without_persisting(library, store):
    scanner = PhotoScanner(FakeAssetSource(library, available=False), store=store)

    outcome = scanner.scan()

    assert outcome.state is ScanState.FAILED
    assert outcome.reason == "SourceUnavailable"
    assert outcome.result is None
    assert store.read_latest_scan_summary() is None


def test_missing_asset_is_skipped(library):
    scanner = PhotoScanner(FakeAssetSource(library, missing={"d"}))

    outcome = scanner.scan()

    assert outcome.state is ScanState.COMPLETED
    assert outcome.result.total_scanned == 5
    assert outcome.result.skipped_count == 1
    assert "d" not in outcome.result.records_by_id()


def test_unexpected_error_mid_enumeration_fails_scan(library, store):
    scanner = PhotoScanner(FakeAssetSource(library, fail_after=2), store=store)

    outcome = scanner.scan()

    assert outcome.state is ScanState.FAILED
    assert outcome.reason.startswith("RuntimeError")
    assert outcome.result is None
    assert store.read_latest_scan_summary() is None


def test_cancellation_discards_partial_results(library, store):
    scanner = PhotoScanner(FakeAssetSource(library), store=store)

    def cancel_half_way(fraction):
        if fraction >= 0.5:
            scanner.cancel()

    scanner.progress_callback = cancel_half_way

    outcome = scanner.scan()

    assert outcome.state is ScanState.CANCELLED
    assert outcome.reason == "Cancelled"
    assert outcome.result is None
    assert store.read_latest_scan_summary() is None


def test_progress_is_monotonic_and_finishes_at_one(library):
    reported = []
    scanner = PhotoScanner(FakeAssetSource(library, missing={"c"}),
                           progress_callback=reported.append)

    scanner.scan()

    assert reported == sorted(reported)
    assert reported[-1] == 1.0
    assert all(0.0 <= p <= 1.0 for p in reported)
    assert scanner.progress == 1.0


def test_scan_can_run_again_after_cancellation(library):
    scanner = PhotoScanner(FakeAssetSource(library))
    scanner.cancel()

    assert scanner.scan().state is ScanState.COMPLETED


def test_max_assets_limits_enumeration(library):
    scanner = PhotoScanner(FakeAssetSource(library), ScanConfig(max_assets_per_scan=2))

    outcome = scanner.scan()

    assert outcome.result.total_scanned == 2


def test_repeated_ids_counted_as_skipped():
    records = [make_record("a"), make_record("a", creation_time=5), make_record("b")]

    outcome = PhotoScanner(FakeAssetSource(records)).scan()

    assert outcome.result.total_scanned == 2
    assert outcome.result.skipped_count == 1


def test_persistence_failure_is_not_fatal(library):
    outcome = PhotoScanner(FakeAssetSource(library), store=BrokenStore()).scan()

    assert outcome.state is ScanState.COMPLETED
    assert outcome.result is not None


def test_embeddings_replace_heuristics_when_available(library):
    vectors = {r.locator: [1.0, 0.0] for r in library}
    vectors[library[3].locator] = [0.0, 1.0]
    vectors[library[4].locator] = [-1.0, 0.2]

    outcome = PhotoScanner(FakeAssetSource(library), extractor=FakeExtractor(vectors)).scan()

    result = outcome.result
    assert result.embedding_used
    assert len(result.similar) == 1
    group = result.similar[0]
    assert group.kind is GroupKind.EMBEDDING
    assert group.original.id == "a"
    assert {m.id for m in group.members} == {"a-copy", "b", "c"}


def embedding_with_failures(library):
    """`a` and `d` embed fine; `b` and `c` cannot be embedded"""
    vectors = {r.locator: [1.0, 0.0, 0.0] for r in library}
    vectors[library[3].locator] = [0.0, 1.0, 0.0]
    vectors[library[4].locator] = [0.0, 0.0, 1.0]
    vectors[library[5].locator] = [0.0, -1.0, 0.0]
    return FakeExtractor(vectors, failing={library[1].locator, library[2].locator})


def test_auto_mode_uses_heuristics_for_unevaluated_records(library):
    config = ScanConfig(similarity_mode="auto")
    scanner = PhotoScanner(FakeAssetSource(library), config,
                           extractor=embedding_with_failures(library))

    result = scanner.scan().result

    assert [(g.kind, g.original.id, [m.id for m in g.members]) for g in result.similar] == [
        (GroupKind.HEURISTIC, "b", ["c"]),
    ]


def test_embedding_mode_ignores_unevaluated_records(library):
    config = ScanConfig(similarity_mode="embedding")
    scanner = PhotoScanner(FakeAssetSource(library), config,
                           extractor=embedding_with_failures(library))

    result = scanner.scan().result

    assert result.similar == ()
    assert result.embedding_used


def test_heuristic_mode_never_extracts(library):
    extractor = FakeExtractor({r.locator: [1.0] for r in library})
    config = ScanConfig(similarity_mode="heuristic")

    result = PhotoScanner(FakeAssetSource(library), config, extractor=extractor).scan().result

    assert extractor.embedded == []
    assert not result.embedding_used
    assert len(result.similar) == 1


def test_unavailable_model_degrades_to_heuristics(library):
    extractor = FakeExtractor({}, unavailable=True)

    outcome = PhotoScanner(FakeAssetSource(library), extractor=extractor).scan()

    assert outcome.state is ScanState.COMPLETED
    assert not outcome.result.embedding_used
    assert outcome.result.similar[0].kind is GroupKind.HEURISTIC


def test_invalid_config_rejected_up_front(library):
    with pytest.raises(ConfigurationError):
        PhotoScanner(FakeAssetSource(library), ScanConfig(similarity_mode="magic"))


def test_new_extractor_ignores_vectors_cached_by_previous_one(store):
    records = [make_record("a", creation_time=0), make_record("b", creation_time=1)]
    first = FakeExtractor({r.locator: [1.0, 0.0] for r in records}, name="first")
    second = FakeExtractor({records[0].locator: [1.0, 0.0, 0.0],
                            records[1].locator: [0.0, 1.0, 0.0]}, name="second")
    config = ScanConfig(similarity_mode="embedding")

    earlier = PhotoScanner(FakeAssetSource(records), config, extractor=first,
                           feature_cache=store).scan()
    later = PhotoScanner(FakeAssetSource(records), config, extractor=second,
                         feature_cache=store).scan()

    assert len(earlier.result.similar) == 1
    assert sorted(second.embedded) == sorted(r.locator for r in records)
    assert later.result.similar == ()


def test_stale_cached_vector_does_not_fail_scan(burst_records, store):
    extractor = FakeExtractor({r.locator: [1.0, 0.0, 0.0] for r in burst_records})
    stale = burst_records[0]
    store.cache_features(stale.id, extractor.feature_type, stale.content_key,
                         np.array([0.0, 1.0]))
    config = ScanConfig(similarity_mode="embedding")

    outcome = PhotoScanner(FakeAssetSource(burst_records), config, extractor=extractor,
                           feature_cache=store).scan()

    assert outcome.state is ScanState.COMPLETED
    group = outcome.result.similar[0]
    assert group.original.id == "b"
    assert {m.id for m in group.members} == {"c", "d"}
