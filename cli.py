# cli.py

import argparse
import sys
from pathlib import Path

from tqdm import tqdm

from config import SystemConfig
from core.asset_source import FilesystemAssetSource
from core.database import ScanHistoryStore
from core.exceptions import ConfigurationError, ModelUnavailableError
from core.feature_extractors import CLIPFeatureExtractor, PrecomputedFeatureExtractor
from core.scanner import PhotoScanner
from components.cleanup_manager import (
    CleanupManager,
    TrashDeletionExecutor,
    select_removal_candidates,
)
from utils.file_utils import format_file_size
from utils.logging_config import setup_logging


def initialize_directories(config: SystemConfig):
    """Create necessary directories"""
    Path(config.database_path).parent.mkdir(parents=True, exist_ok=True)
    Path(config.trash_dir).mkdir(parents=True, exist_ok=True)


def build_extractor(args, config: SystemConfig):
    """Feature extractor chosen on the command line, or None"""
    if args.embeddings:
        return PrecomputedFeatureExtractor.from_npz(args.embeddings)
    if args.clip:
        return CLIPFeatureExtractor(
            model_name=config.feature_extraction.model_name,
            use_gpu=config.feature_extraction.use_gpu
        )
    return None


def print_groups(title: str, groups):
    print(f"\n{title} ({len(groups)} groups)")
    for i, group in enumerate(groups, 1):
        recommended = group.recommended
        print(f"\nGroup {i} [{group.kind.value}]:")
        print(f"  Original: {group.original.filename}")
        print(f"  Recommended: {recommended.filename} "
              f"({recommended.width}x{recommended.height}, "
              f"{format_file_size(recommended.byte_size)})")
        for member in group.members:
            print(f"    - {member.filename} (similarity: {group.score_for(member.id):.2f})")


def scan_command(args, config: SystemConfig):
    """Scan a directory and store the result"""
    if args.mode:
        config.scan.similarity_mode = args.mode
    if args.limit is not None:
        config.scan.max_assets_per_scan = args.limit
    config.validate()

    print(f"Scanning photos in: {args.directory}")

    try:
        extractor = build_extractor(args, config)
    except ModelUnavailableError as e:
        print(f"Error: {e}")
        return 1

    with ScanHistoryStore(config.database_path) as store:
        progress_bar = tqdm(total=100, desc="Scanning", unit="%")

        def progress_callback(fraction):
            progress_bar.n = int(fraction * 100)
            progress_bar.refresh()

        scanner = PhotoScanner(
            FilesystemAssetSource(args.directory),
            scan_config=config.scan,
            extractor=extractor,
            store=store,
            feature_cache=store if config.feature_extraction.cache_features else None,
            extraction_config=config.feature_extraction,
            progress_callback=progress_callback
        )

        try:
            outcome = scanner.scan()
        except KeyboardInterrupt:
            print("\nScan cancelled.")
            return 1
        finally:
            progress_bar.close()

    if not outcome.succeeded:
        print(f"Scan {outcome.state.value}: no results ({outcome.reason})")
        return 1

    result = outcome.result
    print(f"\nFound {len(result.low_quality)} low quality photos, "
          f"{len(result.duplicates)} duplicate groups and "
          f"{len(result.similar)} similar groups out of {result.total_scanned} scanned")
    if result.skipped_count:
        print(f"Skipped {result.skipped_count} unreadable assets")

    if args.verbose:
        print(f"\nLow quality ({len(result.low_quality)})")
        for record in result.low_quality:
            print(f"  - {record.filename} ({format_file_size(record.byte_size)})")
        print_groups("Duplicates", result.duplicates)
        print_groups("Similar photos", result.similar)

    return 0


def history_command(args, config: SystemConfig):
    """Show recent scans"""
    with ScanHistoryStore(config.database_path) as store:
        summaries = store.list_scan_summaries(limit=args.limit)

    if not summaries:
        print("No scans recorded yet.")
        return 0

    for summary in summaries:
        print(f"{summary['completed_at']}  [{summary['scan_id'][:8]}]  "
              f"{summary['low_quality_count']} low quality, "
              f"{summary['duplicate_count']} duplicate groups, "
              f"{summary['similar_count']} similar groups "
              f"out of {summary['total_scanned']} scanned")
    return 0


def clean_command(args, config: SystemConfig):
    """Remove redundant photos found by the latest scan"""
    with ScanHistoryStore(config.database_path) as store:
        result = store.read_latest_scan_summary()
        if result is None:
            print("No scan to clean up. Run 'scan' first.")
            return 1

        candidates = select_removal_candidates(result, args.include_low_quality)
        total_size = sum(r.byte_size for r in candidates)
        print(f"{len(candidates)} photos proposed for removal "
              f"({format_file_size(total_size)})")
        for record in candidates:
            print(f"  - {record.locator}")

        if not args.execute:
            print("\nDry run. Re-run with --execute to move these files to the trash.")
            return 0

        executor = TrashDeletionExecutor(
            {r.id: r.locator for r in result.records_by_id().values()},
            trash_dir=config.trash_dir
        )
        report = CleanupManager(executor, store).apply_deletion(
            result, [r.id for r in candidates]
        )

    print(f"\nMoved {len(report.deleted_ids)} photos to {config.trash_dir}")
    if not report.complete:
        print(f"Could not remove {len(report.remaining_ids)} photos:")
        for asset_id in sorted(report.remaining_ids):
            print(f"  - {asset_id}")
        return 1
    return 0


def main_cli(argv=None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Photo Declutter - find low quality, duplicate and similar photos"
    )
    parser.add_argument('-c', '--config', default='config.yaml',
                        help='Path to YAML configuration')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Scan command
    scan_parser = subparsers.add_parser('scan', help='Scan a photo directory')
    scan_parser.add_argument('directory', help='Directory containing photos')
    scan_parser.add_argument('-m', '--mode', choices=['auto', 'heuristic', 'embedding'],
                             help='Similarity detection mode')
    scan_parser.add_argument('-n', '--limit', type=int,
                             help='Maximum number of photos to scan')
    extractor_group = scan_parser.add_mutually_exclusive_group()
    extractor_group.add_argument('-e', '--embeddings',
                                 help='.npz file of precomputed embeddings keyed by path')
    extractor_group.add_argument('--clip', action='store_true',
                                 help='Compute CLIP embeddings (needs the clip extra)')
    scan_parser.add_argument('-v', '--verbose', action='store_true',
                             help='List every flagged photo and group')
    scan_parser.set_defaults(func=scan_command)

    # History command
    history_parser = subparsers.add_parser('history', help='Show recent scans')
    history_parser.add_argument('-n', '--limit', type=int, default=10,
                                help='Number of scans to show')
    history_parser.set_defaults(func=history_command)

    # Clean command
    clean_parser = subparsers.add_parser('clean', help='Remove redundant photos')
    clean_parser.add_argument('--include-low-quality', action='store_true',
                              help='Also remove low quality photos')
    clean_parser.add_argument('--execute', action='store_true',
                              help='Actually move files to the trash')
    clean_parser.set_defaults(func=clean_command)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        config = SystemConfig.load(args.config)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}")
        return 2

    setup_logging(config)
    initialize_directories(config)

    try:
        return args.func(args, config)
    except ConfigurationError as e:
        print(f"Invalid option: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main_cli())
