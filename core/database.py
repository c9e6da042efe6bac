# core/database.py

import json
import logging
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

from core.exceptions import PersistenceWriteError
from core.models import ScanResult

logger = logging.getLogger(__name__)


class ScanHistoryStore:
    """
    SQLite store for scan summaries and cached feature vectors

    Summaries are kept newest-first by insertion order. Each row holds
    the counts plus the full JSON payload needed to rebuild a ScanResult.
    """

    def __init__(self, db_path: str = "data/photo_history.db"):
        self.db_path = db_path
        self.conn = None
        self._initialize_database()

    def _initialize_database(self):
        """Create database schema"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)

        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS scan_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scan_id TEXT UNIQUE NOT NULL,
                completed_at TIMESTAMP NOT NULL,
                total_scanned INTEGER NOT NULL,
                skipped_count INTEGER NOT NULL DEFAULT 0,
                low_quality_count INTEGER NOT NULL,
                duplicate_count INTEGER NOT NULL,
                similar_count INTEGER NOT NULL,
                payload TEXT NOT NULL
            )
        """)

        # Caches written before vectors were keyed by feature type are unusable
        columns = {row[1] for row in cursor.execute("PRAGMA table_info(features)")}
        if columns and 'feature_type' not in columns:
            logger.info("Dropping feature cache without feature types")
            cursor.execute("DROP TABLE features")

        # Feature cache, valid only while the content key still matches
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS features (
                asset_id TEXT NOT NULL,
                feature_type TEXT NOT NULL,
                content_key TEXT NOT NULL,
                feature_vector BLOB NOT NULL,
                extraction_date TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(asset_id, feature_type)
            )
        """)

        self.conn.commit()

    def write_scan_summary(self, result: ScanResult):
        """Store a completed scan. Raises PersistenceWriteError."""
        counts = result.summary_counts()

        try:
            self.conn.execute("""
                INSERT OR REPLACE INTO scan_history
                (scan_id, completed_at, total_scanned, skipped_count,
                 low_quality_count, duplicate_count, similar_count, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                result.scan_id,
                result.completed_at,
                counts['total_scanned'],
                counts['skipped_count'],
                counts['low_quality_count'],
                counts['duplicate_count'],
                counts['similar_count'],
                json.dumps(result.to_dict()),
            ))
            self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceWriteError(f"Cannot write scan {result.scan_id}: {e}") from e

        logger.info("Stored scan %s", result.scan_id)

    def read_latest_scan_summary(self) -> Optional[ScanResult]:
        """Most recent scan, or None when no scan has been stored"""
        row = self.conn.execute("""
            SELECT payload FROM scan_history ORDER BY id DESC LIMIT 1
        """).fetchone()

        if row is None:
            return None

        return ScanResult.from_dict(json.loads(row[0]))

    def list_scan_summaries(self, limit: int = 10) -> List[Dict]:
        """Counts of the most recent scans, newest first"""
        cursor = self.conn.execute("""
            SELECT scan_id, completed_at, total_scanned, skipped_count,
                   low_quality_count, duplicate_count, similar_count
            FROM scan_history ORDER BY id DESC LIMIT ?
        """, (limit,))

        columns = [desc[0] for desc in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def cache_features(self, asset_id: str, feature_type: str, content_key: str,
                       feature_vector: np.ndarray):
        """Cache an extracted feature vector"""
        feature_blob = np.asarray(feature_vector, dtype=np.float32).tobytes()

        try:
            self.conn.execute("""
                INSERT OR REPLACE INTO features
                (asset_id, feature_type, content_key, feature_vector)
                VALUES (?, ?, ?, ?)
            """, (asset_id, feature_type, content_key, feature_blob))
            self.conn.commit()
        except sqlite3.Error as e:
            logger.warning("Cannot cache features for %s: %s", asset_id, e)

    def get_cached_features(self, asset_id: str, feature_type: str,
                            content_key: str) -> Optional[np.ndarray]:
        """Retrieve a cached vector if the asset content is unchanged"""
        row = self.conn.execute("""
            SELECT content_key, feature_vector FROM features
            WHERE asset_id = ? AND feature_type = ?
        """, (asset_id, feature_type)).fetchone()

        if row is None or row[0] != content_key:
            return None

        return np.frombuffer(row[1], dtype=np.float32)

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
