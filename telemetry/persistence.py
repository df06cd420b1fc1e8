"""Durable storage for metrics snapshots.

Two backends share one interface:
- JsonFileMetricsStore: ``metrics.json`` in the storage directory
- SQLiteMetricsStore: ``metrics.db`` (WAL) in the storage directory

``create_metrics_store`` picks one from settings and falls back to the flat
file when the database can't be opened. Loading is best-effort: failures
return an empty snapshot so startup is never blocked.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from pydantic import ValidationError

from telemetry.metrics import CounterSample, HistogramSample, MetricsRecorder, MetricsSnapshot, sample_key

if TYPE_CHECKING:
    from common.config import Settings

logger = logging.getLogger(__name__)


class MetricsStore(ABC):
    """Pluggable persistence for metrics snapshots."""

    backend = "abstract"

    @abstractmethod
    def load(self) -> MetricsSnapshot:
        """Return the stored snapshot, or an empty one if nothing is stored."""

    @abstractmethod
    def save(self, snapshot: MetricsSnapshot) -> None:
        """Replace the stored snapshot."""

    def close(self) -> None:
        """Release any resources held by the store. Default is a no-op."""


class JsonFileMetricsStore(MetricsStore):
    backend = "filesystem"

    def __init__(self, storage_dir: str):
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.file_path = self.storage_dir / "metrics.json"

    def load(self) -> MetricsSnapshot:
        if not self.file_path.exists():
            return MetricsSnapshot()
        return MetricsSnapshot.model_validate_json(self.file_path.read_text(encoding="utf-8"))

    def save(self, snapshot: MetricsSnapshot) -> None:
        # Write-then-rename so a crash mid-write never leaves a truncated file.
        fd, tmp_path = tempfile.mkstemp(dir=self.storage_dir, prefix=".metrics-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(snapshot.model_dump_json(indent=2))
            os.replace(tmp_path, self.file_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


_SCHEMA = """
CREATE TABLE IF NOT EXISTS counter_metrics (
    name    TEXT NOT NULL,
    labels  TEXT NOT NULL,
    value   REAL NOT NULL,
    PRIMARY KEY (name, labels)
);
CREATE TABLE IF NOT EXISTS histogram_metrics (
    name    TEXT NOT NULL,
    labels  TEXT NOT NULL,
    bucket  TEXT NOT NULL,
    count   REAL NOT NULL,
    PRIMARY KEY (name, labels, bucket)
);
CREATE TABLE IF NOT EXISTS histogram_sums (
    name    TEXT NOT NULL,
    labels  TEXT NOT NULL,
    sum     REAL NOT NULL,
    PRIMARY KEY (name, labels)
);
"""


class SQLiteMetricsStore(MetricsStore):
    backend = "sqlite"

    def __init__(self, storage_dir: str):
        Path(storage_dir).mkdir(parents=True, exist_ok=True)
        self.db_path = Path(storage_dir) / "metrics.db"
        # Saves run in a worker thread (asyncio.to_thread), one at a time.
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def load(self) -> MetricsSnapshot:
        snapshot = MetricsSnapshot()

        for name, labels_json, value in self._conn.execute(
            "SELECT name, labels, value FROM counter_metrics"
        ):
            labels = json.loads(labels_json)
            snapshot.counters[sample_key(name, labels)] = CounterSample(name=name, labels=labels, value=value)

        for name, labels_json, bucket, count in self._conn.execute(
            "SELECT name, labels, bucket, count FROM histogram_metrics"
        ):
            labels = json.loads(labels_json)
            entry = snapshot.histograms.setdefault(
                sample_key(name, labels), HistogramSample(name=name, labels=labels)
            )
            entry.buckets[bucket] = count

        for name, labels_json, total in self._conn.execute(
            "SELECT name, labels, sum FROM histogram_sums"
        ):
            labels = json.loads(labels_json)
            entry = snapshot.histograms.setdefault(
                sample_key(name, labels), HistogramSample(name=name, labels=labels)
            )
            entry.sum = total

        return snapshot

    def save(self, snapshot: MetricsSnapshot) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM counter_metrics")
            self._conn.execute("DELETE FROM histogram_metrics")
            self._conn.execute("DELETE FROM histogram_sums")
            self._conn.executemany(
                "INSERT INTO counter_metrics (name, labels, value) VALUES (?, ?, ?)",
                [
                    (c.name, json.dumps(c.labels, sort_keys=True), c.value)
                    for c in snapshot.counters.values()
                ],
            )
            self._conn.executemany(
                "INSERT INTO histogram_metrics (name, labels, bucket, count) VALUES (?, ?, ?, ?)",
                [
                    (h.name, json.dumps(h.labels, sort_keys=True), bucket, count)
                    for h in snapshot.histograms.values()
                    for bucket, count in h.buckets.items()
                ],
            )
            self._conn.executemany(
                "INSERT INTO histogram_sums (name, labels, sum) VALUES (?, ?, ?)",
                [
                    (h.name, json.dumps(h.labels, sort_keys=True), h.sum)
                    for h in snapshot.histograms.values()
                ],
            )

    def close(self) -> None:
        self._conn.close()


def create_metrics_store(settings: Settings) -> Optional[MetricsStore]:
    """Build the configured store, or return None when persistence is disabled."""
    if not settings.metrics_persistence_enabled:
        return None

    backend = settings.metrics_persistence_type.lower()
    path = settings.metrics_persistence_path
    try:
        if backend == "sqlite":
            try:
                store: MetricsStore = SQLiteMetricsStore(path)
            except sqlite3.Error as e:
                logger.warning(f"SQLite metrics store unavailable ({e}), falling back to filesystem")
                store = JsonFileMetricsStore(path)
        else:
            if backend != "filesystem":
                logger.warning(f"Unknown metrics persistence type: {backend}. Falling back to filesystem.")
            store = JsonFileMetricsStore(path)
    except OSError as e:
        logger.error(f"Failed to initialize metrics persistence: {e}")
        logger.warning("Metrics will continue without persistence")
        return None

    logger.info(f"Metrics persistence initialized (type: {store.backend}, path: {path})")
    return store


def restore_metrics(recorder: MetricsRecorder, store: MetricsStore) -> bool:
    """Pre-populate ``recorder`` from ``store``. Returns False if loading failed."""
    try:
        snapshot = store.load()
    except (OSError, ValueError, ValidationError, sqlite3.Error) as e:
        logger.warning(f"Failed to load metrics from storage, starting from zero: {e}")
        return False
    recorder.restore(snapshot)
    return True


async def flush_metrics(recorder: MetricsRecorder, store: MetricsStore) -> None:
    try:
        await asyncio.to_thread(store.save, recorder.snapshot())
    except (OSError, sqlite3.Error) as e:
        logger.error(f"Failed to save metrics to storage: {e}")


async def run_periodic_flush(recorder: MetricsRecorder, store: MetricsStore, interval_seconds: float) -> None:
    """Flush forever; cancel the task to stop it."""
    while True:
        await asyncio.sleep(interval_seconds)
        await flush_metrics(recorder, store)
