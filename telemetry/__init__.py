from .metrics import MetricsRecorder, MetricsSnapshot
from .persistence import (
    JsonFileMetricsStore,
    MetricsStore,
    SQLiteMetricsStore,
    create_metrics_store,
    flush_metrics,
    restore_metrics,
    run_periodic_flush,
)

__all__ = [
    "MetricsRecorder",
    "MetricsSnapshot",
    "MetricsStore",
    "JsonFileMetricsStore",
    "SQLiteMetricsStore",
    "create_metrics_store",
    "flush_metrics",
    "restore_metrics",
    "run_periodic_flush",
]
