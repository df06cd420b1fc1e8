"""Prometheus metrics for webhook ingress and review outcomes.

Live values are kept in prometheus_client Counter/Histogram objects that are
not registered anywhere. A single collector exposes them added to the
``baseline`` restored from persistent storage, so totals survive restarts.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Iterable

from prometheus_client import (
    CollectorRegistry,
    Counter,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)
from prometheus_client.core import CounterMetricFamily, HistogramMetricFamily, Metric
from prometheus_client.registry import Collector
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DURATION_BUCKETS = (5, 10, 30, 60, 120, 180, 300, 600)


@dataclass(frozen=True)
class _CounterDefinition:
    name: str
    documentation: str
    labelnames: tuple[str, ...] = ("repository",)


PR_CREATED = _CounterDefinition("pr_created_total", "Total number of PRs created")
PR_UPDATED = _CounterDefinition("pr_updated_total", "Total number of PRs updated")
REVIEW_LGTM = _CounterDefinition("review_lgtm_total", "Total number of LGTMs (approvals) from the review agent")
REVIEW_ISSUES = _CounterDefinition("review_issues_found_total", "Total number of issues found by the review agent")
REVIEW_SUCCESS = _CounterDefinition("review_success_total", "Total number of PRs successfully reviewed")
REVIEW_FAILURE = _CounterDefinition(
    "review_failure_total", "Total number of failed reviews", ("repository", "error_type")
)
COUNTERS = (PR_CREATED, PR_UPDATED, REVIEW_LGTM, REVIEW_ISSUES, REVIEW_SUCCESS, REVIEW_FAILURE)

DURATION_NAME = "review_duration_seconds"
DURATION_DOC = "Duration of reviews in seconds"
DURATION_LABELS = ("repository", "status")


# ── Snapshot (the persisted layout) ───────────────────────────────────────


class CounterSample(BaseModel):
    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    value: float = 0.0


class HistogramSample(BaseModel):
    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    buckets: dict[str, float] = Field(default_factory=dict)
    sum: float = 0.0


class MetricsSnapshot(BaseModel):
    counters: dict[str, CounterSample] = Field(default_factory=dict)
    histograms: dict[str, HistogramSample] = Field(default_factory=dict)


def sample_key(name: str, labels: dict[str, str]) -> str:
    return f"{name}:{json.dumps(labels, sort_keys=True)}"


def _bucket_order(le: str) -> float:
    return float(le)


# ── Recorder ──────────────────────────────────────────────────────────────


class MetricsRecorder:
    """Owns the review metrics and the registry they are exposed through."""

    def __init__(self, include_process_metrics: bool = True):
        self._counters = {
            d.name: Counter(d.name, d.documentation, d.labelnames, registry=None) for d in COUNTERS
        }
        self._duration = Histogram(
            DURATION_NAME, DURATION_DOC, DURATION_LABELS, buckets=DURATION_BUCKETS, registry=None
        )
        self._baseline = MetricsSnapshot()
        self._lock = threading.Lock()

        self.registry = CollectorRegistry()
        if include_process_metrics:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)
        self.registry.register(_ReviewMetricsCollector(self))

    # ── Recording ─────────────────────────────────────────────────────

    def record_pr_event(self, repository: str, event_key: str) -> None:
        if event_key == "pullrequest:created":
            self._counters[PR_CREATED.name].labels(repository=repository).inc()
        elif event_key == "pullrequest:updated":
            self._counters[PR_UPDATED.name].labels(repository=repository).inc()

    def record_success(self, repository: str) -> None:
        self._counters[REVIEW_SUCCESS.name].labels(repository=repository).inc()

    def record_failure(self, repository: str, error_type: str) -> None:
        self._counters[REVIEW_FAILURE.name].labels(repository=repository, error_type=error_type).inc()

    def record_approval(self, repository: str) -> None:
        self._counters[REVIEW_LGTM.name].labels(repository=repository).inc()

    def record_issues(self, repository: str, count: int) -> None:
        if count > 0:
            self._counters[REVIEW_ISSUES.name].labels(repository=repository).inc(count)

    def record_duration(self, repository: str, status: str, seconds: float) -> None:
        self._duration.labels(repository=repository, status=status).observe(seconds)

    # ── Persistence hooks ─────────────────────────────────────────────

    def restore(self, snapshot: MetricsSnapshot) -> None:
        """Use ``snapshot`` as the baseline that live values are added to."""
        with self._lock:
            self._baseline = snapshot.model_copy(deep=True)
        logger.info(
            f"Restored {len(snapshot.counters)} counter and {len(snapshot.histograms)} histogram series"
        )

    def snapshot(self) -> MetricsSnapshot:
        """Baseline plus everything recorded since startup."""
        with self._lock:
            merged = self._baseline.model_copy(deep=True)

        for counter in self._counters.values():
            for family in counter.collect():
                for sample in family.samples:
                    if not sample.name.endswith("_total"):
                        continue
                    key = sample_key(sample.name, sample.labels)
                    entry = merged.counters.setdefault(
                        key, CounterSample(name=sample.name, labels=dict(sample.labels))
                    )
                    entry.value += sample.value

        for family in self._duration.collect():
            for sample in family.samples:
                labels = {k: v for k, v in sample.labels.items() if k != "le"}
                key = sample_key(DURATION_NAME, labels)
                entry = merged.histograms.setdefault(key, HistogramSample(name=DURATION_NAME, labels=labels))
                if sample.name.endswith("_bucket"):
                    le = sample.labels["le"]
                    entry.buckets[le] = entry.buckets.get(le, 0.0) + sample.value
                elif sample.name.endswith("_sum"):
                    entry.sum += sample.value

        return merged

    # ── Reading ───────────────────────────────────────────────────────

    def exposition(self) -> bytes:
        return generate_latest(self.registry)

    def counter_value(self, name: str, **labels: str) -> float:
        value = self.registry.get_sample_value(name, labels)
        return value or 0.0

    def histogram_count(self, repository: str, status: str) -> float:
        value = self.registry.get_sample_value(
            f"{DURATION_NAME}_count", {"repository": repository, "status": status}
        )
        return value or 0.0


class _ReviewMetricsCollector(Collector):
    def __init__(self, recorder: MetricsRecorder):
        self._recorder = recorder

    def collect(self) -> Iterable[Metric]:
        snapshot = self._recorder.snapshot()

        for definition in COUNTERS:
            family = CounterMetricFamily(definition.name, definition.documentation, labels=definition.labelnames)
            for sample in snapshot.counters.values():
                if sample.name == definition.name:
                    family.add_metric(_label_values(sample.labels, definition.labelnames), sample.value)
            yield family

        histogram = HistogramMetricFamily(DURATION_NAME, DURATION_DOC, labels=DURATION_LABELS)
        for sample in snapshot.histograms.values():
            if sample.name != DURATION_NAME or "+Inf" not in sample.buckets:
                continue
            buckets = sorted(sample.buckets.items(), key=lambda item: _bucket_order(item[0]))
            histogram.add_metric(_label_values(sample.labels, DURATION_LABELS), buckets, sample.sum)
        yield histogram


def _label_values(labels: dict[str, str], labelnames: tuple[str, ...]) -> list[str]:
    return [labels.get(name, "") for name in labelnames]
