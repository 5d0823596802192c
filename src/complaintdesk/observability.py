"""Metrics helpers: structured log lines with optional Prometheus export."""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")

_PROM_TYPES = {
    "counter": (Counter, "counter"),
    "gauge": (Gauge, "gauge"),
    "histogram": (Histogram, "duration"),
}


class MetricsRecorder:
    """Emit metrics as ``namespace.metric key=value`` log lines and Prometheus samples."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "complaintdesk",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "complaintdesk"
        self._logger = logger or logging.getLogger("complaintdesk.metrics")
        self._prometheus_enabled = prometheus_enabled
        if registry is None and prometheus_enabled:
            registry = CollectorRegistry()
        self._registry = registry
        self._collectors: dict[tuple[str, str, tuple[str, ...]], Any] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._prometheus_enabled and self._registry is not None

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if not self.prometheus_enabled:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._registry)

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        if not self._enabled:
            return
        value = int(value)
        clean_tags = _clean(tags)
        self._emit(metric, {"value": value}, clean_tags)
        self._observe("counter", metric, float(max(value, 0)), clean_tags)

    def set_gauge(self, metric: str, value: float, **tags: Any) -> None:
        if not self._enabled:
            return
        clean_tags = _clean(tags)
        self._emit(metric, {"value": value}, clean_tags)
        self._observe("gauge", metric, float(value), clean_tags)

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Log a duration in milliseconds and observe it in seconds."""

        if not self._enabled:
            return
        duration_seconds = max(duration_seconds, 0.0)
        clean_tags = _clean(tags)
        self._emit(metric, {"duration_ms": round(duration_seconds * 1000.0, 4)}, clean_tags)
        self._observe("histogram", metric, duration_seconds, clean_tags)

    @contextmanager
    def track_timing(self, metric: str, **tags: Any):
        if not self._enabled:
            yield
            return
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(metric, time.perf_counter() - start, **tags)

    def _emit(self, metric: str, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        segments = [f"{key}={_stringify(value)}" for key, value in sorted(fields.items())]
        segments.extend(f"{key}={_stringify(value)}" for key, value in sorted(tags.items()))
        message = f"{self._namespace}.{metric}"
        if segments:
            message = f"{message} {' '.join(segments)}"
        self._logger.info(message)

    def _observe(self, kind: str, metric: str, value: float, tags: dict[str, Any]) -> None:
        if not self.prometheus_enabled:
            return
        label_keys = tuple(sorted(tags))
        label_names = tuple(_PROM_NAME_RE.sub("_", key) or "label" for key in label_keys)
        key = (kind, metric, label_names)
        collector = self._collectors.get(key)
        if collector is None:
            collector_cls, description = _PROM_TYPES[kind]
            collector = collector_cls(
                self._prom_metric_name(metric),
                f"{metric} {description}",
                labelnames=list(label_names),
                registry=self._registry,
            )
            self._collectors[key] = collector
        target = collector
        if label_names:
            target = collector.labels(
                **{name: _stringify(tags[raw]) for name, raw in zip(label_names, label_keys)}
            )
        if kind == "counter":
            target.inc(value)
        elif kind == "gauge":
            target.set(value)
        else:
            target.observe(value)

    def _prom_metric_name(self, metric: str) -> str:
        namespace = _PROM_NAME_RE.sub("_", self._namespace)
        return f"{namespace}_{_PROM_NAME_RE.sub('_', metric)}".strip("_")


def _clean(tags: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in tags.items() if value is not None}


def _stringify(value: Any) -> str:
    if isinstance(value, float):
        return f"{int(value)}" if value.is_integer() else f"{value:.4f}"
    return str(value)


__all__ = ["MetricsRecorder"]
