from __future__ import annotations

import logging
from typing import Protocol, Sequence

from prometheus_client import CollectorRegistry, Gauge, push_to_gateway

from .models import METRIC_NAMESPACE, Metric

logger = logging.getLogger(__name__)

PUSHGATEWAY_JOB = "conplicity"


class MetricsSink(Protocol):
    def push(self, metrics: Sequence[Metric]) -> None: ...


def render_metrics(metrics: Sequence[Metric]) -> list[str]:
    return [metric.render() for metric in metrics]


class LogMetricsSink:
    def push(self, metrics: Sequence[Metric]) -> None:
        for line in render_metrics(metrics):
            logger.info("metric %s", line)


class PushgatewaySink:
    """Push metrics to a Prometheus push gateway, grouped by instance."""

    def __init__(self, gateway_url: str, *, instance: str, timeout_seconds: float = 30.0) -> None:
        self.gateway_url = gateway_url
        self.instance = instance
        self.timeout_seconds = timeout_seconds

    def push(self, metrics: Sequence[Metric]) -> None:
        if not metrics:
            logger.info("No metrics to push")
            return

        registry = build_registry(metrics)
        push_to_gateway(
            self.gateway_url,
            job=PUSHGATEWAY_JOB,
            registry=registry,
            grouping_key={"instance": self.instance},
            timeout=self.timeout_seconds,
        )
        logger.info("Pushed %d metric(s) to %s", len(metrics), self.gateway_url)


def build_registry(metrics: Sequence[Metric]) -> CollectorRegistry:
    label_names = sorted({key for metric in metrics for key in metric.labels} | {"what"})
    registry = CollectorRegistry()
    gauge = Gauge(
        METRIC_NAMESPACE,
        "Backup operation exit codes and backup timestamps per volume",
        label_names,
        registry=registry,
    )
    for metric in metrics:
        values = {name: metric.labels.get(name, "") for name in label_names}
        values["what"] = metric.name
        gauge.labels(**values).set(metric.value)
    return registry
