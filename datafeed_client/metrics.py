from typing import Any, Dict, List, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class MetricsCollector:
    def __init__(self, client_name: str, registry: Optional[CollectorRegistry] = None):
        self.client_name = client_name
        self.registry = registry or CollectorRegistry()

        # Prometheus metrics
        self.polls_total = Counter(
            'datafeed_client_polls_total',
            'Datafeed read calls made by the loop',
            ['client', 'status'],
            registry=self.registry,
        )

        self.poll_duration = Histogram(
            'datafeed_client_poll_duration_seconds',
            'Datafeed read duration in seconds, long-poll wait included',
            ['client'],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry,
        )

        self.events_received = Counter(
            'datafeed_client_events_received_total',
            'Events received from the datafeed',
            ['client'],
            registry=self.registry,
        )

        self.events_requeued = Counter(
            'datafeed_client_events_requeued_total',
            'Events whose processing asked to be retried',
            ['client'],
            registry=self.registry,
        )

        self.activities_dispatched = Counter(
            'datafeed_client_activities_dispatched_total',
            'Events resolved to an activity',
            ['client', 'activity'],
            registry=self.registry,
        )

        self.retries_total = Counter(
            'datafeed_client_retries_total',
            'Total retry attempts',
            ['client', 'operation'],
            registry=self.registry,
        )

        self.node_failures = Counter(
            'datafeed_client_node_failures_total',
            'Node-level failures',
            ['client', 'node'],
            registry=self.registry,
        )

        self.rotations = Counter(
            'datafeed_client_node_rotations_total',
            'Explicit node rotations',
            ['client'],
            registry=self.registry,
        )

        self.loop_running = Gauge(
            'datafeed_client_loop_running',
            'Whether the datafeed loop is polling (1) or not (0)',
            ['client'],
            registry=self.registry,
        )

        self._metrics: Dict[str, Any] = {}
        self._latencies: List[float] = []
        self.reset()

    def record_poll(self, latency: float, event_count: int):
        """Record a successful datafeed read"""
        self._metrics["polls_total"] += 1
        self._metrics["events_received"] += event_count
        self._latencies.append(latency)
        # Keep only last 1000 latencies for percentile calculation
        if len(self._latencies) > 1000:
            self._latencies.pop(0)

        self.polls_total.labels(client=self.client_name, status="success").inc()
        self.poll_duration.labels(client=self.client_name).observe(latency)
        self.events_received.labels(client=self.client_name).inc(event_count)

    def record_poll_failure(self):
        self._metrics["polls_failed"] += 1
        self.polls_total.labels(client=self.client_name, status="failure").inc()

    def record_requeue(self, event_count: int = 1):
        self._metrics["events_requeued"] += event_count
        self.events_requeued.labels(client=self.client_name).inc(event_count)

    def record_dispatch(self, activity: str):
        self._metrics["activities_dispatched"] += 1
        self.activities_dispatched.labels(client=self.client_name, activity=activity).inc()

    def record_retry(self, operation: str):
        self._metrics["retries_total"] += 1
        self.retries_total.labels(client=self.client_name, operation=operation).inc()

    def record_node_failure(self, node: str):
        self._metrics["node_failures"] += 1
        self.node_failures.labels(client=self.client_name, node=node).inc()

    def record_rotation(self):
        self._metrics["rotations"] += 1
        self.rotations.labels(client=self.client_name).inc()

    def record_loop_state(self, running: bool):
        self.loop_running.labels(client=self.client_name).set(1 if running else 0)

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics snapshot"""
        latencies = sorted(self._latencies)
        metrics = self._metrics.copy()

        if latencies:
            metrics.update({
                "poll_latency_p50": latencies[int(len(latencies) * 0.5)],
                "poll_latency_p95": latencies[int(len(latencies) * 0.95)],
                "poll_latency_avg": sum(latencies) / len(latencies),
            })

        polls = self._metrics["polls_total"] + self._metrics["polls_failed"]
        if polls > 0:
            metrics["poll_error_rate"] = self._metrics["polls_failed"] / polls

        return metrics

    def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus format"""
        return generate_latest(self.registry).decode("utf-8")

    def reset(self):
        """Reset the snapshot counters (Prometheus series are left untouched)"""
        self._metrics.clear()
        self._latencies.clear()
        self._metrics.update({
            "polls_total": 0,
            "polls_failed": 0,
            "events_received": 0,
            "events_requeued": 0,
            "activities_dispatched": 0,
            "retries_total": 0,
            "node_failures": 0,
            "rotations": 0,
        })
