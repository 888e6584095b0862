"""
Prometheus metrics for the probe helper.

Each Metrics instance owns its registry, so the two listeners of one process
share an instance and tests can build as many as they like.
"""
import os
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info
import psutil

ROUND_TRIP_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300)


class Metrics:
    def __init__(self, service_name: str = "probe-helper", version: str = "0.1.0", registry: CollectorRegistry | None = None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()
        r = self.registry

        # HTTP
        self.http_requests_total = Counter(
            "http_requests_total", "Total HTTP requests",
            ["service", "method", "path", "status"], registry=r,
        )
        self.http_request_duration = Histogram(
            "http_request_duration_seconds", "HTTP request duration in seconds",
            ["service", "method", "path"], registry=r,
        )
        self.http_requests_active = Gauge(
            "http_requests_active", "HTTP requests in flight", registry=r,
        )

        # Application
        self.app_info = Info("app", "Application information", registry=r)
        self.app_info.info({"service": service_name, "version": version})
        self.app_up = Gauge("app_up", "1 while the service is up", ["service", "version"], registry=r)
        self.app_up.labels(service=service_name, version=version).set(1)

        # Probes
        self.probe_requests_total = Counter(
            "probe_requests_total", "Probe requests by kind and outcome",
            ["kind", "outcome"], registry=r,
        )
        self.probe_round_trip_seconds = Histogram(
            "probe_round_trip_seconds", "Time from admission to delivery of successful probes",
            ["kind"], buckets=ROUND_TRIP_BUCKETS, registry=r,
        )
        self.probe_pending = Gauge("probe_pending", "Probes waiting for delivery", registry=r)
        self.delivered_events_total = Counter(
            "probe_delivered_events_total", "Events delivered to the receiver",
            ["matched"], registry=r,
        )
        self.last_success_timestamp = Gauge(
            "probe_last_success_timestamp_seconds", "Unix time of the last successful round trip",
            registry=r,
        )

        # Process
        self.process_memory_bytes = Gauge(
            "probe_helper_resident_memory_bytes", "Resident memory size in bytes",
            ["service"], registry=r,
        )
        self.process_open_fds = Gauge(
            "probe_helper_open_fds", "Open file descriptors",
            ["service"], registry=r,
        )
        self.update_system_metrics()

    def update_system_metrics(self):
        """Refresh the process gauges from psutil; best effort."""
        try:
            process = psutil.Process(os.getpid())
            self.process_memory_bytes.labels(service=self.service_name).set(process.memory_info().rss)
            # num_fds() is POSIX only
            if hasattr(process, "num_fds"):
                self.process_open_fds.labels(service=self.service_name).set(process.num_fds())
        except psutil.Error:
            pass

    def record_probe(self, kind: str, outcome: str, duration: float | None = None):
        self.probe_requests_total.labels(kind=kind, outcome=outcome).inc()
        if duration is not None:
            self.probe_round_trip_seconds.labels(kind=kind).observe(duration)
        self.update_system_metrics()

    def record_delivery(self, matched: bool):
        self.delivered_events_total.labels(matched=str(matched).lower()).inc()
