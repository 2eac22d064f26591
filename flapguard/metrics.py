"""
Prometheus metrics exporter for pcc-flap-guard

Exposes the flap guard's view of every route and PCC group in the
Prometheus text format on /metrics, using only the standard library.

All metric names are prefixed with 'pcc_flapguard_'.
"""

import socket
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Dict, Optional, Any


class MetricType:
    """Metric type constants."""
    GAUGE = "gauge"
    COUNTER = "counter"


class MetricNames:
    """Standard metric names for pcc-flap-guard."""

    # Per-route gauges
    ROUTE_ACTIVE = "pcc_flapguard_route_active"
    ROUTE_FLAP_COUNT = "pcc_flapguard_route_flap_count"
    ROUTE_DISABLE_REMAINING = "pcc_flapguard_route_disable_remaining_seconds"
    ROUTE_PERMANENT = "pcc_flapguard_route_permanently_disabled"
    ROUTE_REWARD_MULTIPLIER = "pcc_flapguard_route_reward_multiplier"

    # Counters
    FLAPS_TOTAL = "pcc_flapguard_flaps_total"
    ESCALATIONS_TOTAL = "pcc_flapguard_escalations_total"
    REWARDS_TOTAL = "pcc_flapguard_rewards_total"
    RULE_TOGGLES_TOTAL = "pcc_flapguard_rule_toggles_total"
    MUTATION_FAILURES_TOTAL = "pcc_flapguard_mutation_failures_total"

    # Per-group gauges
    GROUP_ENABLED_MEMBERS = "pcc_flapguard_group_enabled_members"

    # System health
    LAST_PASS_TIMESTAMP = "pcc_flapguard_last_pass_timestamp_seconds"
    PASS_DURATION = "pcc_flapguard_pass_duration_seconds"


METRIC_HELP = {
    MetricNames.ROUTE_ACTIVE: "1 if the blackhole sentinel is active (path down)",
    MetricNames.ROUTE_FLAP_COUNT: "Counted flaps since the last daily reset",
    MetricNames.ROUTE_DISABLE_REMAINING: "Seconds left in the disable window",
    MetricNames.ROUTE_PERMANENT: "1 if the route is permanently disabled",
    MetricNames.ROUTE_REWARD_MULTIPLIER: "Current reward multiplier",
    MetricNames.FLAPS_TOTAL: "Counted (debounced) flaps",
    MetricNames.ESCALATIONS_TOTAL: "Disable window escalations",
    MetricNames.REWARDS_TOTAL: "Disable window reductions granted for stability",
    MetricNames.RULE_TOGGLES_TOTAL: "PCC rule enable/disable operations applied",
    MetricNames.MUTATION_FAILURES_TOTAL: "Router mutations that were rejected",
    MetricNames.GROUP_ENABLED_MEMBERS: "Enabled members of a PCC group after rebalancing",
    MetricNames.LAST_PASS_TIMESTAMP: "Unix timestamp of the last completed pass",
    MetricNames.PASS_DURATION: "Wall time of the last completed pass",
}


class PrometheusExporter:
    """
    Thread-safe gauge/counter store with a background /metrics server.

    Usage:
        exporter = PrometheusExporter(port=9810)
        exporter.start_server()
        exporter.set_gauge(MetricNames.ROUTE_ACTIVE, 1, {"table": "to_wan1~"})
        exporter.inc_counter(MetricNames.FLAPS_TOTAL, 1, {"table": "to_wan1~"})
    """

    def __init__(self, port: int = 9810, plugin=None):
        self.port = port
        self.plugin = plugin
        self._lock = threading.Lock()
        # name -> {"type": ..., "help": ..., "values": {frozenset(labels): value}}
        self._metrics: Dict[str, Dict[str, Any]] = {}
        self._server: Optional[HTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._running = False

    def _log(self, message: str, level: str = 'info'):
        if self.plugin:
            self.plugin.log(message, level=level)

    def _series(self, name: str, metric_type: str) -> Dict[Any, float]:
        if name not in self._metrics:
            self._metrics[name] = {
                "type": metric_type,
                "help": METRIC_HELP.get(name, ""),
                "values": {},
            }
        return self._metrics[name]["values"]

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Set a gauge to its current value."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            self._series(name, MetricType.GAUGE)[label_key] = value

    def inc_counter(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None) -> None:
        """Increment a counter."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            series = self._series(name, MetricType.COUNTER)
            series[label_key] = series.get(label_key, 0) + value

    def remove_labels(self, labels: Dict[str, str]) -> int:
        """
        Drop every series carrying these labels (e.g. a pruned route).

        Returns:
            Number of series removed
        """
        wanted = set(labels.items())
        removed = 0
        with self._lock:
            for metric in self._metrics.values():
                for label_key in [k for k in metric["values"] if wanted <= set(k)]:
                    del metric["values"][label_key]
                    removed += 1
        return removed

    def format_prometheus(self) -> str:
        """Render all metrics in the Prometheus text exposition format."""
        lines = []
        with self._lock:
            for name, metric in sorted(self._metrics.items()):
                if metric["help"]:
                    lines.append(f"# HELP {name} {metric['help']}")
                lines.append(f"# TYPE {name} {metric['type']}")
                for label_key, value in sorted(metric["values"].items(), key=lambda x: str(sorted(x[0]))):
                    if label_key:
                        label_part = ",".join(f'{k}="{v}"' for k, v in sorted(label_key))
                        lines.append(f"{name}{{{label_part}}} {value}")
                    else:
                        lines.append(f"{name} {value}")
                lines.append("")
        return "\n".join(lines)

    def _create_request_handler(self):
        exporter = self

        class MetricsHandler(BaseHTTPRequestHandler):

            def log_message(self, format, *args):
                pass

            def do_GET(self):
                try:
                    if self.path not in ('/', '/metrics'):
                        self.send_response(404)
                        self.send_header('Content-Type', 'text/plain')
                        self.end_headers()
                        self.wfile.write(b'Not Found. Try /metrics')
                        return
                    content = exporter.format_prometheus().encode('utf-8')
                    self.send_response(200)
                    self.send_header('Content-Type', 'text/plain; version=0.0.4; charset=utf-8')
                    self.send_header('Content-Length', str(len(content)))
                    self.end_headers()
                    self.wfile.write(content)
                except (BrokenPipeError, ConnectionResetError):
                    # Client went away mid-response
                    pass

        return MetricsHandler

    def start_server(self) -> bool:
        """
        Start the HTTP server in a background thread.

        Returns:
            True if server started successfully, False otherwise
        """
        if self._running:
            return True

        try:
            self._server = HTTPServer(('0.0.0.0', self.port), self._create_request_handler())
            self._server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            self._log(f"Failed to start Prometheus server on port {self.port}: {e}", level='error')
            return False

        self._server_thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="prometheus-exporter"
        )
        self._server_thread.start()
        self._running = True
        self._log(f"Prometheus metrics server started on port {self.port}")
        return True

    def stop_server(self):
        """Stop the HTTP server."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            self._running = False
            self._log("Prometheus metrics server stopped")

    def is_running(self) -> bool:
        return self._running
