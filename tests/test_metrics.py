"""
Tests for the Prometheus exporter.
"""

from flapguard.metrics import MetricNames, PrometheusExporter

from conftest import metric_value


class TestPrometheusExporter:

    def test_gauge_and_counter(self):
        exporter = PrometheusExporter()
        exporter.set_gauge(MetricNames.ROUTE_ACTIVE, 1, {"table": "to_wan1~"})
        exporter.set_gauge(MetricNames.ROUTE_ACTIVE, 0, {"table": "to_wan1~"})
        exporter.inc_counter(MetricNames.FLAPS_TOTAL, 1, {"table": "to_wan1~"})
        exporter.inc_counter(MetricNames.FLAPS_TOTAL, 1, {"table": "to_wan1~"})

        assert metric_value(exporter, MetricNames.ROUTE_ACTIVE, {"table": "to_wan1~"}) == 0
        assert metric_value(exporter, MetricNames.FLAPS_TOTAL, {"table": "to_wan1~"}) == 2
        assert metric_value(exporter, MetricNames.REWARDS_TOTAL) is None

    def test_text_format(self):
        exporter = PrometheusExporter()
        exporter.inc_counter(MetricNames.RULE_TOGGLES_TOTAL, 1, {"group": "PCC-LB", "action": "disable"})
        text = exporter.format_prometheus()

        assert f"# TYPE {MetricNames.RULE_TOGGLES_TOTAL} counter" in text
        assert f"# HELP {MetricNames.RULE_TOGGLES_TOTAL} " in text
        assert f'{MetricNames.RULE_TOGGLES_TOTAL}{{action="disable",group="PCC-LB"}} 1' in text

    def test_remove_labels(self):
        exporter = PrometheusExporter()
        exporter.set_gauge(MetricNames.ROUTE_ACTIVE, 1, {"table": "a"})
        exporter.set_gauge(MetricNames.ROUTE_FLAP_COUNT, 2, {"table": "a"})
        exporter.set_gauge(MetricNames.ROUTE_ACTIVE, 1, {"table": "b"})

        assert exporter.remove_labels({"table": "a"}) == 2
        assert metric_value(exporter, MetricNames.ROUTE_ACTIVE, {"table": "a"}) is None
        assert metric_value(exporter, MetricNames.ROUTE_ACTIVE, {"table": "b"}) == 1

    def test_not_running_by_default(self):
        exporter = PrometheusExporter()
        assert exporter.is_running() is False
        exporter.stop_server()
