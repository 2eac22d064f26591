"""
Pytest fixtures for pcc-flap-guard tests.

Provides a mock host, an in-memory RouterOS double, a frozen clock and
config snapshots.
"""

import os
import sys
import tempfile
from datetime import date, timedelta
from typing import Dict, List, Optional

import pytest
from unittest.mock import MagicMock

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from flapguard.config import Config
from flapguard.routeros import BlackholeRoute, RouterOSError

T0 = 1_700_000_000


class FrozenClock:
    """Clock double: time only moves when a test advances it."""

    def __init__(self, now: int = T0, today: Optional[date] = None):
        self._now = now
        self._today = today or date(2024, 3, 1)

    def now(self) -> int:
        return self._now

    def today(self) -> date:
        return self._today

    def advance(self, seconds: int) -> None:
        self._now += seconds

    def next_day(self) -> None:
        self._today += timedelta(days=1)


class FakeRouter:
    """
    In-memory stand-in for RouterOSClient.

    Routes and mangle rules are plain dicts; failing operations are listed
    in fail_ops (e.g. {"set_enabled", "set_route_comment"}). Group tags in
    fail_group_tags reject the unfiltered member listing used to rebalance.
    """

    def __init__(self):
        self.routes: Dict[str, Dict] = {}
        self.mangle: List[Dict] = []
        self.fail_ops = set()
        # Tags whose whole-group listing (no mark filter) is rejected
        self.fail_group_tags = set()
        self.calls: List[tuple] = []

    def add_route(self, route_id: str, table: str, active: bool = False, comment: str = "") -> None:
        self.routes[route_id] = {"table": table, "active": active, "comment": comment}

    def add_rule(self, rule_id: str, tag: str, mark: str, classifier: str = "both-addresses:2/0",
                 enabled: bool = True, action: str = "mark-connection") -> None:
        self.mangle.append({
            "id": rule_id,
            "comment": tag,
            "mark": mark,
            "classifier": classifier,
            "enabled": enabled,
            "action": action,
        })

    def rule(self, rule_id: str) -> Dict:
        return next(r for r in self.mangle if r["id"] == rule_id)

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_ops:
            raise RouterOSError("PATCH", op, "rejected")

    def list_blackhole_routes(self, distance: int) -> List[BlackholeRoute]:
        self._maybe_fail("list_blackhole_routes")
        return [
            BlackholeRoute(id=route_id, table=r["table"], comment=r["comment"], active=r["active"])
            for route_id, r in self.routes.items()
        ]

    def set_route_comment(self, route_id: str, text: str) -> None:
        self.calls.append(("set_route_comment", route_id, text))
        self._maybe_fail("set_route_comment")
        self.routes[route_id]["comment"] = text

    def list_connection_marking_rules(self):
        self._maybe_fail("list_connection_marking_rules")
        return [(r["id"], r["comment"]) for r in self.mangle if r["action"] == "mark-connection"]

    def list_group_members(self, tag: str, enabled: bool, mark_pattern: Optional[str] = None) -> List[str]:
        self._maybe_fail("list_group_members")
        if mark_pattern is None and tag in self.fail_group_tags:
            raise RouterOSError("GET", "/rest/ip/firewall/mangle", "HTTP 500")
        return [
            r["id"] for r in self.mangle
            if r["comment"] == tag and r["classifier"] and r["enabled"] == enabled
            and (not mark_pattern or mark_pattern in r["mark"])
        ]

    def get_classifier(self, rule_id: str) -> str:
        self._maybe_fail("get_classifier")
        return self.rule(rule_id)["classifier"]

    def set_enabled(self, rule_id: str, enabled: bool) -> None:
        self.calls.append(("set_enabled", rule_id, enabled))
        self._maybe_fail("set_enabled")
        self.rule(rule_id)["enabled"] = enabled

    def set_classifier(self, rule_id: str, value: str) -> None:
        self.calls.append(("set_classifier", rule_id, value))
        self._maybe_fail("set_classifier")
        self.rule(rule_id)["classifier"] = value


def metric_value(exporter, name, labels=None):
    """Value of one series as rendered on /metrics, or None when absent."""
    if labels:
        label_part = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        prefix = f"{name}{{{label_part}}} "
    else:
        prefix = f"{name} "
    for line in exporter.format_prometheus().splitlines():
        if line.startswith(prefix):
            return float(line[len(prefix):])
    return None


@pytest.fixture
def mock_plugin():
    """Create a mock host with a log method."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    return plugin


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def config():
    return Config(db_path=":memory:")


@pytest.fixture
def cfg(config):
    """Default configuration snapshot."""
    return config.snapshot()


@pytest.fixture
def fake_router():
    """Two uplinks, each with one member in a single PCC group."""
    router = FakeRouter()
    router.add_route("*1", "to_wan1~")
    router.add_route("*2", "to_wan2~")
    router.add_rule("*A", "PCC-LB", "to_wan1_conn", "both-addresses:2/0")
    router.add_rule("*B", "PCC-LB", "to_wan2_conn", "both-addresses:2/1")
    return router


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)
