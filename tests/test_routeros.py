"""
Tests for RouterOSClient against a mocked requests Session.

Tests:
- Blackhole route filtering
- Mangle member filtering
- Mutations and dry run
- HTTP errors, timeouts and the circuit breaker
"""

import pytest
import requests
from unittest.mock import MagicMock

from flapguard.config import Config
from flapguard.routeros import (
    RouterOSBreakerOpen,
    RouterOSClient,
    RouterOSError,
    RouterOSTimeout,
)


def response(payload=None, status=200, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    resp.content = b"x" if payload is not None else b""
    resp.json.return_value = payload
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session, mock_plugin):
    config = Config(router_url="https://router.lan/", router_user="guard", router_password="pw")
    return RouterOSClient(config, mock_plugin, session=session)


ROUTES = [
    {".id": "*1", "blackhole": "", "distance": "254", "routing-table": "to_wan1~",
     "comment": "pccData:rs=false", "active": "true"},
    {".id": "*2", "blackhole": "true", "distance": "254", "routing-table": "to_wan2~", "active": "false"},
    {".id": "*3", "blackhole": "", "distance": "254", "routing-table": "main", "active": "true"},
    {".id": "*4", "gateway": "10.0.0.1", "distance": "254", "routing-table": "to_wan3~"},
    {".id": "*5", "blackhole": "", "distance": "1", "routing-table": "to_wan4~"},
]

MANGLE = [
    {".id": "*A", "action": "mark-connection", "comment": "PCC-LB", "disabled": "false",
     "new-connection-mark": "to_wan1_conn", "per-connection-classifier": "both-addresses:2/0"},
    {".id": "*B", "action": "mark-connection", "comment": "PCC-LB", "disabled": "true",
     "new-connection-mark": "to_wan2_conn", "per-connection-classifier": "both-addresses:2/1"},
    {".id": "*C", "action": "mark-connection", "comment": "PCC-LB", "disabled": "false",
     "new-connection-mark": "to_wan1_conn"},
    {".id": "*D", "action": "mark-routing", "comment": "PCC-LB", "disabled": "false",
     "new-routing-mark": "to_wan1"},
]


class TestSession:

    def test_session_configured(self, client, session):
        assert session.auth == ("guard", "pw")
        session.headers.update.assert_called_once()
        assert client.base == "https://router.lan"


class TestRouteSource:

    def test_lists_only_sentinel_routes(self, client, session):
        session.request.return_value = response(ROUTES)
        routes = client.list_blackhole_routes(254)

        assert [r.id for r in routes] == ["*1", "*2"]
        assert routes[0].table == "to_wan1~"
        assert routes[0].active is True
        assert routes[0].comment == "pccData:rs=false"
        assert routes[1].active is False
        assert routes[1].comment == ""

        args, kwargs = session.request.call_args
        assert args == ("GET", "https://router.lan/rest/ip/route")
        assert kwargs["params"] == {"distance": "254"}
        assert kwargs["timeout"] == 15

    def test_set_route_comment(self, client, session):
        session.request.return_value = response({})
        client.set_route_comment("*1", "pccData:rs=true")

        args, kwargs = session.request.call_args
        assert args == ("PATCH", "https://router.lan/rest/ip/route/%2A1")
        assert kwargs["json"] == {"comment": "pccData:rs=true"}


class TestRuleGroupSource:

    def test_connection_marking_rules(self, client, session):
        session.request.return_value = response(MANGLE)
        assert client.list_connection_marking_rules() == [("*A", "PCC-LB"), ("*B", "PCC-LB"), ("*C", "PCC-LB")]

    def test_group_members_by_enabled_state(self, client, session):
        session.request.return_value = response(MANGLE)
        assert client.list_group_members("PCC-LB", True) == ["*A"]
        assert client.list_group_members("PCC-LB", False) == ["*B"]
        assert client.list_group_members("PCC-LB", True, "to_wan2") == []
        assert client.list_group_members("PCC-Guest", True) == []

    def test_get_classifier(self, client, session):
        session.request.return_value = response(MANGLE[0])
        assert client.get_classifier("*A") == "both-addresses:2/0"

    def test_set_enabled(self, client, session):
        session.request.return_value = response({})
        client.set_enabled("*A", False)
        assert session.request.call_args[1]["json"] == {"disabled": "true"}
        client.set_enabled("*A", True)
        assert session.request.call_args[1]["json"] == {"disabled": "false"}

    def test_set_classifier(self, client, session):
        session.request.return_value = response(None)
        client.set_classifier("*A", "both-addresses:1/0")
        assert session.request.call_args[1]["json"] == {"per-connection-classifier": "both-addresses:1/0"}


class TestDryRun:

    def test_mutations_are_logged_not_sent(self, session, mock_plugin):
        config = Config(dry_run=True)
        client = RouterOSClient(config, mock_plugin, session=session)

        client.set_enabled("*A", False)
        client.set_classifier("*A", "both-addresses:1/0")
        client.set_route_comment("*1", "pccData:")

        session.request.assert_not_called()
        messages = [c.args[0] for c in mock_plugin.log.call_args_list]
        assert all(m.startswith("[DRY RUN]") for m in messages)
        assert len(messages) == 3

    def test_reads_still_go_out(self, session, mock_plugin):
        client = RouterOSClient(Config(dry_run=True), mock_plugin, session=session)
        session.request.return_value = response(ROUTES)
        assert len(client.list_blackhole_routes(254)) == 2


class TestErrors:

    def test_http_error(self, client, session):
        session.request.return_value = response(None, status=400, text="bad request")
        with pytest.raises(RouterOSError) as excinfo:
            client.set_enabled("*A", True)
        assert "HTTP 400" in str(excinfo.value)

    def test_invalid_json(self, client, session):
        resp = response([])
        resp.json.side_effect = ValueError("garbage")
        session.request.return_value = resp
        with pytest.raises(RouterOSError):
            client.list_blackhole_routes(254)

    def test_timeout_trips_breaker_for_group(self, client, session):
        session.request.side_effect = requests.Timeout()
        with pytest.raises(RouterOSTimeout):
            client.list_blackhole_routes(254)

        session.request.reset_mock()
        with pytest.raises(RouterOSBreakerOpen):
            client.set_route_comment("*1", "x")
        session.request.assert_not_called()

        # Mangle endpoints have their own breaker
        session.request.side_effect = None
        session.request.return_value = response(MANGLE)
        assert client.list_group_members("PCC-LB", True) == ["*A"]

    def test_connection_error_trips_breaker(self, client, session):
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(RouterOSError):
            client.list_connection_marking_rules()
        with pytest.raises(RouterOSBreakerOpen):
            client.list_connection_marking_rules()

    def test_breaker_disabled_with_zero_window(self, session, mock_plugin):
        client = RouterOSClient(Config(rpc_circuit_breaker_seconds=0), mock_plugin, session=session)
        session.request.side_effect = requests.Timeout()
        with pytest.raises(RouterOSTimeout):
            client.list_blackhole_routes(254)
        with pytest.raises(RouterOSTimeout):
            client.list_blackhole_routes(254)
