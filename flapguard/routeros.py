"""
RouterOS collaborator for pcc-flap-guard

Talks to the RouterOS v7 REST API (/rest/...) with a requests Session.
Exposes exactly the queries and mutations the flap guard needs:

- Route source: blackhole sentinel routes and their comments
- Rule group source: mangle connection-marking rules and PCC members

Hardening:
- Every request carries a timeout
- Circuit breaker per endpoint group (routes / mangle): a timeout or
  connection failure opens the breaker for rpc_circuit_breaker_seconds
- Breaker logs are rate-limited
- dry_run suppresses every mutating call
"""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

from .config import Config

JSON_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}

ROUTE_PATH = "/rest/ip/route"
MANGLE_PATH = "/rest/ip/firewall/mangle"
DEFAULT_TABLE = "main"


class RouterOSError(Exception):
    """A RouterOS request failed or was rejected."""

    def __init__(self, method: str, path: str, message: str):
        self.method = method
        self.path = path
        super().__init__(f"{method} {path}: {message}")


class RouterOSTimeout(RouterOSError):
    """Exception raised when a RouterOS request times out."""

    def __init__(self, method: str, path: str, timeout: int):
        super().__init__(method, path, f"timeout after {timeout}s")


class RouterOSBreakerOpen(RouterOSError):
    """Exception raised when the circuit breaker is open for an endpoint group."""

    def __init__(self, group: str, until_ts: float):
        self.group = group
        self.until_ts = until_ts
        until_str = datetime.fromtimestamp(until_ts).strftime('%H:%M:%S')
        super().__init__("-", group, f"circuit breaker open until {until_str}")


@dataclass
class BlackholeRoute:
    """One sentinel route as listed by the router."""
    id: str
    table: str
    comment: str
    active: bool


def _flag(value: Any) -> bool:
    """RouterOS REST renders booleans as 'true'/'false' strings."""
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("true", "yes")


class RouterOSClient:
    """
    REST client for the collaborator operations of one flap guard pass.

    Args:
        config: Config (router_url, credentials, timeouts, dry_run)
        plugin: Host object providing log(message, level)
        session: Optional pre-built requests.Session (tests inject a mock)
    """

    def __init__(self, config: Config, plugin, session: Optional[requests.Session] = None):
        self.config = config
        self.plugin = plugin
        self.base = config.router_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update(JSON_HEADERS)
        self.session.auth = (config.router_user, config.router_password)
        self._breakers: Dict[str, float] = {}
        self._log_history: Dict[Tuple[str, str], float] = {}

    # =========================================================================
    # Transport
    # =========================================================================

    def _get_group(self, path: str) -> str:
        """Determine endpoint group for circuit breaking."""
        if path.startswith(ROUTE_PATH):
            return "routes"
        if path.startswith(MANGLE_PATH):
            return "mangle"
        return "general"

    def _should_log(self, group: str, msg_type: str, cooldown: int = 60) -> bool:
        """Rate-limit logs to once per cooldown window."""
        now = time.time()
        key = (group, msg_type)
        if now - self._log_history.get(key, 0) > cooldown:
            self._log_history[key] = now
            return True
        return False

    def _request(self, method: str, path: str, params: Optional[Dict[str, str]] = None,
                 json_body: Optional[Dict[str, Any]] = None) -> Any:
        group = self._get_group(path)
        now = time.time()

        until = self._breakers.get(group, 0)
        if until > now:
            if self._should_log(group, "breaker_open"):
                self.plugin.log(
                    f"RouterOS circuit breaker OPEN for '{group}' until "
                    f"{datetime.fromtimestamp(until).strftime('%H:%M:%S')}. Skipping call.",
                    level='warn'
                )
            raise RouterOSBreakerOpen(group, until)

        timeout = self.config.rpc_timeout_seconds
        try:
            resp = self.session.request(
                method,
                f"{self.base}{path}",
                params=params,
                json=json_body,
                timeout=timeout,
                verify=self.config.router_verify_tls,
            )
        except requests.Timeout:
            self._trip(group, f"timeout after {timeout}s on {method} {path}")
            raise RouterOSTimeout(method, path, timeout)
        except requests.ConnectionError as e:
            self._trip(group, f"connection error on {method} {path}: {e}")
            raise RouterOSError(method, path, f"connection error: {e}")

        if not (200 <= resp.status_code < 300):
            raise RouterOSError(method, path, f"HTTP {resp.status_code} {resp.text}")

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise RouterOSError(method, path, f"invalid JSON response: {e}")

    def _trip(self, group: str, reason: str) -> None:
        window = self.config.rpc_circuit_breaker_seconds
        self._breakers[group] = time.time() + window
        self.plugin.log(f"RouterOS {reason}. Group '{group}' breaker tripped for {window}s.", level='warn')

    def _item_path(self, base: str, item_id: str) -> str:
        return f"{base}/{quote(item_id, safe='')}"

    def _patch(self, base: str, item_id: str, body: Dict[str, str], what: str) -> None:
        if self.config.dry_run:
            self.plugin.log(f"[DRY RUN] Would set {what} on {item_id}: {body}")
            return
        self._request("PATCH", self._item_path(base, item_id), json_body=body)

    # =========================================================================
    # Route source
    # =========================================================================

    def list_blackhole_routes(self, distance: int) -> List[BlackholeRoute]:
        """
        List the sentinel blackhole routes.

        Filter: blackhole routes with the given distance outside the main table.
        """
        rows = self._request("GET", ROUTE_PATH, params={"distance": str(distance)}) or []
        routes = []
        for row in rows:
            # Present only on blackhole routes; older builds render it empty
            blackhole = row.get("blackhole")
            if blackhole is None or (blackhole != "" and not _flag(blackhole)):
                continue
            if str(row.get("distance", "")) != str(distance):
                continue
            table = row.get("routing-table", DEFAULT_TABLE)
            if table == DEFAULT_TABLE:
                continue
            routes.append(BlackholeRoute(
                id=row[".id"],
                table=table,
                comment=row.get("comment", ""),
                active=_flag(row.get("active", "false")),
            ))
        return routes

    def set_route_comment(self, route_id: str, text: str) -> None:
        """Replace the comment of a route."""
        self._patch(ROUTE_PATH, route_id, {"comment": text}, "comment")

    # =========================================================================
    # Rule group source
    # =========================================================================

    def _list_mangle(self) -> List[Dict[str, Any]]:
        return self._request("GET", MANGLE_PATH) or []

    def list_connection_marking_rules(self) -> List[Tuple[str, str]]:
        """Return (id, comment) for every mark-connection mangle rule."""
        return [
            (row[".id"], row.get("comment", ""))
            for row in self._list_mangle()
            if row.get("action") == "mark-connection"
        ]

    def list_group_members(self, tag: str, enabled: bool,
                           mark_pattern: Optional[str] = None) -> List[str]:
        """
        Return ids of the classifying members of a group, in table order.

        Args:
            tag: Group tag (the member comment)
            enabled: Only enabled members when True, only disabled when False
            mark_pattern: If given, the connection mark must contain it
        """
        ids = []
        for row in self._list_mangle():
            if row.get("comment", "") != tag:
                continue
            if not row.get("per-connection-classifier"):
                continue
            if _flag(row.get("disabled", "false")) == enabled:
                continue
            if mark_pattern and mark_pattern not in row.get("new-connection-mark", ""):
                continue
            ids.append(row[".id"])
        return ids

    def get_classifier(self, rule_id: str) -> str:
        """Return the per-connection-classifier value of a rule."""
        row = self._request("GET", self._item_path(MANGLE_PATH, rule_id)) or {}
        return row.get("per-connection-classifier", "")

    def set_enabled(self, rule_id: str, enabled: bool) -> None:
        """Enable or disable a mangle rule."""
        self._patch(MANGLE_PATH, rule_id, {"disabled": "false" if enabled else "true"},
                    "enabled" if enabled else "disabled")

    def set_classifier(self, rule_id: str, value: str) -> None:
        """Replace the per-connection-classifier value of a rule."""
        self._patch(MANGLE_PATH, rule_id, {"per-connection-classifier": value}, "classifier")
