"""
Pass orchestrator for pcc-flap-guard

One evaluation pass:

1. Single-flight guard (an overlapping pass is skipped, never queued)
2. Snapshot config, now and today (a failing clock aborts the pass)
3. List sentinel routes and refresh the known PCC tag set
4. Day rollover of the flap counters
5. Per route: merge the comment into the repository, run the engine,
   apply rule actions, write the comment back if it changed
6. If any route changed: rebalance every affected PCC group, strictly
   after all routes were evaluated. A group whose rebalance did not
   complete (member listing or a classifier write rejected) stays pending
   and is rebalanced again on every later pass until it completes
7. Prune routes that have not been listed for stale_route_ttl

Steps 2-3 only read; nothing is mutated until every pass-wide input is
available, so an aborted pass leaves state exactly as the previous one did.
"""

import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from . import codec
from .config import Config
from .flap_engine import EngineResult, FlapEngine, RouteEvent
from .metrics import MetricNames, PrometheusExporter
from .pcc_rebalancer import PccRebalancer, RebalanceResult
from .routeros import BlackholeRoute, RouterOSClient, RouterOSError
from .rule_groups import RuleGroupResolver
from .state import ClockError, RouteState, StateRepository, SystemClock

_EVENT_COUNTERS = {
    RouteEvent.FLAP: MetricNames.FLAPS_TOTAL,
    RouteEvent.ESCALATE: MetricNames.ESCALATIONS_TOTAL,
    RouteEvent.REWARD: MetricNames.REWARDS_TOTAL,
}


@dataclass
class PassResult:
    """Summary of one evaluation pass."""
    skipped: bool = False
    now: int = 0
    routes: int = 0
    changed: List[str] = field(default_factory=list)
    toggles_applied: int = 0
    toggles_failed: int = 0
    comments_written: int = 0
    comments_failed: int = 0
    rebalanced: List[RebalanceResult] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "skipped": self.skipped,
            "now": self.now,
            "routes": self.routes,
            "changed": self.changed,
            "toggles_applied": self.toggles_applied,
            "toggles_failed": self.toggles_failed,
            "comments_written": self.comments_written,
            "comments_failed": self.comments_failed,
            "rebalanced": [r.to_dict() for r in self.rebalanced],
            "pruned": self.pruned,
        }


class PassOrchestrator:
    """
    Runs evaluation passes over all sentinel routes.

    Args:
        config: Mutable Config (snapshotted at the start of every pass)
        router: RouterOSClient (route and rule group source)
        repository: StateRepository shared across passes
        plugin: Host object providing log(message, level)
        clock: Time source with now() and today() (defaults to SystemClock)
        database: Optional Database for the audit log
        metrics: Optional PrometheusExporter
    """

    def __init__(self, config: Config, router: RouterOSClient, repository: StateRepository,
                 plugin, clock=None, database=None,
                 metrics: Optional[PrometheusExporter] = None):
        self.config = config
        self.router = router
        self.repository = repository
        self.plugin = plugin
        self.clock = clock or SystemClock()
        self.database = database
        self.metrics = metrics

        self.resolver = RuleGroupResolver(router, plugin, config.pcc_tag_keyword, config.table_marker)
        self.engine = FlapEngine(self.resolver, plugin)
        self.rebalancer = PccRebalancer(router, plugin)

        self._pass_lock = threading.Lock()
        # Groups whose last rebalance did not complete; retried every pass
        self._pending_tags: Set[str] = set()

    def run_pass(self) -> PassResult:
        """
        Run one pass unless another one is still in progress.

        Raises:
            ClockError: the time source failed (nothing was mutated)
            RouterOSError: routes or tags could not be listed (nothing was mutated)
        """
        if not self._pass_lock.acquire(blocking=False):
            self.plugin.log("PASS: Previous pass still running, skipping this trigger", level='warn')
            return PassResult(skipped=True)
        try:
            return self._run_pass()
        finally:
            self._pass_lock.release()

    def _run_pass(self) -> PassResult:
        cfg = self.config.snapshot()
        try:
            now = self.clock.now()
            today = self.clock.today()
        except Exception as e:
            raise ClockError(f"time source unavailable: {e}") from e

        started = time.monotonic()
        result = PassResult(now=now)

        self.resolver.keyword = cfg.pcc_tag_keyword
        self.resolver.marker = cfg.table_marker
        routes = self.router.list_blackhole_routes(cfg.blackhole_distance)
        self.resolver.refresh_tags()
        result.routes = len(routes)

        self.repository.roll_day(today)

        affected: Set[str] = set()
        for route in routes:
            outcome = self._evaluate_route(route, now, cfg, result)
            if outcome.changed:
                result.changed.append(route.table)
                affected |= outcome.affected_tags

        # Rebalance only after every route was evaluated: one pass may both
        # disable and enable members of the same group
        self._rebalance_groups(affected if result.changed else set(), now, result)

        result.pruned = self.repository.prune(now, cfg.stale_route_ttl)
        if self.metrics:
            for table in result.pruned:
                self.metrics.remove_labels({"table": table})
            self.metrics.set_gauge(MetricNames.LAST_PASS_TIMESTAMP, now)
            self.metrics.set_gauge(MetricNames.PASS_DURATION, round(time.monotonic() - started, 3))

        self.plugin.log(
            f"PASS: {result.routes} routes, {len(result.changed)} changed, "
            f"{result.toggles_applied} toggles ({result.toggles_failed} failed), "
            f"{len(result.rebalanced)} groups rebalanced (pending: {', '.join(self.pending_tags) or '-'}), "
            f"tracking {len(self.repository)} routes"
        )
        return result

    def _rebalance_groups(self, affected: Set[str], now: int, result: PassResult) -> None:
        """
        Rebalance the affected groups plus any group left incomplete earlier.

        Groups go in tag discovery order. Pending groups that no longer exist
        are forgotten.
        """
        self._pending_tags &= set(self.resolver.tags)
        wanted = affected | self._pending_tags
        for tag in self.resolver.tags:
            if tag not in wanted:
                continue
            rebalanced = self.rebalancer.rebalance(tag)
            result.rebalanced.append(rebalanced)
            if not rebalanced.complete:
                self._pending_tags.add(tag)
                self._record(tag, "rebalance_incomplete",
                             rebalanced.error or f"failed: {', '.join(rebalanced.failed)}", None, now)
                if self.metrics:
                    self.metrics.inc_counter(MetricNames.MUTATION_FAILURES_TOTAL, 1, {"kind": "rebalance"})
                continue
            self._pending_tags.discard(tag)
            self._record(tag, "rebalance", f"{rebalanced.members} members", None, now)
            if self.metrics:
                self.metrics.set_gauge(MetricNames.GROUP_ENABLED_MEMBERS, rebalanced.members, {"group": tag})

    @property
    def pending_tags(self) -> List[str]:
        """Groups that will be rebalanced again on the next pass."""
        return [tag for tag in self.resolver.tags if tag in self._pending_tags]

    # =========================================================================
    # Per-route steps
    # =========================================================================

    def _evaluate_route(self, route: BlackholeRoute, now: int, cfg, result: PassResult) -> EngineResult:
        if route.table not in self.repository:
            self.plugin.log(f"STATE: Tracking new route {route.table}", level='debug')
        state = self.repository.get(route.table)
        state.last_seen = now

        persisted = codec.parse_fields(codec.decode(route.comment), self.plugin)
        filled = state.merge_persisted(persisted)
        if filled:
            self.plugin.log(f"STATE: {route.table} restored {', '.join(filled)} from comment", level='debug')

        outcome = self.engine.evaluate(state, route.active, now, cfg)

        for action in outcome.actions:
            try:
                self.router.set_enabled(action.rule_id, action.enable)
                result.toggles_applied += 1
                if self.metrics:
                    self.metrics.inc_counter(
                        MetricNames.RULE_TOGGLES_TOTAL, 1,
                        {"group": action.tag, "action": "enable" if action.enable else "disable"}
                    )
            except RouterOSError as e:
                result.toggles_failed += 1
                self.plugin.log(
                    f"FLAP: Failed to {'enable' if action.enable else 'disable'} "
                    f"{action.rule_id} for {route.table}: {e}",
                    level='warn'
                )
                if self.metrics:
                    self.metrics.inc_counter(MetricNames.MUTATION_FAILURES_TOTAL, 1, {"kind": "rule"})

        for event, detail in outcome.events:
            self._record(route.table, event.value, detail, state.disable_until, now)
            if self.metrics and event in _EVENT_COUNTERS:
                self.metrics.inc_counter(_EVENT_COUNTERS[event], 1, {"table": route.table})

        self._write_comment(route, state, result)
        self._export_route(state, now)
        return outcome

    def _write_comment(self, route: BlackholeRoute, state: RouteState, result: PassResult) -> None:
        """Write the durable fields back, only when the comment actually changes."""
        comment = codec.render_comment(route.comment, state)
        if comment == route.comment:
            return
        try:
            self.router.set_route_comment(route.id, comment)
            result.comments_written += 1
        except RouterOSError as e:
            # In-memory state stays authoritative; next pass retries the write
            result.comments_failed += 1
            self.plugin.log(f"STATE: Failed to persist state for {route.table}: {e}", level='warn')
            if self.metrics:
                self.metrics.inc_counter(MetricNames.MUTATION_FAILURES_TOTAL, 1, {"kind": "comment"})

    def _record(self, subject: str, event: str, detail: str,
                disable_until: Optional[int], now: int) -> None:
        if not self.database:
            return
        try:
            self.database.record_route_event(subject, event, detail, disable_until, now)
        except sqlite3.Error as e:
            self.plugin.log(f"Failed to record {event} for {subject}: {e}", level='warn')

    def _export_route(self, state: RouteState, now: int) -> None:
        if not self.metrics:
            return
        labels = {"table": state.table}
        self.metrics.set_gauge(MetricNames.ROUTE_ACTIVE, 1 if state.active else 0, labels)
        self.metrics.set_gauge(MetricNames.ROUTE_FLAP_COUNT, state.flap_count, labels)
        self.metrics.set_gauge(MetricNames.ROUTE_DISABLE_REMAINING, state.remaining(now), labels)
        self.metrics.set_gauge(MetricNames.ROUTE_PERMANENT, 1 if state.disable_permanently else 0, labels)
        self.metrics.set_gauge(MetricNames.ROUTE_REWARD_MULTIPLIER, state.multiplier, labels)

    def status(self) -> List[Dict[str, Any]]:
        """Current repository contents, for operators."""
        return [state.to_dict() for state in self.repository]
