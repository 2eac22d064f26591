"""
Flap / Escalation / Reward engine for pcc-flap-guard

The per-route state machine. A blackhole sentinel becomes *active* when the
path it guards goes down, so the transitions read:

    inactive -> active    candidate flap: pull the path out of rotation,
                          count the flap (debounced), escalate on threshold
    active -> inactive    stabilization: put the path back unless a disable
                          window holds it out, start the reward clock
    inactive -> inactive  continued stability: shrink the disable window
                          (reward); optionally release an expired one
    active -> active      nothing

ESCALATION:
-----------
Every flap_threshold_count counted flaps extend the disable window by
disable_duration_seconds (additively while the window is still running).
Once the remaining window reaches permanent_disable_threshold_seconds the
route is disabled permanently and the engine never touches it again.

REWARD:
-------
Each stable_time_threshold_seconds of continuous inactivity removes
stable_time_threshold_seconds * multiplier from a running window, then
doubles the multiplier. The window is clamped at "now". A window that lapses
while the route stays inactive is not acted on: re-enabling happens on the
next stabilization transition. With release_expired_windows turned on (off
by default) the engine instead releases such a window on the next inactive
pass and returns the members to rotation.

The engine decides; it does not touch the router. Rule actions are returned
in an EngineResult and applied by the orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set, Tuple

from .config import ConfigSnapshot
from .routeros import RouterOSError
from .rule_groups import RuleGroupResolver
from .state import RouteState


class RouteEvent(Enum):
    """Audit events emitted by the engine."""
    FIRST_SEEN = "first_seen"
    FLAP = "flap"
    DEBOUNCED = "debounced"
    ESCALATE = "escalate"
    PERMANENT = "permanent"
    DISABLE_RULES = "disable_rules"
    ENABLE_RULES = "enable_rules"
    STABILIZE = "stabilize"
    REWARD = "reward"
    RELEASE = "release"


@dataclass
class RuleAction:
    """Enable or disable one PCC member."""
    tag: str
    rule_id: str
    enable: bool


@dataclass
class EngineResult:
    """
    Outcome of evaluating one route for one pass.

    Attributes:
        table: Routing table name of the route
        changed: True if enable/disable state was (or would be) touched
        actions: Rule actions for the orchestrator to apply
        events: (event, detail) pairs for the audit log
    """
    table: str
    changed: bool = False
    actions: List[RuleAction] = field(default_factory=list)
    events: List[Tuple[RouteEvent, str]] = field(default_factory=list)

    @property
    def affected_tags(self) -> Set[str]:
        return {action.tag for action in self.actions}

    def emit(self, event: RouteEvent, detail: str = "") -> None:
        self.events.append((event, detail))


class FlapEngine:
    """
    Evaluates the flap state machine for one route at a time.

    Args:
        resolver: RuleGroupResolver with tags refreshed for this pass
        plugin: Host object providing log(message, level)
    """

    def __init__(self, resolver: RuleGroupResolver, plugin):
        self.resolver = resolver
        self.plugin = plugin

    def evaluate(self, state: RouteState, active: bool, now: int,
                 cfg: ConfigSnapshot) -> EngineResult:
        """
        Advance one route by one pass.

        Args:
            state: The route's state (merged with its comment)
            active: Activity observed this pass
            now: Pass-wide Unix timestamp snapshot
            cfg: Pass-wide configuration snapshot

        Returns:
            EngineResult describing rule actions and audit events
        """
        result = EngineResult(table=state.table)
        previous: Optional[bool] = state.previous_active
        state.active = active

        if previous is None:
            result.emit(RouteEvent.FIRST_SEEN, f"active={active}")
            self.plugin.log(f"FLAP: {state.table} first seen (active={active})", level='debug')
        elif state.disable_permanently:
            self.plugin.log(f"FLAP: {state.table} permanently disabled, skipping", level='debug')
        elif not previous and active:
            self._on_activation(state, now, cfg, result)
        elif previous and not active:
            self._on_stabilization(state, now, result)
        elif not previous and not active:
            self._on_continued_stability(state, now, cfg, result)

        state.previous_active = active
        return result

    # =========================================================================
    # Transitions
    # =========================================================================

    def _on_activation(self, state: RouteState, now: int, cfg: ConfigSnapshot,
                       result: EngineResult) -> None:
        """inactive -> active: candidate flap."""
        if not state.window_active(now):
            self._queue_actions(state.table, enable=False, result=result)
            result.changed = True
            result.emit(RouteEvent.DISABLE_RULES, f"{len(result.actions)} members")

        state.clear("stable_since")

        # Cooldown debounce: rapid re-activations count once
        if state.last_flap_time is None or now - state.last_flap_time >= cfg.cooldown_seconds:
            state.flap_count += 1
            state.last_flap_time = now
            result.emit(RouteEvent.FLAP, f"count={state.flap_count}")
            self.plugin.log(
                f"FLAP: {state.table} went down (flap {state.flap_count}/{cfg.flap_threshold_count})",
                level='info'
            )
        else:
            result.emit(RouteEvent.DEBOUNCED, f"{now - state.last_flap_time}s since last flap")
            self.plugin.log(
                f"FLAP: {state.table} went down again within cooldown "
                f"({now - state.last_flap_time}s < {cfg.cooldown_seconds}s), not counted",
                level='debug'
            )

        if state.flap_count >= cfg.flap_threshold_count:
            self._escalate(state, now, cfg, result)

    def _escalate(self, state: RouteState, now: int, cfg: ConfigSnapshot,
                  result: EngineResult) -> None:
        duration = cfg.disable_duration_seconds
        if state.disable_until is None:
            state.disable_until = now + duration
        elif state.disable_until > now:
            state.disable_until += duration
        else:
            state.disable_until = now + duration

        remaining = state.disable_until - now
        result.emit(RouteEvent.ESCALATE, f"remaining={remaining}s")
        self.plugin.log(
            f"ESCALATE: {state.table} disabled for {remaining}s (until {state.disable_until})",
            level='warn'
        )

        if remaining >= cfg.permanent_disable_threshold_seconds:
            state.disable_permanently = True
            result.emit(RouteEvent.PERMANENT, f"remaining={remaining}s")
            self.plugin.log(
                f"ESCALATE: {state.table} reached {remaining}s "
                f"(>= {cfg.permanent_disable_threshold_seconds}s), disabled permanently",
                level='error'
            )

        state.flap_count = 0

    def _on_stabilization(self, state: RouteState, now: int, result: EngineResult) -> None:
        """active -> inactive: the path is back."""
        if not state.window_active(now):
            # Keep an expired window around if members could not be listed,
            # so the release step retries on the next inactive pass
            if self._queue_actions(state.table, enable=True, result=result):
                state.clear("disable_until")
            result.changed = True
            result.emit(RouteEvent.ENABLE_RULES, f"{len(result.actions)} members")
            self.plugin.log(f"STABILIZE: {state.table} recovered, returning to rotation", level='info')
        else:
            self.plugin.log(
                f"STABILIZE: {state.table} recovered but held out for another "
                f"{state.remaining(now)}s",
                level='info'
            )

        state.stable_since = now
        state.reward_multiplier = 1
        result.changed = True
        result.emit(RouteEvent.STABILIZE, f"stable_since={now}")

    def _on_continued_stability(self, state: RouteState, now: int, cfg: ConfigSnapshot,
                                result: EngineResult) -> None:
        """inactive -> inactive: release an expired window or grant a reward."""
        if state.disable_until is not None and not state.window_active(now):
            if cfg.release_expired_windows:
                if not self._queue_actions(state.table, enable=True, result=result):
                    return
                state.clear("disable_until")
                result.changed = True
                result.emit(RouteEvent.RELEASE, f"{len(result.actions)} members")
                self.plugin.log(f"RELEASE: {state.table} disable window expired, returning to rotation",
                                level='info')
            return

        if state.stable_since is None:
            return
        if now - state.stable_since < cfg.stable_time_threshold_seconds:
            return
        if not state.window_active(now):
            return

        multiplier = state.multiplier
        reduction = cfg.stable_time_threshold_seconds * multiplier
        new_until = max(now, state.disable_until - reduction)
        self.plugin.log(
            f"REWARD: {state.table} stable since {state.stable_since}, window "
            f"{state.disable_until} -> {new_until} (multiplier {multiplier})",
            level='info'
        )
        state.disable_until = new_until
        state.stable_since = now
        state.reward_multiplier = multiplier * 2
        result.emit(RouteEvent.REWARD, f"reduction={reduction}s multiplier={multiplier}")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _queue_actions(self, table: str, enable: bool, result: EngineResult) -> bool:
        """
        Queue enable (disabled members) or disable (enabled members) actions.

        Returns:
            False if the members could not be listed this pass
        """
        try:
            members = self.resolver.find_members(table, enabled=not enable)
        except RouterOSError as e:
            self.plugin.log(f"FLAP: Could not resolve PCC members for {table}: {e}", level='warn')
            return False
        for tag, rule_id in members:
            result.actions.append(RuleAction(tag=tag, rule_id=rule_id, enable=enable))
        return True
