"""
State repository for pcc-flap-guard

Holds one RouteState per routing table name for the lifetime of the
process. The durable part of each entry is merged in from the route
comment at the start of every pass (see codec.py); the rest lives only
in memory:

- flap_count / last_flap_time: debounced flap counting, reset daily
- disable_until: current disable window

Every field is an explicit Optional. Clearing goes through
RouteState.clear() rather than assigning placeholder values.
"""

import time
from dataclasses import dataclass, fields as dataclass_fields
from datetime import date
from typing import Dict, Iterator, List, Optional


class ClockError(RuntimeError):
    """Raised when the time source cannot provide the pass snapshot."""


class SystemClock:
    """Wall-clock time source: Unix seconds and the local calendar date."""

    def now(self) -> int:
        return int(time.time())

    def today(self) -> date:
        return date.today()


@dataclass
class RouteState:
    """
    Flap state for one monitored route.

    Attributes:
        table: Routing table name (the route identifier)
        active: Activity observed in the current pass
        previous_active: Activity at the end of the prior pass (None = never seen)
        flap_count: Counted flaps since the last daily reset
        last_flap_time: Unix timestamp of the last counted flap
        disable_until: Unix timestamp when the disable window ends (None = not disabled)
        disable_permanently: Terminal exclusion from automated actions
        stable_since: Unix timestamp from which inactivity is measured for rewards
        reward_multiplier: Reward back-off factor (None reads as 1)
        last_seen: Unix timestamp of the last pass that listed this route
    """
    table: str
    active: bool = False
    previous_active: Optional[bool] = None
    flap_count: int = 0
    last_flap_time: Optional[int] = None
    disable_until: Optional[int] = None
    disable_permanently: bool = False
    stable_since: Optional[int] = None
    reward_multiplier: Optional[int] = None
    last_seen: int = 0

    _CLEARABLE = ("previous_active", "last_flap_time", "disable_until",
                  "stable_since", "reward_multiplier")

    def clear(self, name: str) -> None:
        """Unset an optional field."""
        if name not in self._CLEARABLE:
            raise ValueError(f"{name} is not an optional RouteState field")
        setattr(self, name, None)

    @property
    def multiplier(self) -> int:
        """Effective reward multiplier."""
        return self.reward_multiplier if self.reward_multiplier is not None else 1

    def window_active(self, now: int) -> bool:
        """True while a disable window is set and still in the future."""
        return self.disable_until is not None and self.disable_until > now

    def remaining(self, now: int) -> int:
        """Seconds left in the disable window (0 when none)."""
        if self.disable_until is None:
            return 0
        return max(0, self.disable_until - now)

    def merge_persisted(self, persisted: Dict[str, object]) -> List[str]:
        """
        Fill unset fields from decoded comment values.

        In-memory values win while the process is alive; the comment only
        supplies fields that are currently unset.

        Returns:
            Names of the fields that were filled
        """
        filled = []
        if persisted.get("perm") is True and not self.disable_permanently:
            self.disable_permanently = True
            filled.append("disable_permanently")
        if "mult" in persisted and self.reward_multiplier is None:
            self.reward_multiplier = persisted["mult"]
            filled.append("reward_multiplier")
        if "stable" in persisted and self.stable_since is None:
            self.stable_since = persisted["stable"]
            filled.append("stable_since")
        if "rs" in persisted and self.previous_active is None:
            self.previous_active = persisted["rs"]
            filled.append("previous_active")
        return filled

    def to_dict(self) -> Dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {f.name: getattr(self, f.name) for f in dataclass_fields(self)}


class StateRepository:
    """
    Process-local store of RouteState entries.

    Passed explicitly into the engine and orchestrator. Entries are created
    lazily on first reference; flap counters reset wholesale on calendar
    day rollover; entries for routes that stop appearing are pruned once
    they have been unseen for longer than the configured TTL.
    """

    def __init__(self, plugin):
        self.plugin = plugin
        self._states: Dict[str, RouteState] = {}
        self._flap_day: Optional[date] = None

    def get(self, table: str) -> RouteState:
        """Return the state for a table, creating it on first reference."""
        state = self._states.get(table)
        if state is None:
            state = RouteState(table=table)
            self._states[table] = state
        return state

    def __contains__(self, table: str) -> bool:
        return table in self._states

    def __iter__(self) -> Iterator[RouteState]:
        return iter(list(self._states.values()))

    def __len__(self) -> int:
        return len(self._states)

    def roll_day(self, today: date) -> bool:
        """
        Reset every flap counter when the calendar day changed.

        The first call only remembers the day.

        Returns:
            True if counters were reset
        """
        if self._flap_day is None:
            self._flap_day = today
            return False
        if today == self._flap_day:
            return False

        for state in self._states.values():
            state.flap_count = 0
        self.plugin.log(
            f"DAY ROLLOVER: {self._flap_day} -> {today}, reset flap counters "
            f"for {len(self._states)} routes",
            level='info'
        )
        self._flap_day = today
        return True

    def prune(self, now: int, ttl: int) -> List[str]:
        """
        Forget routes that have not been listed for longer than ttl seconds.

        Returns:
            Table names that were removed
        """
        stale = [
            table for table, state in self._states.items()
            if state.last_seen and now - state.last_seen > ttl
        ]
        for table in stale:
            del self._states[table]
        if stale:
            self.plugin.log(f"PRUNE: Forgot {len(stale)} stale routes: {', '.join(stale)}", level='info')
        return stale
