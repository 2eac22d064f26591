"""
Configuration module for pcc-flap-guard

Contains the Config dataclass that holds all tunable parameters
for the flap guard daemon.

- ConfigSnapshot: Immutable snapshot taken at the start of every pass
- Runtime configuration updates persisted in the database
"""

from dataclasses import dataclass, field
from typing import Dict, Any, FrozenSet, TYPE_CHECKING

if TYPE_CHECKING:
    from .database import Database


# Immutable keys that cannot be changed at runtime
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'db_path',
    'dry_run',  # Safety: don't allow enabling dry_run to hide actions
    'router_url',
    'router_user',
    'router_password',
})

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'flap_threshold_count': int,
    'cooldown_seconds': int,
    'disable_duration_seconds': int,
    'permanent_disable_threshold_seconds': int,
    'stable_time_threshold_seconds': int,
    'release_expired_windows': bool,
    'pass_interval': int,
    'blackhole_distance': int,
    'table_marker': str,
    'pcc_tag_keyword': str,
    'stale_route_ttl': int,
    'router_verify_tls': bool,
    'rpc_timeout_seconds': int,
    'rpc_circuit_breaker_seconds': int,
    'history_days': int,
    'enable_prometheus': bool,
    'prometheus_port': int,
    'log_level': str,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'flap_threshold_count': (1, 1000),
    'cooldown_seconds': (0, 86400),
    'disable_duration_seconds': (1, 7 * 86400),
    'permanent_disable_threshold_seconds': (1, 365 * 86400),
    'stable_time_threshold_seconds': (1, 7 * 86400),
    'pass_interval': (1, 3600),
    'blackhole_distance': (1, 255),
    'stale_route_ttl': (60, 365 * 86400),
    'rpc_timeout_seconds': (1, 300),
    'rpc_circuit_breaker_seconds': (0, 3600),
    'history_days': (1, 3650),
    'prometheus_port': (1, 65535),
}


def parse_config_value(key: str, value: str) -> Any:
    """
    Convert a string option into the declared type of a config field.

    Raises:
        ValueError: if the value cannot be converted
    """
    field_type = CONFIG_FIELD_TYPES.get(key, str)
    if field_type == bool:
        return value.lower() in ('true', '1', 'yes', 'on')
    if field_type == int:
        return int(value)
    if field_type == float:
        return float(value)
    return value


@dataclass
class Config:
    """
    Configuration container for the flap guard daemon.

    All values can be set via command line options at startup.
    """

    # Database path
    db_path: str = '~/.pcc-flap-guard/flapguard.db'

    # Flap detection
    flap_threshold_count: int = 3                    # Counted flaps before escalation
    cooldown_seconds: int = 300                      # Min spacing between counted flaps
    disable_duration_seconds: int = 3600             # Escalation step
    permanent_disable_threshold_seconds: int = 86400 # Remaining window that becomes permanent
    stable_time_threshold_seconds: int = 3600        # Inactivity needed per reward
    release_expired_windows: bool = False            # Re-enable once an expired window is seen inactive

    # Scheduling
    pass_interval: int = 30        # Seconds between evaluation passes

    # Route and rule discovery
    blackhole_distance: int = 254  # Distance of the sentinel blackhole routes
    table_marker: str = '~'        # Trailing marker stripped from table names
    pcc_tag_keyword: str = 'PCC'   # Keyword identifying PCC group comments
    stale_route_ttl: int = 7 * 86400  # Forget routes unseen for this long

    # RouterOS REST access
    router_url: str = 'https://192.168.88.1'
    router_user: str = 'admin'
    router_password: str = ''
    router_verify_tls: bool = True
    rpc_timeout_seconds: int = 15
    rpc_circuit_breaker_seconds: int = 60

    # Audit history
    history_days: int = 30

    # Prometheus Metrics
    enable_prometheus: bool = False
    prometheus_port: int = 9810

    # Logging
    log_level: str = 'INFO'

    # Safety flags
    dry_run: bool = False          # If True, log but don't touch the router

    # Internal version tracking (not a user-configurable option)
    _version: int = field(default=0, repr=False, compare=False)

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for pass execution.

        Every pass captures a snapshot at its start and uses only that
        snapshot, so a runtime update can never produce a torn read.
        """
        return ConfigSnapshot.from_config(self)

    def load_overrides(self, database: 'Database') -> None:
        """Load config overrides from database on startup."""
        overrides = database.get_all_config_overrides()
        for key, value in overrides.items():
            if hasattr(self, key) and key not in IMMUTABLE_CONFIG_KEYS:
                self._apply_override(key, value)
        self._version = database.get_config_version()

    def _apply_override(self, key: str, value: str) -> None:
        """Apply a single override with type conversion."""
        try:
            setattr(self, key, parse_config_value(key, value))
        except (ValueError, TypeError):
            pass  # Keep default if conversion fails

    def update_runtime(self, database: 'Database', key: str, value: str) -> Dict[str, Any]:
        """
        Transactional update: Validate -> Write DB -> Read-Back -> Update Memory.

        Returns:
            Dict with status, old_value, new_value, version
        """
        if key in IMMUTABLE_CONFIG_KEYS:
            return {"error": f"Key '{key}' cannot be changed at runtime"}

        if not hasattr(self, key) or key.startswith('_'):
            return {"error": f"Unknown config key: {key}"}

        field_type = CONFIG_FIELD_TYPES.get(key, str)
        try:
            typed_value = parse_config_value(key, value)
        except (ValueError, TypeError) as e:
            return {"error": f"Invalid value for {key} (expected {field_type.__name__}): {e}"}

        if key in CONFIG_FIELD_RANGES:
            min_val, max_val = CONFIG_FIELD_RANGES[key]
            if not (min_val <= typed_value <= max_val):
                return {"error": f"Value {typed_value} out of range [{min_val}, {max_val}] for {key}"}

        if key == 'table_marker' and len(typed_value) > 1:
            return {"error": "table_marker must be a single character (or empty)"}

        old_value = getattr(self, key)

        new_version = database.set_config_override(key, value)

        read_back = database.get_config_override(key)
        if read_back != value:
            return {"error": "Database write verification failed"}

        setattr(self, key, typed_value)
        self._version = new_version

        return {
            "status": "success",
            "key": key,
            "old_value": old_value,
            "new_value": typed_value,
            "version": new_version
        }


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable configuration snapshot for one evaluation pass.

    Usage:
        def run_pass(self):
            cfg = self.config.snapshot()  # Immutable for this pass
            # All logic uses cfg, never self.config directly
    """
    flap_threshold_count: int
    cooldown_seconds: int
    disable_duration_seconds: int
    permanent_disable_threshold_seconds: int
    stable_time_threshold_seconds: int
    release_expired_windows: bool

    blackhole_distance: int
    table_marker: str
    pcc_tag_keyword: str
    stale_route_ttl: int

    history_days: int
    dry_run: bool

    # Version tracking
    version: int = 0

    @classmethod
    def from_config(cls, config: 'Config') -> 'ConfigSnapshot':
        """Create snapshot from mutable Config."""
        return cls(
            flap_threshold_count=config.flap_threshold_count,
            cooldown_seconds=config.cooldown_seconds,
            disable_duration_seconds=config.disable_duration_seconds,
            permanent_disable_threshold_seconds=config.permanent_disable_threshold_seconds,
            stable_time_threshold_seconds=config.stable_time_threshold_seconds,
            release_expired_windows=config.release_expired_windows,
            blackhole_distance=config.blackhole_distance,
            table_marker=config.table_marker,
            pcc_tag_keyword=config.pcc_tag_keyword,
            stale_route_ttl=config.stale_route_ttl,
            history_days=config.history_days,
            dry_run=config.dry_run,
            version=config._version,
        )
