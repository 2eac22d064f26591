"""
pcc-flap-guard: PCC load-balancer flap guard for RouterOS

Watches blackhole sentinel routes (one routing table per uplink) and pulls
uplinks whose sentinel keeps flapping out of the PCC mangle rotation,
escalating the hold-out for persistent flapping and relaxing it again as
the uplink proves stable. See flap_engine.py for the state machine.

Commands:
    pcc-flap-guard run              run passes forever (daemon)
    pcc-flap-guard once             run a single pass and print the result
    pcc-flap-guard history          print recent route events
    pcc-flap-guard config list      print persisted config overrides
    pcc-flap-guard config set K V   persist a config override

Dependencies:
- requests: RouterOS REST API
- loguru: logging
"""

import argparse
import json
import os
import random
import signal
import sys
import threading
import time
from dataclasses import fields as dataclass_fields
from typing import Any, Dict, List, Optional

from loguru import logger

from .config import Config, parse_config_value
from .database import Database
from .flap_engine import RouteEvent
from .metrics import PrometheusExporter
from .orchestrator import PassOrchestrator
from .routeros import RouterOSBreakerOpen, RouterOSClient, RouterOSTimeout
from .state import ClockError, StateRepository

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <7} | {message}"

LEVELS = {
    'debug': 'DEBUG',
    'info': 'INFO',
    'warn': 'WARNING',
    'warning': 'WARNING',
    'error': 'ERROR',
}

PASSWORD_ENV = 'PCC_FLAPGUARD_PASSWORD'

# Event kinds summed over the retained history by the history command
HISTORY_TOTALS = (
    RouteEvent.FLAP.value,
    RouteEvent.ESCALATE.value,
    RouteEvent.PERMANENT.value,
    RouteEvent.REWARD.value,
    RouteEvent.RELEASE.value,
    'rebalance_incomplete',
)

# Signals all background threads to exit cleanly
shutdown_event = threading.Event()


class GuardHost:
    """
    Shared host object handed to every module.

    Modules only rely on log(message, level); levels are the short names
    used throughout the code base (debug, info, warn, error).
    """

    def log(self, message: str, level: str = 'info') -> None:
        logger.opt(depth=1).log(LEVELS.get(level, 'INFO'), message)


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)


# =============================================================================
# OPTIONS
# =============================================================================
# (flag, config field, help). Values are parsed with the config field types.

OPTIONS = [
    ('--db-path', 'db_path', 'Path to the SQLite audit database'),
    ('--router-url', 'router_url', 'RouterOS REST base URL (e.g. https://192.168.88.1)'),
    ('--router-user', 'router_user', 'RouterOS API user'),
    ('--router-verify-tls', 'router_verify_tls', 'Verify the router TLS certificate (true/false)'),
    ('--pass-interval', 'pass_interval', 'Seconds between evaluation passes (default: 30)'),
    ('--flap-threshold', 'flap_threshold_count', 'Counted flaps before escalation (default: 3)'),
    ('--cooldown', 'cooldown_seconds', 'Min seconds between counted flaps (default: 300)'),
    ('--disable-duration', 'disable_duration_seconds', 'Escalation step in seconds (default: 3600)'),
    ('--permanent-threshold', 'permanent_disable_threshold_seconds',
     'Remaining window that becomes permanent (default: 86400)'),
    ('--stable-threshold', 'stable_time_threshold_seconds',
     'Seconds of inactivity per reward (default: 3600)'),
    ('--release-expired-windows', 'release_expired_windows',
     'Re-enable routes whose window expired while stable (default: false)'),
    ('--blackhole-distance', 'blackhole_distance', 'Distance of the sentinel routes (default: 254)'),
    ('--table-marker', 'table_marker', 'Trailing marker stripped from table names (default: ~)'),
    ('--pcc-keyword', 'pcc_tag_keyword', 'Keyword identifying PCC group comments (default: PCC)'),
    ('--stale-route-ttl', 'stale_route_ttl', 'Forget routes unseen for this many seconds'),
    ('--rpc-timeout', 'rpc_timeout_seconds', 'RouterOS request timeout in seconds (default: 15)'),
    ('--rpc-breaker', 'rpc_circuit_breaker_seconds', 'Circuit breaker window in seconds (default: 60)'),
    ('--history-days', 'history_days', 'Days of route events to keep (default: 30)'),
    ('--enable-prometheus', 'enable_prometheus', 'Export Prometheus metrics (default: false)'),
    ('--prometheus-port', 'prometheus_port', 'Prometheus port (default: 9810)'),
    ('--log-level', 'log_level', 'DEBUG, INFO, WARNING or ERROR (default: INFO)'),
    ('--dry-run', 'dry_run', 'Log router mutations instead of applying them (default: false)'),
]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pcc-flap-guard',
        description='Pull flapping uplinks out of RouterOS PCC load balancing'
    )
    for flag, dest, help_text in OPTIONS:
        parser.add_argument(flag, dest=dest, default=None, help=help_text)

    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('run', help='Run evaluation passes until stopped')
    sub.add_parser('once', help='Run a single pass and print the result')

    history = sub.add_parser('history', help='Print recent route events')
    history.add_argument('--table', default=None, help='Only this routing table')
    history.add_argument('--limit', type=int, default=50)

    cfg = sub.add_parser('config', help='Inspect or change persisted overrides')
    cfg_sub = cfg.add_subparsers(dest='config_action', required=True)
    cfg_sub.add_parser('list')
    cfg_set = cfg_sub.add_parser('set')
    cfg_set.add_argument('key')
    cfg_set.add_argument('value')
    return parser


def build_config(args: argparse.Namespace, environ: Optional[Dict[str, str]] = None) -> Config:
    """Build a Config from parsed options; unset options keep their defaults."""
    environ = os.environ if environ is None else environ
    config = Config()
    known = {f.name for f in dataclass_fields(Config)}
    for _flag, dest, _help in OPTIONS:
        value = getattr(args, dest, None)
        if value is None or dest not in known:
            continue
        try:
            setattr(config, dest, parse_config_value(dest, value))
        except ValueError as e:
            raise SystemExit(f"Invalid value for {dest}: {value!r} ({e})")
    config.router_password = environ.get(PASSWORD_ENV, config.router_password)
    return config


# =============================================================================
# COMMANDS
# =============================================================================

def _build_orchestrator(config: Config, host: GuardHost, database: Optional[Database],
                        metrics: Optional[PrometheusExporter] = None) -> PassOrchestrator:
    router = RouterOSClient(config, host)
    repository = StateRepository(host)
    return PassOrchestrator(config, router, repository, host, database=database, metrics=metrics)


def _open_database(config: Config, host: GuardHost) -> Database:
    database = Database(config.db_path, host)
    database.initialize()
    config.load_overrides(database)
    if config._version > 0:
        host.log(f"Loaded config overrides from database (version {config._version})")
    return database


def run_pass_safely(orchestrator: PassOrchestrator, host: GuardHost) -> bool:
    """
    Run one pass; failures are logged and never escape.

    Returns:
        True if the pass completed
    """
    try:
        orchestrator.run_pass()
        return True
    except (RouterOSTimeout, RouterOSBreakerOpen) as e:
        host.log(f"RouterOS degraded: {e}. Skipping this pass.", level='warn')
    except ClockError as e:
        host.log(f"Pass aborted: {e}", level='error')
    except Exception as e:
        host.log(f"Error in evaluation pass: {e}", level='error')
    return False


def cmd_run(config: Config, host: GuardHost) -> int:
    database = _open_database(config, host)

    metrics = None
    if config.enable_prometheus:
        metrics = PrometheusExporter(port=config.prometheus_port, plugin=host)
        if not metrics.start_server():
            host.log("Prometheus metrics disabled due to server startup failure", level='warn')
            metrics = None

    orchestrator = _build_orchestrator(config, host, database, metrics)
    host.log(
        f"pcc-flap-guard started: router={config.router_url}, interval={config.pass_interval}s, "
        f"threshold={config.flap_threshold_count}, dry_run={config.dry_run}"
    )

    def evaluation_loop():
        passes = 0
        while not shutdown_event.is_set():
            run_pass_safely(orchestrator, host)
            passes += 1

            # Roughly hourly, trim the audit log
            if passes % max(1, 3600 // max(1, config.pass_interval)) == 0:
                try:
                    database.cleanup_old_data(days_to_keep=config.history_days)
                except Exception as e:
                    host.log(f"Error cleaning up route events: {e}", level='warn')

            # +/- 10% jitter keeps passes from locking step with router scripts
            jitter = int(config.pass_interval * 0.1)
            sleep_time = config.pass_interval + random.randint(-jitter, jitter)
            if shutdown_event.wait(sleep_time):
                host.log("Evaluation loop stopping due to shutdown signal")
                break

    def handle_shutdown_signal(signum, frame):
        host.log(f"Received signal {signum}, initiating clean shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown_signal)
    signal.signal(signal.SIGINT, handle_shutdown_signal)

    worker = threading.Thread(target=evaluation_loop, daemon=True, name="evaluation-loop")
    worker.start()
    while worker.is_alive():
        worker.join(timeout=1.0)

    if metrics and metrics.is_running():
        metrics.stop_server()
    database.close()
    host.log("pcc-flap-guard stopped")
    return 0


def cmd_once(config: Config, host: GuardHost) -> int:
    database = _open_database(config, host)
    try:
        orchestrator = _build_orchestrator(config, host, database)
        result = orchestrator.run_pass()
        print(json.dumps({"pass": result.to_dict(), "routes": orchestrator.status()}, indent=2))
        return 0
    finally:
        database.close()


def cmd_history(config: Config, host: GuardHost, table: Optional[str], limit: int) -> int:
    database = _open_database(config, host)
    try:
        events: List[Dict[str, Any]] = database.get_recent_route_events(limit=limit, routing_table=table)
        since = int(time.time()) - config.history_days * 86400
        totals = {event: database.count_route_events(event, since) for event in HISTORY_TOTALS}
        print(json.dumps({"events": events, "totals": totals}, indent=2))
        return 0
    finally:
        database.close()


def cmd_config(config: Config, host: GuardHost, action: str,
               key: Optional[str] = None, value: Optional[str] = None) -> int:
    database = _open_database(config, host)
    try:
        if action == 'list':
            print(json.dumps(database.get_all_config_overrides(), indent=2))
            return 0
        result = config.update_runtime(database, key, value)
        print(json.dumps(result, indent=2, default=str))
        return 1 if "error" in result else 0
    finally:
        database.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = build_config(args)
    configure_logging(config.log_level)
    host = GuardHost()

    if args.command == 'run':
        return cmd_run(config, host)
    if args.command == 'once':
        return cmd_once(config, host)
    if args.command == 'history':
        return cmd_history(config, host, args.table, args.limit)
    return cmd_config(config, host, args.config_action,
                      getattr(args, 'key', None), getattr(args, 'value', None))


if __name__ == '__main__':
    sys.exit(main())
