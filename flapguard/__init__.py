"""
pcc-flap-guard package

This package contains the modules of the flap guard daemon:
- codec: pccData comment encoding of durable route state
- state: RouteState and the process-local StateRepository
- flap_engine: flap / escalation / reward state machine
- rule_groups: route -> PCC mangle member resolution
- pcc_rebalancer: per-connection-classifier fraction rebalancing
- orchestrator: one evaluation pass over all sentinel routes
- routeros: RouterOS REST collaborator
- config: Configuration and runtime overrides
- database: SQLite audit log
- metrics: Prometheus exporter
"""

from .codec import decode, encode
from .config import Config, ConfigSnapshot
from .database import Database
from .flap_engine import FlapEngine, EngineResult, RuleAction, RouteEvent
from .metrics import PrometheusExporter, MetricNames
from .orchestrator import PassOrchestrator, PassResult
from .pcc_rebalancer import PccRebalancer, RebalanceResult
from .routeros import RouterOSClient, RouterOSError, BlackholeRoute
from .rule_groups import RuleGroupResolver, match_key
from .state import RouteState, StateRepository, SystemClock, ClockError

__all__ = [
    'decode',
    'encode',
    'Config',
    'ConfigSnapshot',
    'Database',
    'FlapEngine',
    'EngineResult',
    'RuleAction',
    'RouteEvent',
    'PrometheusExporter',
    'MetricNames',
    'PassOrchestrator',
    'PassResult',
    'PccRebalancer',
    'RebalanceResult',
    'RouterOSClient',
    'RouterOSError',
    'BlackholeRoute',
    'RuleGroupResolver',
    'match_key',
    'RouteState',
    'StateRepository',
    'SystemClock',
    'ClockError',
]
