"""
Prometheus metrics emitted by the kubemend operator.

Exposition is left to the hosting process; these are registered on the
default registry.
"""

from typing import Dict

from prometheus_client import Counter, Gauge, Histogram

# ============================================================================
# Prometheus Metrics
# ============================================================================

HEALING_ACTIONS = Counter(
    'kubemend_healing_actions_total',
    'Healing actions by terminal outcome',
    ['action_type', 'namespace', 'status']
)

POLICY_EVALUATIONS = Counter(
    'kubemend_policy_evaluations_total',
    'Policy evaluation passes',
    ['result']
)

AI_ANALYSIS_DURATION = Histogram(
    'kubemend_ai_analysis_duration_seconds',
    'Latency of AI analyzer calls',
    ['model', 'status'],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
)

SAFETY_VALIDATIONS = Counter(
    'kubemend_safety_validations_total',
    'Safety validations',
    ['result', 'check']
)

ACTIONS_IN_FLIGHT = Gauge(
    'kubemend_actions_in_flight',
    'Actions currently holding a safety slot'
)

RECORDS_EVICTED = Counter(
    'kubemend_records_evicted_total',
    'Ledger entries removed by retention sweeps',
    ['ledger']
)

OPERATOR_HEALTH = Gauge(
    'kubemend_operator_health',
    'Operator health',
    ['component']
)

# ============================================================================
# Component Health
# ============================================================================

health_status: Dict[str, bool] = {}


def set_component_health(component: str, status: bool):
    """Set health status for a specific component"""
    health_status[component] = status
    OPERATOR_HEALTH.labels(component=component).set(1 if status else 0)


def get_component_health(component: str) -> bool:
    return health_status.get(component, True)
