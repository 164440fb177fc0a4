"""
Kopf event handlers for the kubemend operator.
"""

import logging

import kopf

from .config import ACTION_PLURAL, ANNOTATION_APPROVED_BY, ANNOTATION_ROLLBACK, CRD_GROUP, CRD_VERSION, POLICY_PLURAL, load_settings
from .exceptions import ConfigurationError, TransientClusterError
from .logging_config import setup_logging
from .metrics import set_component_health
from .operator import KubeMendOperator

config = load_settings()
setup_logging(config.log_level, config.log_format)

LOG = logging.getLogger(__name__)

# ============================================================================
# Global operator instance
# ============================================================================

operator = KubeMendOperator(config)

# ============================================================================
# Lifecycle
# ============================================================================

@kopf.on.startup()
async def startup(settings: kopf.OperatorSettings, **_):
    """Operator startup configuration"""
    settings.posting.level = logging.WARNING
    try:
        await operator.initialize()
        LOG.info(f"Dry run: {config.dry_run}")
        LOG.info(f"AI analyzer: {config.ai.provider or 'disabled'}")
        LOG.info(f"Evaluation interval: {config.evaluation_interval_seconds}s")
    except Exception as e:
        LOG.error(f"Startup failed: {e}")
        set_component_health("startup", False)
        raise


@kopf.on.cleanup()
async def cleanup(**_):
    """Cleanup on operator shutdown"""
    LOG.info("Cleaning up operator resources...")
    await operator.shutdown()

# ============================================================================
# HealingPolicy handlers
# ============================================================================

async def _evaluate(body, name, namespace, patch):
    try:
        status = await operator.evaluate_policy(body)
    except ValueError as e:
        raise kopf.PermanentError(f"Invalid HealingPolicy '{name}': {e}")
    except TransientClusterError as e:
        raise kopf.TemporaryError(f"Evaluation of '{name}' in '{namespace}' failed: {e}", delay=30)
    patch.setdefault("status", {}).update(status)
    if status.get("activeTriggers"):
        LOG.info(f"[{namespace}/{name}] Active triggers: {', '.join(status['activeTriggers'])}")


@kopf.on.create(CRD_GROUP, CRD_VERSION, POLICY_PLURAL)
async def on_policy_create(body, name, namespace, patch, **_):
    LOG.info(f"Created HealingPolicy '{name}' in '{namespace}'")
    await _evaluate(body, name, namespace, patch)


@kopf.on.update(CRD_GROUP, CRD_VERSION, POLICY_PLURAL, field="spec")
async def on_policy_update(body, name, namespace, patch, **_):
    LOG.info(f"Updated HealingPolicy '{name}' in '{namespace}'")
    await _evaluate(body, name, namespace, patch)


@kopf.timer(CRD_GROUP, CRD_VERSION, POLICY_PLURAL, interval=config.evaluation_interval_seconds, idle=5)
async def evaluate_policy(body, name, namespace, patch, **_):
    """Periodic policy evaluation"""
    if not operator.evaluation_due(body):
        return
    LOG.debug(f"Evaluating HealingPolicy '{name}' in '{namespace}'")
    await _evaluate(body, name, namespace, patch)


@kopf.on.delete(CRD_GROUP, CRD_VERSION, POLICY_PLURAL, optional=True)
async def on_policy_delete(name, namespace, **_):
    LOG.info(f"Deleted HealingPolicy '{name}' from '{namespace}'")

# ============================================================================
# HealingAction handlers
# ============================================================================

async def _process(body, name, namespace):
    try:
        action = await operator.process_action(body)
    except ValueError as e:
        raise kopf.PermanentError(f"Invalid HealingAction '{name}': {e}")
    except TransientClusterError as e:
        raise kopf.TemporaryError(f"HealingAction '{namespace}/{name}' stalled: {e}", delay=config.action_requeue_seconds)
    LOG.debug(f"HealingAction '{namespace}/{name}' is {action.phase.value}")


def _is_active(status, **_):
    phase = (status or {}).get("phase")
    return phase in (None, "Pending", "Validating", "Approved", "Executing", "Retrying")


@kopf.on.create(CRD_GROUP, CRD_VERSION, ACTION_PLURAL)
async def on_action_create(body, name, namespace, **_):
    await _process(body, name, namespace)


@kopf.on.resume(CRD_GROUP, CRD_VERSION, ACTION_PLURAL, when=_is_active)
async def on_action_resume(body, name, namespace, **_):
    LOG.info(f"Resuming HealingAction '{namespace}/{name}'")
    await _process(body, name, namespace)


@kopf.timer(CRD_GROUP, CRD_VERSION, ACTION_PLURAL, interval=config.action_requeue_seconds, when=_is_active)
async def requeue_action(body, name, namespace, **_):
    """Picks up approvals and actions whose handler gave up early"""
    await _process(body, name, namespace)


@kopf.on.delete(CRD_GROUP, CRD_VERSION, ACTION_PLURAL, optional=True)
async def on_action_delete(name, namespace, **_):
    operator.forget_action(namespace, name)


@kopf.on.field(CRD_GROUP, CRD_VERSION, ACTION_PLURAL, field="metadata.annotations")
async def on_action_annotations(old, new, body, name, namespace, **_):
    old, new = old or {}, new or {}
    if new.get(ANNOTATION_APPROVED_BY) and not old.get(ANNOTATION_APPROVED_BY):
        LOG.info(f"HealingAction '{namespace}/{name}' approved by {new[ANNOTATION_APPROVED_BY]}")
        await _process(body, name, namespace)
    if new.get(ANNOTATION_ROLLBACK) == "true" and old.get(ANNOTATION_ROLLBACK) != "true":
        try:
            result = await operator.rollback_action(body)
        except ConfigurationError as e:
            raise kopf.PermanentError(f"Rollback of '{namespace}/{name}' refused: {e}")
        LOG.info(f"Rolled back HealingAction '{namespace}/{name}': {result.message}")
