"""
Optional AI analysis of trigger firings.

The analyzer is advisory. ``analyze_with_timeout`` turns absence, errors
and timeouts into the same "no recommendation" result so evaluation falls
back to its rule-based decision.
"""

import abc
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

from ..config import AISettings
from ..exceptions import AnalyzerError
from ..metrics import AI_ANALYSIS_DURATION, set_component_health
from ..models import HealingPolicy, TargetRef

LOG = logging.getLogger(__name__)

# Answers meaning "do nothing"
SUPPRESS_ACTIONS = frozenset({"none", "no_action", "noop", "ignore"})

ACTION_SYNONYMS = {
    "restart": "restart", "reboot": "restart", "recreate": "restart", "rollout": "restart",
    "scale": "scale", "scale_up": "scale", "scale_out": "scale", "increase_replicas": "scale",
    "delete": "delete", "remove": "delete", "evict": "delete",
    "patch": "patch", "update": "patch", "modify": "patch",
    "cordon": "cordon", "drain": "cordon",
}


@dataclass
class AnalysisContext:
    """What the analyzer sees about one trigger firing"""
    policy: HealingPolicy
    target: TargetRef
    trigger: str
    metrics: Dict[str, float] = field(default_factory=dict)
    proposed_action: str = ""


@dataclass
class Recommendation:
    action: str
    confidence: float
    reasoning: str = ""

    @property
    def suppress(self) -> bool:
        return self.action in SUPPRESS_ACTIONS


class AIAnalyzer(abc.ABC):
    """Capability interface for an analysis model"""

    model: str = "unknown"

    @abc.abstractmethod
    async def analyze(self, context: AnalysisContext) -> Optional[Recommendation]:
        pass


class OllamaAnalyzer(AIAnalyzer):
    """Asks an Ollama model for a JSON recommendation"""

    PROMPT = (
        "You are a Kubernetes reliability assistant. A healing policy fired.\n"
        "Policy: {policy}\nTarget: {target}\nTrigger: {trigger}\nMetrics: {metrics}\n"
        "Proposed action: {proposed}\n"
        "Allowed actions: restart, scale, patch, delete, cordon, none.\n"
        'Answer with JSON only: {{"action": "...", "confidence": 0.0-1.0, "reasoning": "..."}}'
    )

    def __init__(self, endpoint: str, model: str, timeout: float = 30.0):
        self.endpoint = endpoint.rstrip('/')
        self.model = model
        self.session_timeout = aiohttp.ClientTimeout(total=timeout)

    async def analyze(self, context: AnalysisContext) -> Optional[Recommendation]:
        prompt = self.PROMPT.format(
            policy=context.policy.key,
            target=context.target.key,
            trigger=context.trigger,
            metrics=json.dumps(context.metrics, sort_keys=True),
            proposed=context.proposed_action,
        )
        async with aiohttp.ClientSession(timeout=self.session_timeout) as session:
            async with session.post(
                f"{self.endpoint}/api/generate",
                json={"model": self.model, "prompt": prompt, "stream": False, "format": "json"},
                headers={'Accept': 'application/json'}
            ) as resp:
                if resp.status != 200:
                    raise AnalyzerError(f"Analyzer returned status {resp.status}", context={"model": self.model})
                data = await resp.json()
        return parse_recommendation(data.get("response", ""))


def parse_recommendation(raw: Any) -> Recommendation:
    """Normalise a model answer into a Recommendation"""
    try:
        payload = json.loads(raw) if isinstance(raw, str) else dict(raw)
        action = str(payload.get("action", "")).strip().lower().replace("-", "_").replace(" ", "_")
        confidence = float(payload.get("confidence", 0.0))
    except (TypeError, ValueError) as e:
        raise AnalyzerError(f"Unparseable analyzer answer: {e}")

    if action not in SUPPRESS_ACTIONS:
        if action not in ACTION_SYNONYMS:
            raise AnalyzerError(f"Unknown recommended action {action!r}")
        action = ACTION_SYNONYMS[action]
    return Recommendation(
        action=action,
        confidence=min(max(confidence, 0.0), 1.0),
        reasoning=str(payload.get("reasoning", ""))[:1024],
    )


def build_analyzer(settings: AISettings) -> Optional[AIAnalyzer]:
    if not settings.enabled:
        return None
    if settings.provider == "ollama":
        return OllamaAnalyzer(settings.endpoint, settings.model, settings.timeout_seconds)
    return None


async def analyze_with_timeout(analyzer: Optional[AIAnalyzer], context: AnalysisContext,
                               timeout: float) -> Optional[Recommendation]:
    """Consult ``analyzer`` within ``timeout`` seconds; ``None`` means no recommendation"""
    if analyzer is None:
        return None

    start = time.monotonic()
    status = "ok"
    try:
        recommendation = await asyncio.wait_for(analyzer.analyze(context), timeout=timeout)
        set_component_health("ai_analyzer", True)
        return recommendation
    except asyncio.TimeoutError:
        status = "timeout"
        LOG.warning(f"AI analysis timed out after {timeout}s for {context.target.key}")
    except (AnalyzerError, aiohttp.ClientError) as e:
        status = "error"
        LOG.warning(f"AI analysis failed for {context.target.key}: {e}")
    except Exception as e:
        status = "error"
        LOG.error(f"Unexpected AI analyzer failure for {context.target.key}: {e}", exc_info=True)
    finally:
        AI_ANALYSIS_DURATION.labels(model=analyzer.model, status=status).observe(time.monotonic() - start)

    set_component_health("ai_analyzer", False)
    return None
