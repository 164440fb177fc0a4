"""
Unit tests for the metrics collector and the AI analyzer gateway.
"""

import pytest
from unittest.mock import AsyncMock, patch

import aiohttp

from kubemend.clients.prometheus import PrometheusClient, PrometheusMetricsCollector
from kubemend.config import AISettings
from kubemend.engines.analyzer import (
    AIAnalyzer,
    AnalysisContext,
    OllamaAnalyzer,
    analyze_with_timeout,
    build_analyzer,
    parse_recommendation,
)
from kubemend.exceptions import AnalyzerError, MetricsError, TransientClusterError
from kubemend.metrics import get_component_health
from kubemend.models import ResourceSelector, TargetRef, Trigger
from kubemend.utils import to_iso


def pod_event(clock, pod, reason="BackOff", age=30, event_type="Warning"):
    return {
        "metadata": {"namespace": "prod", "name": f"{pod}.{age}"},
        "involvedObject": {"kind": "Pod", "name": pod, "namespace": "prod"},
        "reason": reason,
        "type": event_type,
        "lastTimestamp": to_iso(clock() - age),
    }


class TestPrometheusMetricsCollector:

    def test_query_placeholders(self):
        target = TargetRef(kind="Deployment", name="web", namespace="prod")
        trigger = Trigger(name="q", threshold=1, type="query",
                          query='sum(up{namespace="$namespace",pod=~"$pod_regex"})')

        query = PrometheusMetricsCollector.query_for(trigger, target)

        assert query == 'sum(up{namespace="prod",pod=~"web-.*"})'

    def test_builtin_metric_query(self):
        target = TargetRef(kind="Pod", name="web-1", namespace="prod")
        query = PrometheusMetricsCollector.query_for(Trigger(name="cpu_usage_percent", threshold=90), target)

        assert 'pod=~"web-1"' in query
        assert PrometheusMetricsCollector.query_for(Trigger(name="unknown", threshold=1), target) is None

    @pytest.mark.asyncio
    async def test_fetch_metrics_per_target(self, cluster, make_policy):
        cluster.add(TargetRef(kind="Deployment", name="web", namespace="prod"))
        cluster.add(TargetRef(kind="Deployment", name="api", namespace="prod"))
        prometheus = AsyncMock()
        prometheus.query.side_effect = [95.0, MetricsError("Prometheus query timed out")]
        collector = PrometheusMetricsCollector(cluster, prometheus)

        results = await collector.fetch_metrics(make_policy())

        by_name = {r.target.name: r for r in results}
        assert by_name["web"].values == {"cpu_usage_percent": 95.0}
        assert by_name["web"].error is None
        assert "timed out" in by_name["api"].error

    @pytest.mark.asyncio
    async def test_excluded_targets_are_dropped(self, cluster, make_policy):
        cluster.add(TargetRef(kind="Deployment", name="web", namespace="prod"))
        cluster.add(TargetRef(kind="Deployment", name="canary", namespace="prod"))
        policy = make_policy()
        policy.selector = ResourceSelector(resources=[{"kind": "Deployment", "excludeNames": ["canary"]}])
        collector = PrometheusMetricsCollector(cluster, AsyncMock())

        targets = await collector.resolve_targets(policy)

        assert [t.target.name for t in targets] == ["web"]

    @pytest.mark.asyncio
    async def test_event_trigger_counts_recent_pod_events(self, cluster, clock, make_policy, deployment):
        cluster.events = [
            pod_event(clock, "web-7d9f-abcde"),
            pod_event(clock, "web-7d9f-fghij", age=100),
            pod_event(clock, "web-7d9f-abcde", age=1000),
            pod_event(clock, "web-7d9f-abcde", reason="Pulled", event_type="Normal"),
            pod_event(clock, "api-5c4b-klmno"),
        ]
        policy = make_policy(triggers=[{"name": "crash-loop", "type": "event", "reason": "BackOff",
                                        "eventType": "Warning", "count": 2, "windowSeconds": 600}])
        prometheus = AsyncMock()
        collector = PrometheusMetricsCollector(cluster, prometheus, clock=clock)

        results = await collector.fetch_metrics(policy)

        assert results[0].values == {"crash-loop": 2.0}
        assert policy.triggers[0].is_satisfied(results[0].values)
        prometheus.query.assert_not_called()

    @pytest.mark.asyncio
    async def test_event_listing_failure_is_a_metrics_error(self, cluster, clock, make_policy, deployment):
        cluster.fail("list_events", TransientClusterError("Service Unavailable (503)", status=503))
        policy = make_policy(triggers=[{"name": "crash-loop", "type": "event", "reason": "BackOff"}])
        collector = PrometheusMetricsCollector(cluster, AsyncMock(), clock=clock)

        results = await collector.fetch_metrics(policy)

        assert "Cannot list events" in results[0].error

    @pytest.mark.asyncio
    async def test_condition_trigger_reports_age(self, cluster, clock, make_policy):
        cluster.add(TargetRef(kind="Deployment", name="web", namespace="prod"), {"status": {"conditions": [
            {"type": "Progressing", "status": "True", "lastTransitionTime": to_iso(clock() - 900)},
            {"type": "Available", "status": "False", "lastTransitionTime": to_iso(clock() - 200)},
        ]}})
        cluster.add(TargetRef(kind="Deployment", name="api", namespace="prod"), {"status": {"conditions": [
            {"type": "Available", "status": "True", "lastTransitionTime": to_iso(clock() - 200)},
        ]}})
        policy = make_policy(triggers=[{"name": "unavailable", "type": "condition", "conditionType": "Available",
                                        "conditionStatus": "False", "durationSeconds": 120}])
        collector = PrometheusMetricsCollector(cluster, AsyncMock(), clock=clock)

        results = {r.target.name: r for r in await collector.fetch_metrics(policy)}

        assert results["web"].values == {"unavailable": 200.0}
        assert policy.triggers[0].is_satisfied(results["web"].values)
        assert results["api"].values == {}


class TestPrometheusClient:

    @pytest.mark.asyncio
    async def test_unreachable_server_is_unhealthy(self):
        session = AsyncMock()
        session.__aenter__.side_effect = aiohttp.ClientConnectionError("connection refused")

        with patch("kubemend.clients.prometheus.aiohttp.ClientSession", return_value=session):
            healthy = await PrometheusClient("http://prometheus:9090/").health_check()

        assert not healthy
        assert get_component_health("prometheus") is False


class FailingAnalyzer(AIAnalyzer):
    model = "failing"

    async def analyze(self, context):
        raise AnalyzerError("garbage answer")


class TestAnalyzer:

    def test_parse_normalises_synonyms(self):
        recommendation = parse_recommendation('{"action": "Scale Up", "confidence": 1.7, "reasoning": "load"}')

        assert recommendation.action == "scale"
        assert recommendation.confidence == 1.0

    def test_parse_rejects_unknown_actions(self):
        with pytest.raises(AnalyzerError):
            parse_recommendation({"action": "reformat-disk", "confidence": 0.9})
        with pytest.raises(AnalyzerError):
            parse_recommendation("not json")

    def test_build_analyzer(self):
        assert build_analyzer(AISettings()) is None
        analyzer = build_analyzer(AISettings(provider="ollama", endpoint="http://ollama:11434/"))
        assert isinstance(analyzer, OllamaAnalyzer)
        assert analyzer.endpoint == "http://ollama:11434"

    @pytest.mark.asyncio
    async def test_errors_mean_no_recommendation(self, make_policy, deployment):
        context = AnalysisContext(policy=make_policy(), target=deployment, trigger="high-cpu")

        assert await analyze_with_timeout(None, context, 1.0) is None
        assert await analyze_with_timeout(FailingAnalyzer(), context, 1.0) is None
        assert get_component_health("ai_analyzer") is False

    @pytest.mark.asyncio
    async def test_ollama_answer_is_parsed(self, make_policy, deployment):
        analyzer = OllamaAnalyzer("http://ollama:11434", "llama2:13b")
        context = AnalysisContext(policy=make_policy(), target=deployment, trigger="high-cpu",
                                  metrics={"cpu_usage_percent": 97.0}, proposed_action="restart")

        response = AsyncMock()
        response.status = 200
        response.json.return_value = {"response": '{"action": "restart", "confidence": 0.8}'}
        post = AsyncMock()
        post.__aenter__.return_value = response
        session = AsyncMock()
        session.post = lambda *args, **kwargs: post
        session.__aenter__.return_value = session

        with patch("kubemend.engines.analyzer.aiohttp.ClientSession", return_value=session):
            recommendation = await analyzer.analyze(context)

        assert recommendation.action == "restart"
        assert recommendation.confidence == 0.8
