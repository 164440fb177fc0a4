"""
Unit tests for the remediation executors.
"""

import pytest

from kubemend.engines.executors import (
    CordonExecutor,
    DeleteExecutor,
    PatchExecutor,
    RestartExecutor,
    ScaleExecutor,
)
from kubemend.exceptions import ConfigurationError, TerminalClusterError
from kubemend.models import ActionTemplate, TargetRef


class TestScaleExecutor:

    @pytest.mark.parametrize("params,current,expected", [
        ({"direction": "up", "replicas": 2}, 3, 5),
        ({"direction": "down", "replicas": 5}, 3, 0),
        ({"direction": "absolute", "replicas": 7}, 3, 7),
        ({"direction": "up", "replicas": 5, "maxReplicas": 6}, 3, 6),
        ({"direction": "down", "replicas": 1, "minReplicas": 3}, 3, 3),
    ])
    def test_desired_replicas(self, params, current, expected):
        assert ScaleExecutor.desired_replicas(params, current) == expected

    def test_validate_rejects_bad_params(self, deployment):
        executor = ScaleExecutor()
        with pytest.raises(ConfigurationError):
            executor.validate(ActionTemplate(name="s", type="scale", params={"direction": "sideways"}), deployment)
        with pytest.raises(ConfigurationError):
            executor.validate(ActionTemplate(name="s", type="scale", params={"minReplicas": 5, "maxReplicas": 2}),
                              deployment)

    @pytest.mark.parametrize("params", [
        {"minReplicas": "two"},
        {"replicas": "3.5"},
        {"maxReplicas": -1},
    ])
    def test_validate_rejects_non_integer_counts(self, params, deployment):
        with pytest.raises(ConfigurationError):
            ScaleExecutor().validate(ActionTemplate(name="s", type="scale", params=params), deployment)

    def test_numeric_strings_are_accepted(self, deployment):
        ScaleExecutor().validate(ActionTemplate(name="s", type="scale", params={"replicas": "2", "maxReplicas": "8"}),
                                 deployment)

    @pytest.mark.asyncio
    async def test_retry_scales_to_same_count(self, cluster, make_policy, make_action, deployment):
        action = make_action(make_policy(), deployment,
                             template=ActionTemplate(name="s", type="scale", params={"replicas": 2}))
        executor = ScaleExecutor()

        await executor.execute(cluster, action)
        result = await executor.execute(cluster, action)

        assert cluster.objects[deployment.key]["spec"]["replicas"] == 5
        assert "already at 5" in result.message


class TestRestartExecutor:

    def test_grace_period_must_be_a_count(self, deployment):
        with pytest.raises(ConfigurationError):
            RestartExecutor().validate(
                ActionTemplate(name="r", type="restart", params={"gracePeriodSeconds": -5}), deployment)
        with pytest.raises(ConfigurationError):
            DeleteExecutor().validate(
                ActionTemplate(name="d", type="delete", params={"gracePeriodSeconds": "soon"}),
                TargetRef(kind="Pod", name="web-1", namespace="prod"))

    @pytest.mark.asyncio
    async def test_workload_restart_is_idempotent(self, cluster, make_policy, make_action, deployment):
        action = make_action(make_policy(), deployment)
        executor = RestartExecutor()

        await executor.execute(cluster, action)
        result = await executor.execute(cluster, action)

        assert len(cluster.mutations) == 1
        assert "already restarted" in result.message

    @pytest.mark.asyncio
    async def test_pod_gone_on_retry_counts_as_success(self, cluster, make_policy, make_action):
        pod = TargetRef(kind="Pod", name="web-1", namespace="prod")
        action = make_action(make_policy(), pod)
        action.attempts = 2

        result = await RestartExecutor().execute(cluster, action)

        assert result.success

    @pytest.mark.asyncio
    async def test_pod_missing_on_first_attempt_fails(self, cluster, make_policy, make_action):
        pod = TargetRef(kind="Pod", name="web-1", namespace="prod")
        action = make_action(make_policy(), pod)
        action.attempts = 1

        with pytest.raises(TerminalClusterError):
            await RestartExecutor().execute(cluster, action)


class TestPatchAndDelete:

    def test_json_patch_body(self):
        body = PatchExecutor.body({"patches": [{"path": "/spec/paused", "value": False}]})
        assert body == [{"op": "replace", "path": "/spec/paused", "value": False}]

    def test_patch_requires_a_body(self, deployment):
        with pytest.raises(ConfigurationError):
            PatchExecutor().validate(ActionTemplate(name="p", type="patch"), deployment)

    def test_nodes_cannot_be_deleted(self):
        node = TargetRef(kind="Node", name="node-1")
        with pytest.raises(ConfigurationError):
            DeleteExecutor().validate(ActionTemplate(name="d", type="delete"), node)

    @pytest.mark.asyncio
    async def test_patch_rollback_replaces_from_snapshot(self, cluster, make_policy, make_action, deployment):
        action = make_action(make_policy(), deployment,
                             template=ActionTemplate(name="p", type="patch", params={"patch": {"spec": {"paused": True}}}))
        snapshot = await cluster.get(deployment)
        snapshot["metadata"]["resourceVersion"] = "42"

        await PatchExecutor().execute(cluster, action)
        await PatchExecutor().rollback(cluster, action, snapshot)

        restored = cluster.objects[deployment.key]
        assert "paused" not in restored["spec"]
        assert "resourceVersion" not in restored["metadata"]


class TestCordonExecutor:

    @pytest.mark.asyncio
    async def test_cordon_and_rollback(self, cluster, make_policy, make_action):
        node = cluster.add(TargetRef(kind="Node", name="node-1"))
        action = make_action(make_policy(), node, template=ActionTemplate(name="c", type="cordon"))
        executor = CordonExecutor()
        snapshot = await cluster.get(node)

        await executor.execute(cluster, action)
        assert cluster.objects[node.key]["spec"]["unschedulable"] is True
        again = await executor.execute(cluster, action)
        assert "already cordoned" in again.message

        await executor.rollback(cluster, action, snapshot)
        assert cluster.objects[node.key]["spec"]["unschedulable"] is False
