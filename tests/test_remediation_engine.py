"""
Unit tests for the Remediation Engine.
"""

import pytest

from kubemend.engines.executors import RestartExecutor
from kubemend.exceptions import ConfigurationError, TerminalClusterError, TransientClusterError
from kubemend.models import ActionPhase, ActionTemplate, Outcome, TargetRef, transition


async def approve(safety, action, policy):
    action.verdict = await safety.validate(action, policy)
    assert action.verdict.approved
    transition(action, ActionPhase.VALIDATING)
    transition(action, ActionPhase.APPROVED)
    return action


class BrokenRestartExecutor(RestartExecutor):

    async def execute(self, client, action):
        raise RuntimeError("unexpected None in pod spec")


class TestExecution:

    @pytest.mark.asyncio
    async def test_restart_deployment_succeeds(self, engine, safety, recorder, cluster, make_policy, make_action, deployment):
        policy = make_policy()
        action = await approve(safety, make_action(policy, deployment), policy)

        await engine.execute(action)

        assert action.phase is ActionPhase.SUCCEEDED
        assert action.attempts == 1
        assert action.start_time is not None and action.completion_time is not None
        history = recorder.history(action.key)
        assert [r.outcome for r in history] == [Outcome.SUCCEEDED]
        assert cluster.mutations[0][0] == "patch"
        assert safety.store.in_flight() == 0

    @pytest.mark.asyncio
    async def test_transient_conflict_then_success_records_once(self, engine, safety, recorder, cluster,
                                                                make_policy, make_action, deployment):
        policy = make_policy()
        action = await approve(safety, make_action(policy, deployment), policy)
        cluster.fail("patch", TransientClusterError("Conflict (409)", status=409))

        await engine.execute(action)

        assert action.phase is ActionPhase.SUCCEEDED
        assert action.attempts == 2
        assert "Retrying" in [c["type"] for c in action.conditions]
        history = recorder.history(action.key)
        assert len(history) == 1
        assert history[0].outcome is Outcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, engine, safety, recorder, cluster, make_policy, make_action, deployment):
        policy = make_policy()
        action = await approve(safety, make_action(policy, deployment), policy)
        cluster.fail("patch", *[TransientClusterError("Service Unavailable (503)", status=503) for _ in range(3)])

        await engine.execute(action)

        assert action.phase is ActionPhase.FAILED
        assert action.attempts == 3
        history = recorder.history(action.key)
        assert len(history) == 1
        assert history[0].outcome is Outcome.FAILED
        assert "503" in history[0].error
        assert safety.store.peek(policy.key, deployment.key).consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_terminal_error_fails_without_retry(self, engine, safety, recorder, cluster,
                                                      make_policy, make_action, deployment):
        policy = make_policy()
        action = await approve(safety, make_action(policy, deployment), policy)
        cluster.fail("get", TerminalClusterError("Forbidden (403)", status=403))

        await engine.execute(action)

        assert action.phase is ActionPhase.FAILED
        assert action.attempts == 1
        assert cluster.mutations == []

    @pytest.mark.asyncio
    async def test_inapplicable_template_fails_before_any_call(self, engine, safety, cluster, make_policy, make_action):
        policy = make_policy()
        pod = cluster.add(TargetRef(kind="Pod", name="web-1", namespace="prod"))
        action = make_action(policy, pod, template=ActionTemplate(name="scale", type="scale"))
        await approve(safety, action, policy)

        await engine.execute(action)

        assert action.phase is ActionPhase.FAILED
        assert action.attempts == 0
        assert cluster.mutations == []

    @pytest.mark.asyncio
    async def test_malformed_scale_param_fails_with_record(self, engine, safety, recorder, cluster,
                                                           make_policy, make_action, deployment):
        policy = make_policy()
        template = ActionTemplate(name="scale", type="scale", params={"direction": "up", "minReplicas": "two"})
        action = await approve(safety, make_action(policy, deployment, template=template), policy)

        await engine.execute(action)

        assert action.phase is ActionPhase.FAILED
        assert "minReplicas" in action.result.error
        assert [r.outcome for r in recorder.history(action.key)] == [Outcome.FAILED]
        assert cluster.mutations == []
        assert safety.store.in_flight() == 0

    @pytest.mark.asyncio
    async def test_unexpected_executor_error_fails_with_record(self, engine, safety, recorder, repository,
                                                               make_policy, make_action, deployment):
        engine.register(BrokenRestartExecutor())
        policy = make_policy()
        action = await approve(safety, make_action(policy, deployment), policy)

        await engine.execute(action)

        assert action.phase is ActionPhase.FAILED
        assert action.result.error.startswith("RuntimeError")
        assert [r.outcome for r in recorder.history(action.key)] == [Outcome.FAILED]
        assert repository.status_writes[-1]["phase"] == "Failed"
        assert safety.store.in_flight() == 0

    @pytest.mark.asyncio
    async def test_dry_run_records_success_without_mutation(self, engine, safety, recorder, cluster,
                                                            make_policy, make_action, deployment):
        policy = make_policy(mode="dryrun")
        action = await approve(safety, make_action(policy, deployment, dry_run=True), policy)

        await engine.execute(action)

        assert action.phase is ActionPhase.SUCCEEDED
        assert action.result.message.startswith("Would")
        record = recorder.history(action.key)[0]
        assert record.outcome is Outcome.SUCCEEDED
        assert record.dry_run
        assert cluster.mutations == []

    @pytest.mark.asyncio
    async def test_status_is_persisted_through_the_run(self, engine, safety, repository, make_policy, make_action, deployment):
        policy = make_policy()
        action = await approve(safety, make_action(policy, deployment), policy)

        await engine.execute(action)

        phases = [s["phase"] for s in repository.status_writes]
        assert phases[0] == "Executing"
        assert phases[-1] == "Succeeded"


class TestRollback:

    @pytest.mark.asyncio
    async def test_scale_rollback_restores_replicas(self, engine, safety, recorder, cluster,
                                                    make_policy, make_action, deployment):
        policy = make_policy()
        template = ActionTemplate(name="scale-up", type="scale", params={"direction": "up", "replicas": 2})
        action = await approve(safety, make_action(policy, deployment, template=template), policy)
        await engine.execute(action)
        assert cluster.objects[deployment.key]["spec"]["replicas"] == 5

        result = await engine.rollback(action)

        assert result.success
        assert cluster.objects[deployment.key]["spec"]["replicas"] == 3
        assert [r.outcome for r in recorder.history(action.key)] == [Outcome.SUCCEEDED, Outcome.ROLLED_BACK]
        assert action.conditions[-1]["type"] == "RolledBack"

        with pytest.raises(ConfigurationError):
            await engine.rollback(action)

    @pytest.mark.asyncio
    async def test_rollback_requires_terminal_phase(self, engine, make_policy, make_action, deployment):
        policy = make_policy()
        action = make_action(policy, deployment)

        with pytest.raises(ConfigurationError):
            await engine.rollback(action)

    @pytest.mark.asyncio
    async def test_restart_cannot_be_rolled_back(self, engine, safety, make_policy, make_action, deployment):
        policy = make_policy()
        action = await approve(safety, make_action(policy, deployment), policy)
        await engine.execute(action)

        with pytest.raises(ConfigurationError):
            await engine.rollback(action)
