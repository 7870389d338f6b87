import asyncio

import pytest

from engine_errors import InvalidTransitionError
from flow_result import FlowStatus, StepStatus
from scenario_model import RetryConfig, ScenarioStatus, TestOutcome, TestScenario, TestStep
from conftest import json_response


def api_step(name, endpoint, method="GET", **request):
    return TestStep(name=name, action="api_request",
                    parameters={"request": {"endpoint": endpoint, "method": method, **request}})


def scenario_of(steps, outcomes=None, **kwargs):
    outcomes = outcomes or [TestOutcome(description="no error reported", field="error", operator="not_exists")]
    return TestScenario(name="flow", steps=steps, expected_outcomes=outcomes, timeout=10000, **kwargs)


@pytest.mark.asyncio
async def test_passing_scenario(runner):
    scenario = scenario_of(
        [api_step("health", "/health"), api_step("users", "/users")],
        [
            TestOutcome(description="health ok", field="body.status", expected_value="ok", step_order=1),
            TestOutcome(description="one user", field="body.length", expected_value=1),
        ],
    )
    result = await runner.execute_scenario(scenario)

    assert result.status == FlowStatus.PASSED
    assert scenario.status == ScenarioStatus.PASSED
    assert [s.status for s in result.steps] == [StepStatus.PASSED, StepStatus.PASSED]
    assert all(o.passed for o in result.outcomes)
    assert result.metrics.network_io.request_count == 2
    assert result.metrics.network_io.bytes_received > 0
    assert result.build_info.environment == runner.build_info.environment
    assert result.duration >= 0


@pytest.mark.asyncio
async def test_failed_step_does_not_short_circuit(runner):
    scenario = scenario_of([
        api_step("down", "/down"),
        TestStep(name="pause", action="wait", parameters={"duration_ms": 1}),
    ])
    result = await runner.execute_scenario(scenario)

    assert result.status == FlowStatus.FAILED
    assert scenario.status == ScenarioStatus.FAILED
    assert result.steps[0].status == StepStatus.FAILED
    assert "Network error" in result.steps[0].error
    assert result.steps[1].status == StepStatus.PASSED
    assert any(e.type == "step" and e.step_order == 1 for e in result.errors)


@pytest.mark.asyncio
async def test_failed_outcome_fails_flow(runner):
    scenario = scenario_of(
        [api_step("health", "/health")],
        [TestOutcome(description="wrong version", field="body.version", expected_value="2.0")],
    )
    result = await runner.execute_scenario(scenario)

    assert result.status == FlowStatus.FAILED
    assert result.outcomes[0].actual_value == "1.0"
    assert any(e.type == "assertion" for e in result.errors)


@pytest.mark.asyncio
async def test_missing_outcome_field(runner):
    scenario = scenario_of(
        [api_step("health", "/health")],
        [TestOutcome(description="absent", field="body.nope", expected_value=1)],
    )
    result = await runner.execute_scenario(scenario)
    assert result.outcomes[0].passed is False
    assert result.outcomes[0].message == "Value not found"


@pytest.mark.asyncio
async def test_unknown_action_and_expected_result(runner):
    scenario = scenario_of([
        TestStep(name="mystery", action="teleport"),
        TestStep(name="pause", action="wait", expected_result={"slept": True}),
    ])
    result = await runner.execute_scenario(scenario)
    assert result.steps[0].error == "Unknown action: teleport"
    assert result.steps[1].status == StepStatus.FAILED
    assert result.status == FlowStatus.FAILED


@pytest.mark.asyncio
async def test_step_timeout(runner):
    async def sluggish(params, ctx):
        await asyncio.sleep(1)

    runner.register_action("sluggish", sluggish)
    scenario = scenario_of([TestStep(name="slow", action="sluggish", timeout=50)])
    result = await runner.execute_scenario(scenario)

    assert result.steps[0].status == StepStatus.TIMEOUT
    assert result.status == FlowStatus.TIMEOUT
    assert scenario.status == ScenarioStatus.TIMEOUT


@pytest.mark.asyncio
async def test_scenario_timeout_skips_remaining_steps(runner):
    scenario = TestScenario(
        name="too long",
        steps=[
            TestStep(name="quick", action="wait", parameters={"duration_ms": 1}),
            TestStep(name="long", action="wait", parameters={"duration_ms": 5000}, timeout=10000),
            TestStep(name="never", action="wait"),
        ],
        expected_outcomes=[TestOutcome(description="anything", operator="not_exists")],
        timeout=1000,
    )
    result = await runner.execute_scenario(scenario)

    assert result.status == FlowStatus.TIMEOUT
    assert [s.status for s in result.steps] == [StepStatus.PASSED, StepStatus.TIMEOUT, StepStatus.SKIPPED]
    assert result.errors[0].type == "timeout"


@pytest.mark.asyncio
async def test_generate_mock_data_records_artifact(runner):
    scenario = scenario_of(
        [TestStep(name="users", action="generate_mock_data",
                  parameters={"type": "user-profile", "count": 2, "seed": 7})],
        [TestOutcome(description="two profiles", field="data.length", expected_value=2)],
    )
    result = await runner.execute_scenario(scenario)

    assert result.status == FlowStatus.PASSED
    assert len(result.artifacts) == 1
    assert result.artifacts[0].startswith("mock-data:mock-")


@pytest.mark.asyncio
async def test_cannot_run_a_running_scenario(runner):
    scenario = scenario_of([TestStep(name="pause", action="wait")])
    scenario.update_status("pending")
    scenario.update_status("running")
    with pytest.raises(InvalidTransitionError):
        await runner.execute_scenario(scenario)


@pytest.mark.asyncio
async def test_passed_scenario_cannot_rerun(runner):
    scenario = scenario_of([TestStep(name="pause", action="wait")])
    await runner.execute_scenario(scenario)
    with pytest.raises(InvalidTransitionError):
        await runner.execute_scenario(scenario)


@pytest.mark.asyncio
async def test_execute_with_retry_reruns_failures(runner):
    calls = []

    async def flaky(params, ctx):
        calls.append(ctx.run_id)
        if len(calls) == 1:
            raise RuntimeError("first attempt fails")
        return {"ok": True}

    runner.register_action("flaky", flaky)
    scenario = scenario_of(
        [TestStep(name="flaky", action="flaky")],
        retry_config=RetryConfig(max_attempts=3, delay=0),
    )
    result = await runner.execute_with_retry(scenario)

    assert result.status == FlowStatus.PASSED
    assert len(calls) == 2
    assert scenario.status == ScenarioStatus.PASSED


@pytest.mark.asyncio
async def test_cancel_skips_remaining_steps(runner):
    async def cancel_self(params, ctx):
        runner.cancel(ctx.scenario)

    runner.register_action("cancel_self", cancel_self)
    scenario = scenario_of([
        TestStep(name="cancel", action="cancel_self"),
        TestStep(name="after", action="wait"),
    ])
    result = await runner.execute_scenario(scenario)

    assert scenario.status == ScenarioStatus.CANCELLED
    assert result.status == FlowStatus.ERROR
    assert result.steps[1].status == StepStatus.SKIPPED
    assert any(e.type == "cancelled" for e in result.errors)


@pytest.mark.asyncio
async def test_execute_many_summary(runner):
    scenarios = [
        scenario_of([api_step("health", "/health")]),
        scenario_of([api_step("down", "/down")]),
        scenario_of([TestStep(name="pause", action="wait")]),
    ]
    summary = await runner.execute_many(scenarios, parallel=True, max_concurrency=2)

    assert summary.total_scenarios == 3
    assert summary.passed == 2
    assert summary.failed == 1
    assert summary.error_rate == pytest.approx(100 / 3)
    assert len(summary.to_dict()["results"]) == 3


@pytest.mark.asyncio
async def test_execute_with_retry_uses_base_url(runner, fake_transport):
    fake_transport.add("GET", "/flaky", lambda: json_response(503, "{}"))
    scenario = scenario_of([api_step("flaky", "/flaky", expected_status=200)],
                           retry_config=RetryConfig(max_attempts=2, delay=0))
    result = await runner.execute_with_retry(scenario, base_url="http://staging.test")

    assert result.status == FlowStatus.FAILED
    assert [call["url"] for call in fake_transport.calls] == ["http://staging.test/flaky"] * 2


@pytest.mark.asyncio
@pytest.mark.parametrize("parallel", [False, True])
async def test_execute_many_reports_unstartable_scenario(runner, parallel):
    finished = scenario_of([TestStep(name="pause", action="wait")])
    await runner.execute_scenario(finished)
    fresh = scenario_of([TestStep(name="pause", action="wait")])

    summary = await runner.execute_many([finished, fresh], parallel=parallel)

    assert (summary.total_scenarios, summary.passed, summary.errors) == (2, 1, 1)
    error = summary.results[0]
    assert error.status == FlowStatus.ERROR
    assert error.scenario_id == finished.id
    assert error.errors[0].type == "state"
    assert finished.status == ScenarioStatus.PASSED


def test_builtin_actions(runner):
    assert runner.list_actions() == ["api_request", "generate_mock_data", "wait"]
