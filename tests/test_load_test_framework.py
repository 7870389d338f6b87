import asyncio
import random
from datetime import datetime, timezone

import pytest

from api_test_models import APITestCase
from engine_errors import InvalidTransitionError, NotFoundError, ValidationError
from health_monitor import HealthSample, StressThresholds
from load_test_events import LoadTestEventType
from load_test_framework import (
    AggregatedMetrics,
    LoadTestConfig,
    LoadTestFramework,
    LoadTestPhase,
    LoadTestResults,
    PRESETS,
    RequestSample,
    SuccessCriteria,
    VirtualUserContext,
    aggregate_metrics,
    compute_start_offsets,
    percentile,
    preset_config,
)
from scenario_model import TestOutcome, TestScenario, TestStep
from workloads import WorkloadFailure, api_workload, scenario_workload


def calm_probe():
    return HealthSample(memory_percent=40.0, cpu_percent=5.0, load_average=0.2)


def quick_config(**overrides):
    values = {
        "name": "quick",
        "target_users": 3,
        "ramp_up_duration": 0.1,
        "sustain_duration": 0.3,
        "ramp_down_duration": 0.0,
        "think_time": 10,
        "timeout": 200,
        "max_retries": 3,
        "health_check_interval": 50,
    }
    values.update(overrides)
    return LoadTestConfig(**values)


@pytest.fixture
def framework():
    return LoadTestFramework(max_users=100, health_probe=calm_probe, rng=random.Random(7))


async def succeed(ctx):
    await asyncio.sleep(0.005)
    return {"user": ctx.user_id}


class TestHelpers:
    def test_start_offsets_are_evenly_staggered(self):
        assert compute_start_offsets(4, 2.0) == [0.0, 0.5, 1.0, 1.5]
        assert compute_start_offsets(1, 10.0) == [0.0]
        assert compute_start_offsets(3, 0.0) == [0.0, 0.0, 0.0]

        spread = compute_start_offsets(100, 10.0)
        assert spread[0] == 0.0
        assert spread[-1] < 10.0
        gaps = [later - earlier for earlier, later in zip(spread, spread[1:])]
        assert gaps == pytest.approx([0.1] * 99)

    def test_percentile_nearest_rank(self):
        values = list(range(1, 101))
        assert percentile(values, 95) == 95
        assert percentile(values, 100) == 100
        assert percentile([7.0], 95) == 7.0
        assert percentile([], 95) == 0.0

    def test_aggregate_uses_sustain_window_only(self):
        samples = [
            RequestSample("user-1", 0.5, 100.0, True),  # ramp-up
            RequestSample("user-1", 1.0, 10.0, True),
            RequestSample("user-2", 1.5, 20.0, False),
            RequestSample("user-2", 2.5, 30.0, True),
            RequestSample("user-1", 3.0, 500.0, True),  # ramp-down
        ]
        metrics = aggregate_metrics(samples, window_start=1.0, window_end=3.0, concurrency=2)
        assert metrics.total_requests == 3
        assert metrics.failed_requests == 1
        assert metrics.error_rate == pytest.approx(100 / 3)
        assert metrics.average_response_time == pytest.approx(20.0)
        assert metrics.p95_response_time == 30.0
        assert metrics.sustained_throughput == pytest.approx(1.5)
        assert metrics.concurrent_users_achieved == 2

    def test_aggregate_of_empty_window(self):
        metrics = aggregate_metrics([], 1.0, 1.0, 0)
        assert metrics.total_requests == 0
        assert metrics.sustained_throughput == 0.0


class TestConfig:
    @pytest.mark.parametrize("overrides, rule", [
        ({"name": " "}, "load_test_name_required"),
        ({"target_users": 0}, "target_users_positive"),
        ({"ramp_up_duration": -1}, "durations_non_negative"),
        ({"sustain_duration": 0}, "sustain_positive"),
        ({"think_time": -5}, "think_time_non_negative"),
        ({"timeout": 0}, "timeout_positive"),
        ({"max_retries": -1}, "max_retries_non_negative"),
        ({"health_check_interval": 0}, "health_interval_positive"),
    ])
    def test_invalid_configs(self, overrides, rule):
        with pytest.raises(ValidationError) as exc_info:
            quick_config(**overrides).validate()
        assert exc_info.value.rule == rule

    def test_capacity_limit(self):
        with pytest.raises(ValidationError) as exc_info:
            quick_config(target_users=500).validate(max_users=100)
        assert exc_info.value.rule == "target_users_capacity"

    def test_presets(self):
        baseline = preset_config("baseline")
        assert baseline.name == "baseline-load"
        assert baseline.target_users == 100
        assert baseline.ramp_down_duration == baseline.ramp_up_duration
        assert baseline.success_criteria.max_error_rate == 1.0
        assert preset_config("stress").target_users == 10000
        assert preset_config("baseline") is not baseline
        for name in PRESETS:
            preset_config(name).validate()

    def test_unknown_preset(self):
        with pytest.raises(NotFoundError):
            preset_config("apocalypse")


class TestSuccessEvaluation:
    def _results(self, phase=LoadTestPhase.COMPLETED, **metrics):
        now = datetime.now(timezone.utc)
        return LoadTestResults(
            id="run", config=quick_config(), phase=phase, start_time=now, end_time=now,
            aggregated=AggregatedMetrics(**metrics),
        )

    def test_without_criteria_follows_phase(self):
        assert self._results().evaluate_success() == {"passed": True, "failures": []}
        assert not self._results(phase=LoadTestPhase.STOPPED).evaluate_success()["passed"]

    def test_every_violated_criterion_is_listed(self):
        results = self._results(error_rate=10.0, average_response_time=900, p95_response_time=3000,
                                sustained_throughput=5)
        outcome = results.evaluate_success(SuccessCriteria(1.0, 500, 1000, 50))
        assert not outcome["passed"]
        assert len(outcome["failures"]) == 4

    def test_criteria_met(self):
        results = self._results(error_rate=0.5, average_response_time=100, p95_response_time=200,
                                sustained_throughput=80)
        assert results.evaluate_success(SuccessCriteria(1.0, 500, 1000, 50))["passed"]


class TestRun:
    @pytest.mark.asyncio
    async def test_full_run_walks_every_phase(self, framework):
        phases = framework.subscribe(LoadTestEventType.PHASE_CHANGED)
        users_done = framework.subscribe(LoadTestEventType.USER_COMPLETED)
        finished = framework.subscribe(LoadTestEventType.TEST_COMPLETED)

        results = await framework.run(quick_config(), succeed)

        assert [e.payload["phase"] for e in phases.drain()] == [
            "ramping_up", "sustaining", "ramping_down", "completed"
        ]
        assert results.phase == LoadTestPhase.COMPLETED
        assert framework.phase == LoadTestPhase.COMPLETED
        assert framework.last_results is results
        assert results.aggregated.concurrent_users_achieved == 3
        assert results.aggregated.total_requests > 0
        assert results.aggregated.error_rate == 0.0
        assert results.aggregated.sustained_throughput > 0
        assert results.total_invocations >= results.aggregated.total_requests
        assert {u.stop_reason for u in results.user_metrics} == {"completed"}
        assert [u.scheduled_start for u in results.user_metrics] == pytest.approx([0.0, 0.1 / 3, 0.2 / 3])
        assert len(users_done.drain()) == 3
        assert finished.drain()[0].payload["name"] == "quick"
        assert results.health_samples
        assert results.stress_signals == 0
        assert results.evaluate_success()["passed"]

    @pytest.mark.asyncio
    async def test_error_budget_stops_user(self, framework):
        async def always_fails(ctx):
            raise RuntimeError("backend unavailable")

        results = await framework.run(quick_config(max_retries=1, sustain_duration=1.0), always_fails)

        assert results.phase == LoadTestPhase.COMPLETED
        for user in results.user_metrics:
            assert user.stop_reason == "error_budget"
            assert user.request_count == 2
            assert user.error_count == 2

    @pytest.mark.asyncio
    async def test_false_and_timeouts_count_as_failures(self, framework):
        async def slow_or_false(ctx):
            if ctx.index == 0:
                await asyncio.sleep(1)
            return False

        results = await framework.run(quick_config(target_users=2, timeout=30, max_retries=0), slow_or_false)
        assert all(u.error_count == 1 for u in results.user_metrics)
        assert results.user_metrics[0].response_times[0] < 500

    @pytest.mark.asyncio
    async def test_stop_ends_the_run(self, framework):
        phases = framework.subscribe(LoadTestEventType.PHASE_CHANGED)
        run = asyncio.create_task(framework.run(quick_config(sustain_duration=10.0), succeed))
        await asyncio.sleep(0.2)
        assert framework.is_running
        assert framework.snapshot()["active_users"] == 3

        framework.stop()
        results = await asyncio.wait_for(run, timeout=3)

        assert results.phase == LoadTestPhase.STOPPED
        assert [e.payload["phase"] for e in phases.drain()][-1] == "stopped"
        assert {u.stop_reason for u in results.user_metrics} == {"stopped"}
        assert results.aggregated.sustain_window < 1.0
        assert not results.evaluate_success()["passed"]

    @pytest.mark.asyncio
    async def test_stop_during_ramp_up(self, framework):
        run = asyncio.create_task(framework.run(quick_config(ramp_up_duration=5.0), succeed))
        await asyncio.sleep(0.05)
        framework.stop()
        results = await asyncio.wait_for(run, timeout=3)

        assert results.phase == LoadTestPhase.STOPPED
        never_started = [u for u in results.user_metrics if u.started_at is None]
        assert never_started
        assert all(u.request_count == 0 for u in never_started)

    @pytest.mark.asyncio
    async def test_stop_during_ramp_down(self, framework):
        async def slow(ctx):
            await asyncio.sleep(0.6)
            return True

        config = quick_config(target_users=1, sustain_duration=0.2, ramp_down_duration=1.0, timeout=2000)
        run = asyncio.create_task(framework.run(config, slow))
        await asyncio.sleep(0.35)
        assert framework.phase == LoadTestPhase.RAMPING_DOWN

        framework.stop()
        results = await asyncio.wait_for(run, timeout=3)

        assert results.phase == LoadTestPhase.STOPPED
        assert results.user_metrics[0].stop_reason == "stopped"
        assert results.user_metrics[0].request_count == 1

    @pytest.mark.asyncio
    async def test_stop_requested_before_run(self, framework):
        framework.stop()
        assert framework.is_stopping

        results = await asyncio.wait_for(framework.run(quick_config(), succeed), timeout=3)
        assert results.phase == LoadTestPhase.STOPPED
        assert results.total_invocations == 0
        assert not framework.is_stopping

        framework.stop()
        again = await framework.run(quick_config(target_users=1), succeed)
        assert again.phase == LoadTestPhase.COMPLETED

    @pytest.mark.asyncio
    async def test_users_start_across_the_ramp(self, framework):
        config = quick_config(target_users=5, ramp_up_duration=0.5, sustain_duration=0.2)
        results = await framework.run(config, succeed)

        started = [u.started_at for u in results.user_metrics]
        assert started == sorted(started)
        assert started[0] < 0.1
        assert started[-1] - started[0] >= 0.3
        for user in results.user_metrics:
            assert user.started_at >= user.scheduled_start - 0.01

    @pytest.mark.asyncio
    async def test_one_run_at_a_time(self, framework):
        run = asyncio.create_task(framework.run(quick_config(sustain_duration=10.0), succeed))
        await asyncio.sleep(0.05)
        with pytest.raises(InvalidTransitionError):
            await framework.run(quick_config(), succeed)
        framework.stop()
        await asyncio.wait_for(run, timeout=3)

    @pytest.mark.asyncio
    async def test_rerun_after_completion(self, framework):
        await framework.run(quick_config(target_users=1), succeed)
        again = await framework.run(quick_config(target_users=1), succeed)
        assert again.phase == LoadTestPhase.COMPLETED

    @pytest.mark.asyncio
    async def test_capacity_checked_before_start(self):
        framework = LoadTestFramework(max_users=2, health_probe=calm_probe)
        with pytest.raises(ValidationError):
            await framework.run(quick_config(), succeed)
        assert framework.phase == LoadTestPhase.IDLE

    @pytest.mark.asyncio
    async def test_stress_is_signalled(self):
        def busy_probe():
            return HealthSample(memory_percent=95.0, cpu_percent=99.0, load_average=9.0)

        framework = LoadTestFramework(health_probe=busy_probe)
        stress = framework.subscribe(LoadTestEventType.SYSTEM_STRESS)
        results = await framework.run(quick_config(target_users=1), succeed)

        events = stress.drain()
        assert results.stress_signals == len(events) > 0
        assert "memory" in events[0].payload["reasons"]

    def test_thresholds(self):
        thresholds = StressThresholds(memory_percent=80, load_average=2)
        assert thresholds.check(calm_probe()) is None
        payload = thresholds.check(HealthSample(memory_percent=85, cpu_percent=0, load_average=1))
        assert payload["reasons"] == ["memory"]


def _context(index=0, iteration=0):
    return VirtualUserContext(user_id=f"user-{index + 1}", index=index, iteration=iteration,
                              config=quick_config(), rng=random.Random(3))


class TestWorkloads:
    @pytest.mark.asyncio
    async def test_api_workload(self, api_service):
        ok = api_service.create_test_case(APITestCase(name="users", endpoint="/users"))
        workload = api_workload(api_service, [ok.id])
        result = await workload(_context())
        assert result.passed

    @pytest.mark.asyncio
    async def test_api_workload_failure_raises(self, api_service):
        down = api_service.create_test_case(APITestCase(name="down", endpoint="/down"))
        workload = api_workload(api_service, [down.id])
        with pytest.raises(WorkloadFailure):
            await workload(_context())

    def test_api_workload_needs_known_cases(self, api_service):
        with pytest.raises(ValidationError):
            api_workload(api_service, [])
        with pytest.raises(NotFoundError):
            api_workload(api_service, ["ghost"])

    @pytest.mark.asyncio
    async def test_api_workload_under_load(self, api_service, framework):
        ok = api_service.create_test_case(APITestCase(name="health", endpoint="/health"))
        users = api_service.create_test_case(APITestCase(name="users", endpoint="/users"))
        results = await framework.run(quick_config(), api_workload(api_service, [ok.id, users.id]))
        assert results.aggregated.total_requests > 0
        assert results.aggregated.failed_requests == 0

    @pytest.mark.asyncio
    async def test_scenario_workload(self, runner):
        def health_scenario(ctx):
            return TestScenario(
                name=f"health {ctx.user_id}",
                steps=[TestStep(name="health", action="api_request",
                                parameters={"request": {"endpoint": "/health"}})],
                expected_outcomes=[TestOutcome(description="ok", field="body.status", expected_value="ok")],
            )

        result = await scenario_workload(runner, health_scenario)(_context(iteration=4))
        assert result.run_id == "user-1-4"

    @pytest.mark.asyncio
    async def test_failing_scenario_workload(self, runner):
        def down_scenario(ctx):
            return TestScenario(
                name="down",
                steps=[TestStep(name="down", action="api_request",
                                parameters={"request": {"endpoint": "/down"}})],
                expected_outcomes=[TestOutcome(description="no error", field="error", operator="not_exists")],
            )

        with pytest.raises(WorkloadFailure):
            await scenario_workload(runner, down_scenario)(_context())
