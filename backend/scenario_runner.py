# -*- coding: utf-8 -*-
"""
Scenario Runner
Executes multi-step scenarios, drives their state machine and produces flow results
"""

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import psutil

from api_test_models import APITestCase
from engine_errors import EngineError, InvalidTransitionError, ValidationError
from flow_result import (
    BuildInfo,
    ExecutionSummary,
    FlowResult,
    FlowStatus,
    NetworkIO,
    OutcomeResult,
    PerformanceMetrics,
    StepResult,
    StepStatus,
    TestError,
)
from mock_data_models import DataGenerationOptions
from response_assertions import MISSING, compare_values, resolve_field_path
from scenario_model import ScenarioStatus, TestScenario, TestStep
from settings import settings

logger = logging.getLogger(__name__)

FLOW_TO_SCENARIO_STATUS = {
    FlowStatus.PASSED: ScenarioStatus.PASSED,
    FlowStatus.FAILED: ScenarioStatus.FAILED,
    FlowStatus.TIMEOUT: ScenarioStatus.TIMEOUT,
}


class StepFailure(EngineError):
    """Raised by step actions when the action ran but did not succeed"""

    def __init__(self, message: str, actual: Any = None):
        self.actual = actual
        super().__init__(message)


@dataclass
class StepContext:
    """What a step action can see and record while it runs"""
    scenario: TestScenario
    step: TestStep
    run_id: str
    base_url: str
    artifacts: List[str] = field(default_factory=list)
    network: NetworkIO = field(default_factory=NetworkIO)


StepAction = Callable[[Dict[str, Any], StepContext], Awaitable[Any]]


def matches_expected(actual: Any, expected: Any) -> bool:
    """Dictionaries match when every expected key matches; other values use equality"""
    if isinstance(expected, dict):
        if not isinstance(actual, dict):
            return False
        return all(key in actual and matches_expected(actual[key], value) for key, value in expected.items())
    return compare_values(actual, expected, "equals")


class ScenarioRunner:
    """Runs scenarios step by step against registered actions"""

    def __init__(
        self,
        api_testing_service=None,
        mock_data_service=None,
        base_url: Optional[str] = None,
        build_info: Optional[BuildInfo] = None,
    ):
        self.api_testing_service = api_testing_service
        self.mock_data_service = mock_data_service
        self.base_url = base_url or settings.base_url
        self.build_info = build_info or BuildInfo.from_settings(settings)
        self._actions: Dict[str, StepAction] = {}
        self._process = psutil.Process()

        self.register_action("api_request", self._api_request)
        self.register_action("generate_mock_data", self._generate_mock_data)
        self.register_action("wait", self._wait)

    def register_action(self, name: str, handler: StepAction):
        self._actions[name] = handler

    def list_actions(self) -> List[str]:
        return sorted(self._actions)

    # ========================================================================
    # BUILT-IN ACTIONS
    # ========================================================================

    async def _api_request(self, params: Dict[str, Any], ctx: StepContext) -> Dict[str, Any]:
        if self.api_testing_service is None:
            raise StepFailure("No API testing service configured")

        if params.get("test_case_id"):
            test_case = self.api_testing_service.get_test_case(params["test_case_id"])
            if test_case is None:
                raise StepFailure(f"Test case not found: {params['test_case_id']}")
        elif params.get("request"):
            test_case = APITestCase.from_dict({"name": ctx.step.name, **params["request"]})
        else:
            raise StepFailure("api_request needs 'test_case_id' or 'request'")

        result = await self.api_testing_service.execute_test_case(
            test_case, params.get("base_url") or ctx.base_url
        )
        ctx.network.request_count += 1
        ctx.network.bytes_sent += result.request_size
        ctx.network.bytes_received += result.response_size
        ctx.network.connection_time += result.response_time

        actual = {
            "status": result.actual_status,
            "body": result.actual_response,
            "headers": dict(result.actual_headers),
            "result": result.status.value,
            "response_time": result.response_time,
        }
        if not result.passed:
            raise StepFailure("; ".join(result.errors) or f"Request {result.status.value}", actual=actual)
        return actual

    async def _generate_mock_data(self, params: Dict[str, Any], ctx: StepContext) -> Dict[str, Any]:
        if self.mock_data_service is None:
            raise StepFailure("No mock data service configured")
        data_set = await self.mock_data_service.generate_data(DataGenerationOptions(**params))
        ctx.artifacts.append(f"mock-data:{data_set.id}")
        return {"id": data_set.id, "data": data_set.data, "checksum": data_set.checksum}

    async def _wait(self, params: Dict[str, Any], ctx: StepContext) -> Dict[str, Any]:
        duration_ms = float(params.get("duration_ms", 0))
        await asyncio.sleep(duration_ms / 1000)
        return {"waited_ms": duration_ms}

    # ========================================================================
    # EXECUTION
    # ========================================================================

    @staticmethod
    def _begin(scenario: TestScenario):
        """Move a scenario into RUNNING along the allowed transitions"""
        if scenario.status == ScenarioStatus.CREATED:
            scenario.update_status(ScenarioStatus.PENDING)
        elif scenario.status in (ScenarioStatus.FAILED, ScenarioStatus.TIMEOUT):
            scenario.update_status(ScenarioStatus.RETRYING)
        scenario.update_status(ScenarioStatus.RUNNING)

    def cancel(self, scenario: TestScenario):
        """Cancel a running scenario; steps not yet started are skipped"""
        scenario.update_status(ScenarioStatus.CANCELLED)
        logger.info(f"Scenario {scenario.id} cancelled")

    async def _run_step(self, step: TestStep, ctx: StepContext) -> StepResult:
        handler = self._actions.get(step.action)
        started = time.perf_counter()

        def finish(status: StepStatus, actual: Any = None, error: Optional[str] = None) -> StepResult:
            return StepResult(
                order=step.order, name=step.name, action=step.action, status=status,
                duration=(time.perf_counter() - started) * 1000, actual_result=actual, error=error,
            )

        if handler is None:
            return finish(StepStatus.FAILED, error=f"Unknown action: {step.action}")

        try:
            actual = await asyncio.wait_for(handler(dict(step.parameters), ctx), timeout=step.timeout / 1000)
        except asyncio.TimeoutError:
            return finish(StepStatus.TIMEOUT, error=f"Step timed out after {step.timeout}ms")
        except StepFailure as e:
            return finish(StepStatus.FAILED, actual=e.actual, error=str(e))
        except Exception as e:
            logger.error(f"Step '{step.name}' raised: {str(e)}")
            return finish(StepStatus.FAILED, error=f"{e.__class__.__name__}: {e}")

        if step.expected_result is not None:
            try:
                matched = matches_expected(actual, step.expected_result)
            except (TypeError, ValueError):
                matched = False
            if not matched:
                return finish(StepStatus.FAILED, actual=actual,
                              error=f"Expected {step.expected_result!r}, got {actual!r}")
        return finish(StepStatus.PASSED, actual=actual)

    async def _run_steps(self, scenario: TestScenario, ctx_factory, step_results: List[StepResult]):
        for step in scenario.steps:
            if scenario.status == ScenarioStatus.CANCELLED:
                return
            step_results.append(await self._run_step(step, ctx_factory(step)))

    @staticmethod
    def _evaluate_outcomes(scenario: TestScenario, step_results: List[StepResult]) -> List[OutcomeResult]:
        by_order = {r.order: r for r in step_results}
        last_order = scenario.steps[-1].order
        outcomes = []
        for outcome in scenario.expected_outcomes:
            step_result = by_order.get(outcome.step_order if outcome.step_order is not None else last_order)
            source = step_result.actual_result if step_result is not None else MISSING
            actual = resolve_field_path(source, outcome.field) if source is not MISSING else MISSING
            message = None
            try:
                passed = compare_values(actual, outcome.expected_value, outcome.operator)
            except (TypeError, ValueError, re.error) as e:
                passed = False
                message = str(e)
            if not passed and message is None:
                message = "Value not found" if actual is MISSING else f"Got {actual!r}"
            outcomes.append(OutcomeResult(
                description=outcome.description,
                passed=passed,
                expected_value=outcome.expected_value,
                actual_value=None if actual is MISSING else actual,
                message=message,
            ))
        return outcomes

    async def execute_scenario(
        self,
        scenario: TestScenario,
        run_id: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> FlowResult:
        """
        Run every step in declared order (later steps still run after a
        failure), then evaluate the expected outcomes. The whole run is
        bounded by the scenario timeout.
        """
        self._begin(scenario)
        run_id = run_id or str(uuid.uuid4())
        logger.info(f"Running scenario '{scenario.name}' ({scenario.id}), run {run_id}")

        artifacts: List[str] = []
        network = NetworkIO()
        step_results: List[StepResult] = []
        errors: List[TestError] = []

        def ctx_factory(step: TestStep) -> StepContext:
            return StepContext(scenario=scenario, step=step, run_id=run_id,
                               base_url=base_url or self.base_url, artifacts=artifacts, network=network)

        self._process.cpu_percent(interval=None)
        start_time = datetime.now(timezone.utc)
        timed_out = False
        try:
            await asyncio.wait_for(
                self._run_steps(scenario, ctx_factory, step_results), timeout=scenario.timeout / 1000
            )
        except asyncio.TimeoutError:
            timed_out = True
            errors.append(TestError("timeout", f"Scenario exceeded timeout of {scenario.timeout}ms"))
        end_time = datetime.now(timezone.utc)

        cancelled = scenario.status == ScenarioStatus.CANCELLED
        if cancelled:
            errors.append(TestError("cancelled", "Scenario was cancelled"))

        finished = {r.order for r in step_results}
        first_unfinished = True
        for step in scenario.steps:
            if step.order in finished:
                continue
            status = StepStatus.TIMEOUT if timed_out and first_unfinished else StepStatus.SKIPPED
            first_unfinished = False
            step_results.append(StepResult(order=step.order, name=step.name, action=step.action,
                                           status=status, duration=0.0))

        for r in step_results:
            if r.status in (StepStatus.FAILED, StepStatus.TIMEOUT) and r.error:
                errors.append(TestError("step", r.error, step_order=r.order))

        outcomes = [] if cancelled else self._evaluate_outcomes(scenario, step_results)

        if cancelled:
            status = FlowStatus.ERROR
        elif timed_out:
            status = FlowStatus.TIMEOUT
        elif any(r.status == StepStatus.FAILED for r in step_results):
            status = FlowStatus.FAILED
        elif any(r.status == StepStatus.TIMEOUT for r in step_results):
            status = FlowStatus.TIMEOUT
        elif any(not o.passed for o in outcomes):
            status = FlowStatus.FAILED
            errors.extend(TestError("assertion", f"Outcome failed: {o.description}")
                          for o in outcomes if not o.passed)
        else:
            status = FlowStatus.PASSED

        if not cancelled:
            scenario.update_status(FLOW_TO_SCENARIO_STATUS[status])

        duration_s = max((end_time - start_time).total_seconds(), 1e-9)
        executed = [r for r in step_results if r.status != StepStatus.SKIPPED]
        metrics = PerformanceMetrics(
            response_time=duration_s * 1000,
            throughput=len(executed) / duration_s,
            error_rate=(sum(1 for r in executed if r.status != StepStatus.PASSED) / len(executed) * 100
                        if executed else 0.0),
            memory_usage=self._process.memory_info().rss,
            cpu_usage=self._process.cpu_percent(interval=None),
            network_io=network,
        )

        result = FlowResult(
            scenario_id=scenario.id,
            run_id=run_id,
            status=status,
            start_time=start_time,
            end_time=end_time,
            steps=sorted(step_results, key=lambda r: r.order),
            outcomes=outcomes,
            metrics=metrics,
            errors=errors,
            artifacts=artifacts,
            environment=scenario.environment,
            build_info=self.build_info,
        )
        logger.info(f"Scenario '{scenario.name}' finished with {status.value} in {result.duration:.0f}ms")
        return result

    async def execute_with_retry(self, scenario: TestScenario, base_url: Optional[str] = None) -> FlowResult:
        retry = scenario.retry_config
        attempt = 1
        result = await self.execute_scenario(scenario, base_url=base_url)
        while retry.should_retry(result.status, attempt):
            delay = retry.delay_for(attempt)
            logger.warning(f"Retrying scenario {scenario.id} in {delay}ms (attempt {attempt + 1})")
            await asyncio.sleep(delay / 1000)
            attempt += 1
            result = await self.execute_scenario(scenario, base_url=base_url)
        return result

    async def _execute_isolated(self, scenario: TestScenario) -> FlowResult:
        """A scenario that cannot be started is reported as an error instead of aborting the batch"""
        try:
            return await self.execute_with_retry(scenario)
        except InvalidTransitionError as e:
            logger.error(f"Scenario {scenario.id} could not run: {str(e)}")
            now = datetime.now(timezone.utc)
            return FlowResult(
                scenario_id=scenario.id,
                run_id=str(uuid.uuid4()),
                status=FlowStatus.ERROR,
                start_time=now,
                end_time=now,
                errors=[TestError("state", str(e))],
                environment=scenario.environment,
                build_info=self.build_info,
            )

    async def execute_many(
        self,
        scenarios: List[TestScenario],
        parallel: bool = False,
        max_concurrency: int = 5,
    ) -> ExecutionSummary:
        if max_concurrency < 1:
            raise ValidationError("max_concurrency_positive", "max_concurrency must be at least 1")

        started = time.perf_counter()
        if parallel:
            semaphore = asyncio.Semaphore(max_concurrency)

            async def bounded(scenario: TestScenario) -> FlowResult:
                async with semaphore:
                    return await self._execute_isolated(scenario)

            results = list(await asyncio.gather(*(bounded(s) for s in scenarios)))
        else:
            results = [await self._execute_isolated(s) for s in scenarios]

        total = len(results)
        passed = sum(1 for r in results if r.status == FlowStatus.PASSED)
        return ExecutionSummary(
            total_scenarios=total,
            passed=passed,
            failed=sum(1 for r in results if r.status == FlowStatus.FAILED),
            timed_out=sum(1 for r in results if r.status == FlowStatus.TIMEOUT),
            errors=sum(1 for r in results if r.status == FlowStatus.ERROR),
            duration=(time.perf_counter() - started) * 1000,
            average_response_time=(sum(r.metrics.response_time for r in results) / total) if total else 0.0,
            error_rate=((total - passed) / total * 100) if total else 0.0,
            environment=self.build_info.environment,
            results=results,
        )
