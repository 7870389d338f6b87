# -*- coding: utf-8 -*-
"""
Load Test Workloads
Adapters that turn API test cases and scenarios into virtual-user workloads
"""

import logging
from typing import Callable, List, Optional

from engine_errors import EngineError, ValidationError
from flow_result import FlowStatus
from load_test_framework import VirtualUserContext, Workload
from scenario_model import TestScenario

logger = logging.getLogger(__name__)


class WorkloadFailure(EngineError):
    """A workload invocation that completed but did not pass"""


def api_workload(service, test_case_ids: List[str], base_url: Optional[str] = None) -> Workload:
    """
    Each invocation runs one registered test case, picked with the
    framework's random source so seeded runs are repeatable.
    """
    if not test_case_ids:
        raise ValidationError("test_cases_required", "At least one test case id is required")
    cases = service.resolve_test_cases(test_case_ids)

    async def run(ctx: VirtualUserContext):
        case = cases[ctx.rng.randrange(len(cases))] if len(cases) > 1 else cases[0]
        result = await service.execute_test_case(case, base_url)
        if not result.passed:
            raise WorkloadFailure(f"{case.id}: {result.status.value}")
        return result

    return run


def scenario_workload(runner, scenario_factory: Callable[[VirtualUserContext], TestScenario]) -> Workload:
    """Each invocation builds a fresh scenario and runs it to completion"""

    async def run(ctx: VirtualUserContext):
        scenario = scenario_factory(ctx)
        result = await runner.execute_scenario(scenario, run_id=f"{ctx.user_id}-{ctx.iteration}")
        if result.status != FlowStatus.PASSED:
            raise WorkloadFailure(f"Scenario {scenario.id}: {result.status.value}")
        return result

    return run
