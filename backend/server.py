# -*- coding: utf-8 -*-
"""
Test Orchestration Server
HTTP surface over the scenario runner, mock data, API testing and load test services
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.middleware.cors import CORSMiddleware

from api_reports import ReportFormat
from api_test_models import TestSuiteOptions
from api_testing_service import APITestingService
from engine_errors import (
    InvalidTransitionError,
    NotFoundError,
    UnsupportedFormatError,
    ValidationError,
)
from load_test_framework import LoadTestConfig, LoadTestFramework, LoadTestPhase, preset_config
from load_test_events import EventSubscription
from mock_data_models import DataGenerationOptions
from mock_data_service import MockDataService
from scenario_model import TestScenario
from scenario_runner import ScenarioRunner
from settings import settings
from workloads import api_workload

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(
    title="Test Orchestration Engine",
    description="Scenario execution, mock data, API testing and load testing",
    version="1.0.0"
)

api_router = APIRouter(prefix="/api/v1")

# ============================================================================
# REQUEST MODELS
# ============================================================================


class MockDataGenerateRequest(BaseModel):
    type: str = "other"
    category: Optional[str] = None
    count: int = 1
    locale: str = "en_US"
    seed: Optional[Any] = None
    template_id: Optional[str] = None
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    name: Optional[str] = None


class MockDataImportRequest(BaseModel):
    content: str
    format: str = "json"
    name: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class APITestCaseRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    endpoint: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    body_fixture: Optional[str] = None
    expected_status: int = 200
    expected_response: Optional[Any] = None
    timeout: int = 30000
    auth: Optional[Dict[str, Any]] = None
    assertions: List[Dict[str, Any]] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    description: str = ""


class TestCaseExecutionRequest(BaseModel):
    base_url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    validate_schema: bool = False


class CurlExecutionRequest(BaseModel):
    command: str
    expected_status: int = 200
    timeout_ms: Optional[int] = None


class TestSuiteRequest(BaseModel):
    name: str
    base_url: Optional[str] = None
    common_headers: Dict[str, str] = Field(default_factory=dict)
    test_ids: List[str] = Field(default_factory=list)
    description: str = ""


class SuiteExecutionRequest(BaseModel):
    base_url: Optional[str] = None
    parallel: bool = False
    max_concurrency: int = 5
    retry_failures: bool = False
    max_retries: int = 3
    retry_delay: int = 1000
    validate_schema: bool = False


class BatchExecutionRequest(SuiteExecutionRequest):
    test_case_ids: List[str]


class LoadTestStartRequest(BaseModel):
    test_case_ids: List[str]
    preset: Optional[str] = None
    base_url: Optional[str] = None
    name: Optional[str] = None
    target_users: Optional[int] = None
    ramp_up_duration: Optional[float] = None
    sustain_duration: Optional[float] = None
    ramp_down_duration: Optional[float] = None
    think_time: Optional[int] = None
    timeout: Optional[int] = None
    max_retries: Optional[int] = None
    health_check_interval: Optional[int] = None


class ScenarioExecutionRequest(BaseModel):
    scenario: Dict[str, Any]
    base_url: Optional[str] = None
    retry: bool = False


# ============================================================================
# SERVICES
# ============================================================================


class LoadTestRun:
    """A load test running in the background, with its event feed"""

    def __init__(self, run_id: str, framework: LoadTestFramework, config: LoadTestConfig,
                 subscription: EventSubscription):
        self.id = run_id
        self.framework = framework
        self.config = config
        self.subscription = subscription
        self.task: Optional[asyncio.Task] = None
        self.error: Optional[str] = None

    def status(self) -> Dict[str, Any]:
        results = self.framework.last_results
        return {
            "id": self.id,
            "name": self.config.name,
            "state": self.framework.snapshot(),
            "error": self.error,
            "results": results.to_dict() if results is not None and not self.framework.is_running else None,
        }


class OrchestrationService:
    """Wires the engine services together for the HTTP layer"""

    def __init__(self):
        self.mock_data_service = MockDataService()
        self.api_testing_service = APITestingService(mock_data_service=self.mock_data_service)
        self.scenario_runner = ScenarioRunner(self.api_testing_service, self.mock_data_service)
        self.load_tests: Dict[str, LoadTestRun] = {}

    async def start_load_test(self, request: LoadTestStartRequest) -> LoadTestRun:
        config = preset_config(request.preset) if request.preset else LoadTestConfig(
            name=request.name or "custom-load-test",
            target_users=request.target_users or 1,
            ramp_up_duration=request.ramp_up_duration or 0,
            sustain_duration=request.sustain_duration or 0,
        )
        overrides = request.model_dump(
            include={"name", "target_users", "ramp_up_duration", "sustain_duration", "ramp_down_duration",
                     "think_time", "timeout", "max_retries", "health_check_interval"},
            exclude_none=True,
        )
        for key, value in overrides.items():
            setattr(config, key, value)

        framework = LoadTestFramework()
        config.validate(framework.max_users)
        workload = api_workload(self.api_testing_service, request.test_case_ids, request.base_url)

        run = LoadTestRun(str(uuid.uuid4()), framework, config, framework.subscribe())
        self.load_tests[run.id] = run

        async def drive():
            try:
                await framework.run(config, workload)
            except Exception as e:
                logger.error(f"Load test {run.id} failed: {str(e)}", exc_info=True)
                run.error = str(e)

        run.task = asyncio.create_task(drive())
        logger.info(f"Load test {run.id} started with {config.target_users} users")
        return run

    def get_load_test(self, run_id: str) -> LoadTestRun:
        run = self.load_tests.get(run_id)
        if run is None:
            raise NotFoundError("Load test", [run_id])
        return run

    async def shutdown(self):
        for run in self.load_tests.values():
            run.framework.stop()
        tasks = [run.task for run in self.load_tests.values() if run.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.api_testing_service.transport.close()


service = OrchestrationService()

# ============================================================================
# ERROR MAPPING
# ============================================================================


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": exc.message, "rule": exc.rule})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(UnsupportedFormatError)
async def unsupported_format_handler(request: Request, exc: UnsupportedFormatError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ============================================================================
# MOCK DATA
# ============================================================================


@api_router.post("/mock-data/generate")
async def generate_mock_data(request: MockDataGenerateRequest):
    data_set = await service.mock_data_service.generate_data(DataGenerationOptions(**request.model_dump()))
    return data_set.to_dict()


@api_router.post("/mock-data/import")
async def import_mock_data(request: MockDataImportRequest):
    data_set = await service.mock_data_service.import_data_set(
        request.content,
        fmt=request.format,
        name=request.name,
        data_type=request.type,
        category=request.category,
        description=request.description,
        tags=request.tags,
    )
    return data_set.to_dict()


@api_router.get("/mock-data")
async def list_mock_data(type: Optional[str] = None, category: Optional[str] = None,
                         tag: Optional[str] = None, expired: Optional[bool] = None):
    data_sets = await service.mock_data_service.list_data_sets(
        data_type=type, category=category, tags=[tag] if tag else None, expired=expired
    )
    return {"data_sets": [d.to_dict() for d in data_sets], "total": len(data_sets)}


@api_router.get("/mock-data/cache/stats")
async def mock_data_cache_stats():
    return service.mock_data_service.get_cache_stats()


@api_router.get("/mock-data/templates")
async def list_mock_data_templates(type: Optional[str] = None):
    return {"templates": [t.to_dict() for t in service.mock_data_service.list_templates(type)]}


@api_router.get("/mock-data/{data_set_id}")
async def get_mock_data(data_set_id: str):
    data_set = await service.mock_data_service.get_data_set(data_set_id)
    if data_set is None:
        raise HTTPException(status_code=404, detail=f"Mock data set not found: {data_set_id}")
    return data_set.to_dict()


@api_router.get("/mock-data/{data_set_id}/export")
async def export_mock_data(data_set_id: str, format: str = "json", include_metadata: bool = False):
    content = await service.mock_data_service.export_data_set(data_set_id, format, include_metadata)
    return PlainTextResponse(content)


@api_router.delete("/mock-data/{data_set_id}")
async def delete_mock_data(data_set_id: str):
    if not await service.mock_data_service.delete_data_set(data_set_id):
        raise HTTPException(status_code=404, detail=f"Mock data set not found: {data_set_id}")
    return {"success": True, "id": data_set_id}


# ============================================================================
# API TESTS
# ============================================================================


@api_router.post("/api-tests")
async def create_api_test(request: APITestCaseRequest):
    test_case = service.api_testing_service.create_test_case(request.model_dump())
    return test_case.to_dict()


@api_router.get("/api-tests")
async def list_api_tests(method: Optional[str] = None, endpoint: Optional[str] = None, tag: Optional[str] = None):
    cases = service.api_testing_service.list_test_cases(method, endpoint, [tag] if tag else None)
    return {"test_cases": [c.to_dict() for c in cases], "total": len(cases)}


@api_router.post("/api-tests/execute")
async def execute_api_tests(request: BatchExecutionRequest):
    options = TestSuiteOptions(**request.model_dump(exclude={"test_case_ids"}))
    suite_result = await service.api_testing_service.execute_multiple_test_cases(request.test_case_ids, options)
    return suite_result.to_dict()


@api_router.post("/api-tests/curl")
async def execute_curl(request: CurlExecutionRequest):
    result = await service.api_testing_service.execute_curl_command(
        request.command, request.expected_status, request.timeout_ms
    )
    return result.to_dict()


@api_router.get("/api-tests/results")
async def list_api_test_results(limit: int = 100, test_case_id: Optional[str] = None):
    results = service.api_testing_service.list_test_results(limit, test_case_id)
    return {"results": [r.to_dict() for r in results], "total": len(results)}


@api_router.get("/api-tests/results/report")
async def api_test_report(format: str = "json", limit: int = 100):
    results = service.api_testing_service.list_test_results(limit)
    report = service.api_testing_service.generate_report(results, format)
    if format == ReportFormat.HTML.value:
        return HTMLResponse(report)
    return PlainTextResponse(report, media_type="application/json" if format == "json" else "text/plain")


@api_router.get("/api-tests/results/{result_id}")
async def get_api_test_result(result_id: str):
    result = service.api_testing_service.get_test_result(result_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Test result not found: {result_id}")
    return result.to_dict()


@api_router.get("/api-tests/{test_case_id}")
async def get_api_test(test_case_id: str):
    test_case = service.api_testing_service.get_test_case(test_case_id)
    if test_case is None:
        raise HTTPException(status_code=404, detail=f"Test case not found: {test_case_id}")
    return test_case.to_dict()


@api_router.delete("/api-tests/{test_case_id}")
async def delete_api_test(test_case_id: str):
    if not service.api_testing_service.delete_test_case(test_case_id):
        raise HTTPException(status_code=404, detail=f"Test case not found: {test_case_id}")
    return {"success": True, "id": test_case_id}


@api_router.post("/api-tests/{test_case_id}/execute")
async def execute_api_test(test_case_id: str, request: TestCaseExecutionRequest):
    test_case = service.api_testing_service.get_test_case(test_case_id)
    if test_case is None:
        raise HTTPException(status_code=404, detail=f"Test case not found: {test_case_id}")
    result = await service.api_testing_service.execute_test_case(
        test_case, request.base_url, request.headers, request.validate_schema
    )
    return result.to_dict()


# ============================================================================
# SUITES
# ============================================================================


@api_router.post("/suites")
async def create_suite(request: TestSuiteRequest):
    service.api_testing_service.resolve_test_cases(request.test_ids)
    suite = service.api_testing_service.create_test_suite(**request.model_dump())
    return suite.to_dict()


@api_router.get("/suites")
async def list_suites():
    return {"suites": [s.to_dict() for s in service.api_testing_service.list_test_suites()]}


@api_router.post("/suites/{name}/tests/{test_case_id}")
async def add_test_to_suite(name: str, test_case_id: str):
    if not service.api_testing_service.add_test_to_suite(name, test_case_id):
        raise HTTPException(status_code=404, detail=f"Suite or test case not found: {name}, {test_case_id}")
    return service.api_testing_service.get_test_suite(name).to_dict()


@api_router.post("/suites/{name}/execute")
async def execute_suite(name: str, request: SuiteExecutionRequest):
    suite_result = await service.api_testing_service.execute_test_suite(name, TestSuiteOptions(**request.model_dump()))
    return suite_result.to_dict()


# ============================================================================
# LOAD TESTS
# ============================================================================


@api_router.post("/load-tests")
async def start_load_test(request: LoadTestStartRequest):
    run = await service.start_load_test(request)
    return {"id": run.id, "config": run.config.to_dict(), "phase": run.framework.phase.value}


@api_router.get("/load-tests/{run_id}")
async def get_load_test(run_id: str):
    return service.get_load_test(run_id).status()


@api_router.get("/load-tests/{run_id}/events")
async def get_load_test_events(run_id: str):
    run = service.get_load_test(run_id)
    return {"events": [event.to_dict() for event in run.subscription.drain()]}


@api_router.post("/load-tests/{run_id}/stop")
async def stop_load_test(run_id: str):
    run = service.get_load_test(run_id)
    if run.framework.phase in (LoadTestPhase.COMPLETED, LoadTestPhase.STOPPED):
        raise InvalidTransitionError(run.framework.phase.value, LoadTestPhase.STOPPED.value)
    run.framework.stop()
    return {"success": True, "id": run_id}


# ============================================================================
# SCENARIOS
# ============================================================================


@api_router.get("/scenarios/actions")
async def list_scenario_actions():
    return {"actions": service.scenario_runner.list_actions()}


@api_router.post("/scenarios/execute")
async def execute_scenario(request: ScenarioExecutionRequest):
    scenario = TestScenario.from_dict(request.scenario)
    if request.retry:
        result = await service.scenario_runner.execute_with_retry(scenario, base_url=request.base_url)
    else:
        result = await service.scenario_runner.execute_scenario(scenario, base_url=request.base_url)
    return {"scenario": scenario.to_dict(), "result": result.to_dict()}


@api_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": app.version,
        "environment": settings.environment,
        "services": {
            "mock_data_sets": len(service.mock_data_service),
            "test_cases": len(service.api_testing_service.list_test_cases()),
            "load_tests": len(service.load_tests),
        },
    }


# ============================================================================
# APP CONFIGURATION
# ============================================================================

app.include_router(api_router)

if settings.cors_origins == ["*"]:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.on_event("startup")
async def startup_event():
    logger.info(f"Test Orchestration Engine starting up ({settings.environment})...")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Test Orchestration Engine shutting down...")
    await service.shutdown()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
