# -*- coding: utf-8 -*-
"""
API Testing Service
Registry of API test cases and suites, request execution and result aggregation
"""

import asyncio
import json
import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from jsonschema import SchemaError
from jsonschema import ValidationError as SchemaValidationError
from jsonschema import validate as validate_schema

from api_reports import generate_report
from api_test_models import (
    BODY_METHODS,
    APIResult,
    APITestCase,
    ResultStatus,
    TestSuite,
    TestSuiteOptions,
    TestSuiteResult,
)
from curl_parser import CurlParseError, parse_curl
from engine_errors import NetworkError, NotFoundError, RequestTimeoutError, ValidationError
from http_transport import AiohttpTransport
from response_assertions import evaluate_assertions
from scenario_model import RetryConfig
from settings import settings

logger = logging.getLogger(__name__)


def _has_header(headers: Dict[str, str], name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)


class APITestingService:
    """
    Executes API test cases against a target base URL.

    Registries are guarded by one lock so registration can run alongside
    execution from many virtual users.
    """

    def __init__(
        self,
        transport=None,
        mock_data_service=None,
        default_base_url: str = settings.base_url,
        history_limit: int = settings.result_history_limit,
    ):
        self.transport = transport if transport is not None else AiohttpTransport(verify_ssl=settings.verify_ssl)
        self.mock_data_service = mock_data_service
        self.default_base_url = default_base_url
        self.history_limit = history_limit
        self._test_cases: Dict[str, APITestCase] = {}
        self._suites: Dict[str, TestSuite] = {}
        self._results: "OrderedDict[str, APIResult]" = OrderedDict()
        self._lock = threading.RLock()

    # ========================================================================
    # TEST CASE REGISTRY
    # ========================================================================

    def create_test_case(self, test_case: Union[APITestCase, Dict[str, Any]]) -> APITestCase:
        if isinstance(test_case, dict):
            test_case = APITestCase.from_dict(test_case)
        with self._lock:
            self._test_cases[test_case.id] = test_case
        logger.info(f"Registered test case {test_case.id}: {test_case.method} {test_case.endpoint}")
        return test_case

    def get_test_case(self, test_case_id: str) -> Optional[APITestCase]:
        with self._lock:
            return self._test_cases.get(test_case_id)

    def list_test_cases(
        self,
        method: Optional[str] = None,
        endpoint: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> List[APITestCase]:
        wanted_tags = set(tags or [])
        with self._lock:
            cases = list(self._test_cases.values())
        if method:
            cases = [c for c in cases if c.method == method.upper()]
        if endpoint:
            cases = [c for c in cases if endpoint in c.endpoint]
        if wanted_tags:
            cases = [c for c in cases if wanted_tags.intersection(c.tags)]
        return cases

    def update_test_case(self, test_case_id: str, **updates) -> Optional[APITestCase]:
        with self._lock:
            existing = self._test_cases.get(test_case_id)
            if existing is None:
                return None
            data = existing.to_dict()
            data.update(updates)
            data["id"] = test_case_id
            updated = APITestCase.from_dict(data)
            updated.created_at = existing.created_at
            self._test_cases[test_case_id] = updated
        return updated

    def delete_test_case(self, test_case_id: str) -> bool:
        with self._lock:
            removed = self._test_cases.pop(test_case_id, None)
            if removed is not None:
                for suite in self._suites.values():
                    if test_case_id in suite.test_ids:
                        suite.test_ids.remove(test_case_id)
        return removed is not None

    # ========================================================================
    # SUITES
    # ========================================================================

    def create_test_suite(
        self,
        name: str,
        base_url: Optional[str] = None,
        common_headers: Optional[Dict[str, str]] = None,
        test_ids: Optional[Iterable[str]] = None,
        description: str = "",
    ) -> TestSuite:
        if not name or not name.strip():
            raise ValidationError("suite_name_required", "Suite name is required")
        suite = TestSuite(
            name=name,
            base_url=base_url,
            common_headers=dict(common_headers or {}),
            test_ids=list(test_ids or []),
            description=description,
        )
        with self._lock:
            self._suites[name] = suite
        return suite

    def add_test_to_suite(self, suite_name: str, test_case_id: str) -> bool:
        with self._lock:
            suite = self._suites.get(suite_name)
            if suite is None or test_case_id not in self._test_cases:
                return False
            if test_case_id not in suite.test_ids:
                suite.test_ids.append(test_case_id)
        return True

    def get_test_suite(self, name: str) -> Optional[TestSuite]:
        with self._lock:
            return self._suites.get(name)

    def list_test_suites(self) -> List[TestSuite]:
        with self._lock:
            return list(self._suites.values())

    def delete_test_suite(self, name: str) -> bool:
        with self._lock:
            return self._suites.pop(name, None) is not None

    def resolve_test_cases(self, test_ids: Iterable[str]) -> List[APITestCase]:
        """All cases for the ids, or one NotFoundError naming every missing id"""
        with self._lock:
            found = [(tid, self._test_cases.get(tid)) for tid in test_ids]
        missing = [tid for tid, case in found if case is None]
        if missing:
            raise NotFoundError("Test cases", missing)
        return [case for _, case in found]

    # ========================================================================
    # EXECUTION
    # ========================================================================

    async def _resolve_body(self, test_case: APITestCase) -> Any:
        if not test_case.body_fixture:
            return test_case.body
        if self.mock_data_service is None:
            raise ValidationError("fixture_service_missing", "No mock data service configured for body fixtures")
        data_set = await self.mock_data_service.get_data_set(test_case.body_fixture)
        if data_set is None:
            raise NotFoundError("Mock data set", [test_case.body_fixture])
        return data_set.data

    def _error_result(self, test_case_id: str, curl_command: str, message: str,
                      started: float, timed_out: bool = False) -> APIResult:
        return APIResult(
            test_case_id=test_case_id,
            status=ResultStatus.ERROR,
            actual_status=0,
            response_time=(time.perf_counter() - started) * 1000,
            curl_command=curl_command,
            errors=(message,),
            timed_out=timed_out,
        )

    @staticmethod
    def _parse_body(text: str, content_type: str) -> Any:
        if "json" in content_type.lower():
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                logger.debug("Response declared JSON but did not parse, keeping raw text")
        return text

    async def execute_test_case(
        self,
        test_case: APITestCase,
        base_url: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        validate_schema_response: bool = False,
    ) -> APIResult:
        """
        Run one test case. Network failures and timeouts become `error`
        results; assertion failures become `failed` results. Nothing raised
        by the remote side escapes.
        """
        base = (base_url or self.default_base_url).rstrip("/")
        url = f"{base}{test_case.endpoint}"
        curl_command = test_case.build_curl_command(base)
        started = time.perf_counter()

        try:
            body = await self._resolve_body(test_case)
        except (NotFoundError, ValidationError) as e:
            result = self._error_result(test_case.id, curl_command, str(e), started)
            self._record(result)
            return result

        headers = test_case.request_headers(extra_headers)
        payload = None
        if body is not None and test_case.method in BODY_METHODS:
            if isinstance(body, (str, bytes)):
                payload = body if isinstance(body, str) else body.decode("utf-8", errors="replace")
            else:
                payload = json.dumps(body)
                if not _has_header(headers, "Content-Type"):
                    headers["Content-Type"] = "application/json"

        try:
            response = await self.transport.request(
                test_case.method, url, headers=headers, body=payload, timeout_ms=test_case.timeout
            )
        except RequestTimeoutError as e:
            result = self._error_result(test_case.id, curl_command, str(e), started, timed_out=True)
            self._record(result)
            return result
        except NetworkError as e:
            result = self._error_result(test_case.id, curl_command, f"Network error: {e}", started)
            self._record(result)
            return result

        response_time = (time.perf_counter() - started) * 1000
        actual_body = self._parse_body(response.text, response.content_type)
        assertion_results = evaluate_assertions(
            test_case.assertions, response.status, response.headers, actual_body
        )

        errors: List[str] = []
        if response.status != test_case.expected_status:
            errors.append(f"Expected status {test_case.expected_status}, got {response.status}")
        for assertion_result in assertion_results:
            if not assertion_result.passed:
                errors.append(f"Assertion failed: {assertion_result.assertion.description}"
                              f" ({assertion_result.message})")
        if validate_schema_response and isinstance(test_case.expected_response, dict):
            try:
                validate_schema(instance=actual_body, schema=test_case.expected_response)
            except SchemaValidationError as e:
                errors.append(f"Response schema mismatch: {e.message}")
            except SchemaError as e:
                errors.append(f"Invalid expected response schema: {e.message}")

        result = APIResult(
            test_case_id=test_case.id,
            status=ResultStatus.FAILED if errors else ResultStatus.PASSED,
            actual_status=response.status,
            response_time=response_time,
            curl_command=curl_command,
            actual_response=actual_body,
            actual_headers=response.headers,
            errors=tuple(errors),
            assertion_results=tuple(assertion_results),
            request_size=len(payload.encode("utf-8")) if payload else 0,
            response_size=len(response.text.encode("utf-8")),
        )
        self._record(result)
        return result

    async def execute_with_retry(
        self,
        test_case: APITestCase,
        retry: RetryConfig,
        base_url: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        validate_schema_response: bool = False,
    ) -> APIResult:
        attempt = 1
        result = await self.execute_test_case(test_case, base_url, extra_headers, validate_schema_response)
        while retry.should_retry(result.status, attempt):
            delay = retry.delay_for(attempt)
            logger.warning(f"Retrying {test_case.id} (attempt {attempt + 1}/{retry.max_attempts}) in {delay}ms")
            await asyncio.sleep(delay / 1000)
            attempt += 1
            result = await self.execute_test_case(test_case, base_url, extra_headers, validate_schema_response)
        return result

    async def _run_cases(
        self,
        name: str,
        cases: List[APITestCase],
        options: TestSuiteOptions,
        base_url: Optional[str],
        common_headers: Optional[Dict[str, str]] = None,
    ) -> TestSuiteResult:
        start_time = datetime.now(timezone.utc)
        retry = RetryConfig(
            max_attempts=options.max_retries + 1 if options.retry_failures else 1,
            delay=options.retry_delay,
            exponential_backoff=True,
            retryable_statuses=[ResultStatus.FAILED.value, ResultStatus.ERROR.value],
        )

        async def run_one(case: APITestCase) -> APIResult:
            try:
                return await self.execute_with_retry(
                    case, retry, base_url, common_headers, options.validate_schema
                )
            except Exception as e:
                logger.error(f"Unexpected failure executing {case.id}: {str(e)}")
                return self._error_result(case.id, case.curl_command, f"Execution failed: {e}",
                                          time.perf_counter())

        if options.parallel:
            semaphore = asyncio.Semaphore(options.max_concurrency)

            async def bounded(case: APITestCase) -> APIResult:
                async with semaphore:
                    return await run_one(case)

            results = list(await asyncio.gather(*(bounded(case) for case in cases)))
        else:
            results = []
            for case in cases:
                results.append(await run_one(case))

        suite_result = TestSuiteResult(
            name=name, start_time=start_time, end_time=datetime.now(timezone.utc), results=results
        )
        logger.info(
            f"Suite '{name}' finished: {suite_result.passed}/{suite_result.total_tests} passed, "
            f"{suite_result.failed} failed, {suite_result.errors} errors"
        )
        return suite_result

    async def execute_test_suite(self, name: str, options: Optional[TestSuiteOptions] = None) -> TestSuiteResult:
        options = options or TestSuiteOptions()
        suite = self.get_test_suite(name)
        if suite is None:
            raise NotFoundError("Test suite", [name])
        cases = self.resolve_test_cases(list(suite.test_ids))
        return await self._run_cases(
            name, cases, options, options.base_url or suite.base_url, suite.common_headers
        )

    async def execute_multiple_test_cases(
        self, test_case_ids: Iterable[str], options: Optional[TestSuiteOptions] = None
    ) -> TestSuiteResult:
        options = options or TestSuiteOptions()
        cases = self.resolve_test_cases(list(test_case_ids))
        return await self._run_cases(f"batch-{int(time.time() * 1000)}", cases, options, options.base_url)

    async def execute_curl_command(
        self, command: str, expected_status: int = 200, timeout_ms: Optional[int] = None
    ) -> APIResult:
        """Parse and run a curl command; unparseable text yields an error result"""
        started = time.perf_counter()
        try:
            parsed = parse_curl(command)
            test_case = APITestCase(
                name="Curl Command Test",
                endpoint=parsed.endpoint,
                method=parsed.method,
                headers=parsed.headers,
                body=parsed.body,
                expected_status=expected_status,
                timeout=timeout_ms or parsed.timeout_ms or settings.default_request_timeout_ms,
                tags=["curl"],
            )
        except (CurlParseError, ValidationError) as e:
            result = self._error_result("curl", command, f"Failed to parse curl command: {e}", started)
            self._record(result)
            return result

        return await self.execute_test_case(test_case, base_url=parsed.base_url)

    # ========================================================================
    # RESULTS
    # ========================================================================

    def _record(self, result: APIResult):
        with self._lock:
            self._results[result.id] = result
            while len(self._results) > self.history_limit:
                self._results.popitem(last=False)

    def get_test_result(self, result_id: str) -> Optional[APIResult]:
        with self._lock:
            return self._results.get(result_id)

    def list_test_results(self, limit: int = 100, test_case_id: Optional[str] = None) -> List[APIResult]:
        with self._lock:
            results = list(reversed(self._results.values()))
        if test_case_id:
            results = [r for r in results if r.test_case_id == test_case_id]
        return results[:limit]

    def generate_report(self, results: List[APIResult], fmt="json") -> str:
        return generate_report(results, fmt)
