# -*- coding: utf-8 -*-
"""
API Test Models
Test cases, assertions, suites and results for HTTP API testing
"""

import base64
import copy
import json
import math
import shlex
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from engine_errors import ValidationError

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")
BODY_METHODS = ("POST", "PUT", "PATCH")
MAX_TEST_TIMEOUT_MS = 300000
BASE_URL_PLACEHOLDER = "${BASE_URL}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssertionKind(Enum):
    """What part of the response an assertion inspects"""
    STATUS = "status"
    HEADER = "header"
    BODY = "body"


class ComparisonOperator(Enum):
    """Supported assertion operators"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    MATCHES = "matches"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class AuthType(Enum):
    NONE = "none"
    API_KEY = "apikey"
    BEARER = "bearer"
    BASIC = "basic"
    OAUTH = "oauth"


class ResultStatus(Enum):
    """Outcome of one executed API call"""
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"


REQUIRED_CREDENTIALS = {
    AuthType.API_KEY: ("api_key",),
    AuthType.BEARER: ("token",),
    AuthType.BASIC: ("username", "password"),
    AuthType.OAUTH: ("access_token",),
}


@dataclass
class ResponseAssertion:
    """A single expected-vs-actual comparison against a response"""
    kind: AssertionKind
    operator: ComparisonOperator = ComparisonOperator.EQUALS
    expected_value: Any = None
    description: str = ""
    field: Optional[str] = None
    tolerance: Optional[float] = None

    def __post_init__(self):
        try:
            self.kind = AssertionKind(self.kind.value if isinstance(self.kind, Enum) else self.kind)
        except ValueError:
            raise ValidationError("unsupported_assertion_kind", f"Unsupported assertion kind: {self.kind}")
        try:
            self.operator = ComparisonOperator(
                self.operator.value if isinstance(self.operator, Enum) else self.operator
            )
        except ValueError:
            raise ValidationError("unsupported_operator", f"Unsupported assertion operator: {self.operator}")

        if self.kind == AssertionKind.HEADER and not self.field:
            raise ValidationError("header_name_required", "Header assertions need a header name")
        if self.tolerance is not None and self.tolerance < 0:
            raise ValidationError("negative_tolerance", "Assertion tolerance cannot be negative")
        if not self.description:
            target = f"{self.kind.value} {self.field}" if self.field else self.kind.value
            self.description = f"{target} {self.operator.value} {self.expected_value!r}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "operator": self.operator.value,
            "expected_value": self.expected_value,
            "description": self.description,
            "field": self.field,
            "tolerance": self.tolerance,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResponseAssertion":
        return cls(
            kind=data.get("kind") or data.get("type"),
            operator=data.get("operator", "equals"),
            expected_value=data.get("expected_value", data.get("expected")),
            description=data.get("description", ""),
            field=data.get("field"),
            tolerance=data.get("tolerance"),
        )


@dataclass
class AuthConfig:
    """Authentication descriptor applied to requests and command text"""
    type: AuthType = AuthType.NONE
    credentials: Dict[str, str] = field(default_factory=dict)
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        try:
            self.type = AuthType(self.type.value if isinstance(self.type, Enum) else self.type)
        except ValueError:
            raise ValidationError("unsupported_auth_type", f"Unsupported auth type: {self.type}")

    def validate(self):
        for key in REQUIRED_CREDENTIALS.get(self.type, ()):
            if not self.credentials.get(key):
                raise ValidationError("auth_credentials_missing", f"{self.type.value} auth requires '{key}'")
        if self.expires_at is not None and self.expires_at < _utcnow():
            raise ValidationError("auth_expired", "Authentication credentials have expired")

    def headers(self) -> Dict[str, str]:
        if self.type == AuthType.BEARER:
            return {"Authorization": f"Bearer {self.credentials['token']}"}
        if self.type == AuthType.OAUTH:
            return {"Authorization": f"Bearer {self.credentials['access_token']}"}
        if self.type == AuthType.API_KEY:
            header_name = self.credentials.get("header_name") or "X-API-Key"
            return {header_name: self.credentials["api_key"]}
        if self.type == AuthType.BASIC:
            raw = f"{self.credentials['username']}:{self.credentials['password']}"
            return {"Authorization": f"Basic {base64.b64encode(raw.encode()).decode()}"}
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "credentials": dict(self.credentials),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["AuthConfig"]:
        if not data:
            return None
        expires_at = data.get("expires_at")
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        return cls(type=data.get("type", "none"), credentials=dict(data.get("credentials") or {}),
                   expires_at=expires_at)


@dataclass
class APITestCase:
    """
    A named HTTP request with its expected status and assertions.

    The curl command is regenerated from the request fields whenever the
    case changes. It exists for manual reproduction only and is never used
    to drive execution.
    """
    name: str
    endpoint: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    expected_status: int = 200
    expected_response: Any = None
    timeout: int = 30000  # milliseconds
    auth: Optional[AuthConfig] = None
    assertions: List[ResponseAssertion] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    body_fixture: Optional[str] = None
    description: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    curl_command: str = field(init=False, default="")

    def __post_init__(self):
        self.method = (self.method or "GET").upper()
        self.headers = dict(self.headers or {})
        if isinstance(self.auth, dict):
            self.auth = AuthConfig.from_dict(self.auth)
        self.assertions = [
            a if isinstance(a, ResponseAssertion) else ResponseAssertion.from_dict(a)
            for a in (self.assertions or [])
        ]
        self.validate()
        self.curl_command = self.build_curl_command()

    def validate(self):
        if not self.name or not self.name.strip():
            raise ValidationError("test_name_required", "Test case name is required")
        if not self.endpoint or not self.endpoint.startswith("/"):
            raise ValidationError("endpoint_format", "Endpoint must start with '/'")
        if self.method not in HTTP_METHODS:
            raise ValidationError("unsupported_method", f"Unsupported HTTP method: {self.method}")
        if not isinstance(self.expected_status, int) or not 100 <= self.expected_status <= 599:
            raise ValidationError("expected_status_range", "Expected status must be between 100 and 599")
        if self.timeout <= 0 or self.timeout > MAX_TEST_TIMEOUT_MS:
            raise ValidationError(
                "timeout_out_of_range", f"Timeout must be between 1 and {MAX_TEST_TIMEOUT_MS} ms"
            )
        if self.auth is not None:
            self.auth.validate()

    def _touch(self):
        self.validate()
        self.curl_command = self.build_curl_command()
        self.updated_at = _utcnow()

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    def request_headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Headers as sent: suite headers, then case headers, then auth"""
        headers = dict(extra or {})
        headers.update(self.headers)
        if self.auth is not None:
            headers.update(self.auth.headers())
        if self.body is not None and self.method in BODY_METHODS and not isinstance(self.body, (str, bytes)):
            if not any(k.lower() == "content-type" for k in headers):
                headers["Content-Type"] = "application/json"
        return headers

    def serialized_body(self) -> Optional[str]:
        if self.body is None or self.method not in BODY_METHODS:
            return None
        if isinstance(self.body, str):
            return self.body
        if isinstance(self.body, bytes):
            return self.body.decode("utf-8", errors="replace")
        return json.dumps(self.body)

    def build_curl_command(self, base_url: str = BASE_URL_PLACEHOLDER) -> str:
        parts = [f"curl -X {self.method}"]
        for key, value in self.request_headers().items():
            parts.append(f"-H {shlex.quote(f'{key}: {value}')}")
        body = self.serialized_body()
        if body is not None:
            parts.append(f"-d {shlex.quote(body)}")
        parts.append(f"--max-time {math.ceil(self.timeout / 1000)}")
        parts.append(f'"{base_url}{self.endpoint}"')
        return " ".join(parts)

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    def add_assertion(self, assertion):
        if isinstance(assertion, dict):
            assertion = ResponseAssertion.from_dict(assertion)
        self.assertions.append(assertion)
        self.updated_at = _utcnow()
        return assertion

    def remove_assertion(self, description: str) -> bool:
        before = len(self.assertions)
        self.assertions = [a for a in self.assertions if a.description != description]
        if len(self.assertions) != before:
            self.updated_at = _utcnow()
            return True
        return False

    def set_header(self, key: str, value: str):
        self.headers[key] = value
        self._touch()

    def remove_header(self, key: str) -> bool:
        if key not in self.headers:
            return False
        del self.headers[key]
        self._touch()
        return True

    def add_tag(self, tag: str):
        if tag not in self.tags:
            self.tags.append(tag)
            self.updated_at = _utcnow()

    def remove_tag(self, tag: str) -> bool:
        if tag in self.tags:
            self.tags.remove(tag)
            self.updated_at = _utcnow()
            return True
        return False

    def clone(self, name: Optional[str] = None) -> "APITestCase":
        data = self.to_dict()
        data.pop("id")
        data["name"] = name or f"{self.name} (copy)"
        return APITestCase.from_dict(copy.deepcopy(data))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "endpoint": self.endpoint,
            "method": self.method,
            "headers": dict(self.headers),
            "body": self.body,
            "body_fixture": self.body_fixture,
            "expected_status": self.expected_status,
            "expected_response": self.expected_response,
            "timeout": self.timeout,
            "auth": self.auth.to_dict() if self.auth else None,
            "assertions": [a.to_dict() for a in self.assertions],
            "tags": list(self.tags),
            "curl_command": self.curl_command,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "APITestCase":
        kwargs = {
            "name": data.get("name", ""),
            "endpoint": data.get("endpoint", ""),
            "method": data.get("method", "GET"),
            "headers": dict(data.get("headers") or {}),
            "body": data.get("body"),
            "body_fixture": data.get("body_fixture"),
            "expected_status": data.get("expected_status", 200),
            "expected_response": data.get("expected_response"),
            "timeout": data.get("timeout", 30000),
            "auth": AuthConfig.from_dict(data.get("auth")),
            "assertions": [ResponseAssertion.from_dict(a) for a in data.get("assertions") or []],
            "tags": list(data.get("tags") or []),
            "description": data.get("description", ""),
        }
        if data.get("id"):
            kwargs["id"] = data["id"]
        return cls(**kwargs)


@dataclass
class AssertionResult:
    assertion: ResponseAssertion
    passed: bool
    actual_value: Any = None
    found: bool = True
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.assertion.description,
            "kind": self.assertion.kind.value,
            "field": self.assertion.field,
            "operator": self.assertion.operator.value,
            "expected_value": self.assertion.expected_value,
            "actual_value": self.actual_value,
            "found": self.found,
            "passed": self.passed,
            "message": self.message,
        }


@dataclass(frozen=True)
class APIResult:
    """Outcome of one executed test case; never mutated after creation"""
    test_case_id: str
    status: ResultStatus
    actual_status: int
    response_time: float  # milliseconds
    curl_command: str
    actual_response: Any = None
    actual_headers: Dict[str, str] = field(default_factory=dict)
    errors: Tuple[str, ...] = ()
    assertion_results: Tuple[AssertionResult, ...] = ()
    request_size: int = 0
    response_size: int = 0
    timed_out: bool = False
    timestamp: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def passed(self) -> bool:
        return self.status == ResultStatus.PASSED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "test_case_id": self.test_case_id,
            "status": self.status.value,
            "actual_status": self.actual_status,
            "actual_response": self.actual_response,
            "actual_headers": dict(self.actual_headers),
            "response_time": self.response_time,
            "errors": list(self.errors),
            "assertion_results": [r.to_dict() for r in self.assertion_results],
            "curl_command": self.curl_command,
            "request_size": self.request_size,
            "response_size": self.response_size,
            "timed_out": self.timed_out,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TestSuite:
    """Named group of test cases sharing a base URL and headers"""
    name: str
    base_url: Optional[str] = None
    common_headers: Dict[str, str] = field(default_factory=dict)
    test_ids: List[str] = field(default_factory=list)
    description: str = ""
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "base_url": self.base_url,
            "common_headers": dict(self.common_headers),
            "test_ids": list(self.test_ids),
            "description": self.description,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class TestSuiteOptions:
    base_url: Optional[str] = None
    parallel: bool = False
    max_concurrency: int = 5
    retry_failures: bool = False
    max_retries: int = 3
    retry_delay: int = 1000  # milliseconds, doubled on each further attempt
    validate_schema: bool = False

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValidationError("max_concurrency_positive", "max_concurrency must be at least 1")
        if self.max_retries < 0:
            raise ValidationError("max_retries_non_negative", "max_retries cannot be negative")


@dataclass
class TestSummary:
    average_response_time: float = 0.0
    max_response_time: float = 0.0
    min_response_time: float = 0.0
    success_rate: float = 0.0  # percent
    error_rate: float = 0.0  # percent
    timeout_count: int = 0
    assertion_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "average_response_time": self.average_response_time,
            "max_response_time": self.max_response_time,
            "min_response_time": self.min_response_time,
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "timeout_count": self.timeout_count,
            "assertion_failures": self.assertion_failures,
        }

    @classmethod
    def from_results(cls, results: List[APIResult]) -> "TestSummary":
        if not results:
            return cls()
        times = [r.response_time for r in results]
        total = len(results)
        return cls(
            average_response_time=sum(times) / total,
            max_response_time=max(times),
            min_response_time=min(times),
            success_rate=sum(1 for r in results if r.status == ResultStatus.PASSED) / total * 100,
            error_rate=sum(1 for r in results if r.status == ResultStatus.ERROR) / total * 100,
            timeout_count=sum(1 for r in results if r.timed_out),
            assertion_failures=sum(
                1 for r in results for a in r.assertion_results if not a.passed
            ),
        )


@dataclass
class TestSuiteResult:
    name: str
    start_time: datetime
    end_time: datetime
    results: List[APIResult] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def total_tests(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.status == ResultStatus.PASSED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == ResultStatus.FAILED)

    @property
    def errors(self) -> int:
        return sum(1 for r in self.results if r.status == ResultStatus.ERROR)

    @property
    def duration(self) -> float:
        return (self.end_time - self.start_time).total_seconds() * 1000

    @property
    def summary(self) -> TestSummary:
        return TestSummary.from_results(self.results)

    @property
    def success_rate(self) -> float:
        return self.summary.success_rate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration": self.duration,
            "total_tests": self.total_tests,
            "passed": self.passed,
            "failed": self.failed,
            "errors": self.errors,
            "summary": self.summary.to_dict(),
            "results": [r.to_dict() for r in self.results],
        }
