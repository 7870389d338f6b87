# -*- coding: utf-8 -*-
"""
Flow Results
Result and metrics model shared by scenario runs, API execution and load tests
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from engine_errors import ValidationError


class FlowStatus(Enum):
    """Outcome of a scenario run"""
    PASSED = "passed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ERROR = "error"


class StepStatus(Enum):
    """Outcome of a single step"""
    PASSED = "passed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


@dataclass
class NetworkIO:
    bytes_sent: int = 0
    bytes_received: int = 0
    request_count: int = 0
    connection_time: float = 0.0  # milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "request_count": self.request_count,
            "connection_time": self.connection_time,
        }


@dataclass
class PerformanceMetrics:
    """Resource and timing figures captured for a run"""
    response_time: float = 0.0  # milliseconds
    throughput: float = 0.0  # operations per second
    error_rate: float = 0.0  # percent
    memory_usage: int = 0  # bytes
    cpu_usage: float = 0.0  # percent
    network_io: NetworkIO = field(default_factory=NetworkIO)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response_time": self.response_time,
            "throughput": self.throughput,
            "error_rate": self.error_rate,
            "memory_usage": self.memory_usage,
            "cpu_usage": self.cpu_usage,
            "network_io": self.network_io.to_dict(),
        }


@dataclass
class TestError:
    """Structured error attached to a run"""
    type: str
    message: str
    step_order: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "step_order": self.step_order,
            "details": self.details,
        }


@dataclass
class StepResult:
    order: int
    name: str
    action: str
    status: StepStatus
    duration: float  # milliseconds
    actual_result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order,
            "name": self.name,
            "action": self.action,
            "status": self.status.value,
            "duration": self.duration,
            "actual_result": self.actual_result,
            "error": self.error,
        }


@dataclass
class OutcomeResult:
    description: str
    passed: bool
    expected_value: Any = None
    actual_value: Any = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "passed": self.passed,
            "expected_value": self.expected_value,
            "actual_value": self.actual_value,
            "message": self.message,
        }


@dataclass
class BuildInfo:
    version: str = "0.0.0"
    commit: str = "unknown"
    branch: str = "unknown"
    environment: str = "local"
    build_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "commit": self.commit,
            "branch": self.branch,
            "environment": self.environment,
            "build_date": self.build_date,
        }

    @classmethod
    def from_settings(cls, engine_settings) -> "BuildInfo":
        return cls(
            version=engine_settings.build_version,
            commit=engine_settings.build_commit,
            branch=engine_settings.build_branch,
            environment=engine_settings.environment,
        )


@dataclass
class FlowResult:
    """
    Result of one scenario run.

    Duration is always derived from the start and end timestamps, and a run
    cannot be reported as passed while any of its steps did not pass.
    """
    scenario_id: str
    run_id: str
    status: FlowStatus
    start_time: datetime
    end_time: datetime
    steps: List[StepResult] = field(default_factory=list)
    outcomes: List[OutcomeResult] = field(default_factory=list)
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    errors: List[TestError] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    environment: str = "local"
    build_info: BuildInfo = field(default_factory=BuildInfo)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if isinstance(self.status, str):
            self.status = FlowStatus(self.status)
        if self.end_time < self.start_time:
            raise ValidationError("end_before_start", "Flow result ends before it starts")
        if self.status == FlowStatus.PASSED:
            if any(step.status != StepStatus.PASSED for step in self.steps):
                raise ValidationError("passed_with_failed_steps", "A passed flow cannot contain failed steps")
            if any(not outcome.passed for outcome in self.outcomes):
                raise ValidationError("passed_with_failed_outcomes", "A passed flow cannot contain failed outcomes")

    @property
    def duration(self) -> float:
        """Milliseconds between start and end"""
        return (self.end_time - self.start_time).total_seconds() * 1000

    @property
    def passed(self) -> bool:
        return self.status == FlowStatus.PASSED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "scenario_id": self.scenario_id,
            "run_id": self.run_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration": self.duration,
            "steps": [step.to_dict() for step in self.steps],
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "metrics": self.metrics.to_dict(),
            "errors": [error.to_dict() for error in self.errors],
            "artifacts": list(self.artifacts),
            "environment": self.environment,
            "build_info": self.build_info.to_dict(),
        }


@dataclass
class ExecutionSummary:
    """Aggregate over several scenario runs"""
    total_scenarios: int
    passed: int
    failed: int
    timed_out: int
    errors: int
    duration: float  # milliseconds
    average_response_time: float
    error_rate: float
    environment: str
    results: List[FlowResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_scenarios": self.total_scenarios,
            "passed": self.passed,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "errors": self.errors,
            "duration": self.duration,
            "average_response_time": self.average_response_time,
            "error_rate": self.error_rate,
            "environment": self.environment,
            "results": [result.to_dict() for result in self.results],
        }
