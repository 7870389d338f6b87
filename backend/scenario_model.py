# -*- coding: utf-8 -*-
"""
Scenario Model
Multi-step test scenarios with expected outcomes, retry policy and a status state machine
"""

import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from engine_errors import InvalidTransitionError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MIN_SCENARIO_TIMEOUT_MS = 1_000
MAX_SCENARIO_TIMEOUT_MS = 1_200_000


class ScenarioType(Enum):
    """Kinds of scenario"""
    END_TO_END = "end-to-end"
    INTEGRATION = "integration"
    API = "api"
    LOAD = "load"
    REGRESSION = "regression"


class ScenarioStatus(Enum):
    """Scenario lifecycle states"""
    CREATED = "created"
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    RETRYING = "retrying"


ALLOWED_TRANSITIONS: Dict[ScenarioStatus, frozenset] = {
    ScenarioStatus.CREATED: frozenset({ScenarioStatus.PENDING}),
    ScenarioStatus.PENDING: frozenset({ScenarioStatus.RUNNING}),
    ScenarioStatus.RUNNING: frozenset({
        ScenarioStatus.PASSED,
        ScenarioStatus.FAILED,
        ScenarioStatus.TIMEOUT,
        ScenarioStatus.CANCELLED,
    }),
    ScenarioStatus.FAILED: frozenset({ScenarioStatus.RETRYING}),
    ScenarioStatus.TIMEOUT: frozenset({ScenarioStatus.RETRYING}),
    ScenarioStatus.RETRYING: frozenset({ScenarioStatus.RUNNING}),
    ScenarioStatus.PASSED: frozenset(),
    ScenarioStatus.CANCELLED: frozenset(),
}


def can_transition(current: ScenarioStatus, requested: ScenarioStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


def _coerce_status(value: Union[str, ScenarioStatus]) -> ScenarioStatus:
    if isinstance(value, ScenarioStatus):
        return value
    try:
        return ScenarioStatus(value)
    except ValueError:
        raise ValidationError("unknown_status", f"Unknown scenario status: {value}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RetryConfig:
    """Retry policy shared by scenarios and API test execution"""
    max_attempts: int = 1
    delay: int = 1000  # milliseconds
    exponential_backoff: bool = False
    retryable_statuses: List[str] = field(
        default_factory=lambda: [ScenarioStatus.FAILED.value, ScenarioStatus.TIMEOUT.value]
    )

    def validate(self):
        if self.max_attempts < 1:
            raise ValidationError("retry_max_attempts", "Retry max attempts must be at least 1")
        if self.delay < 0:
            raise ValidationError("retry_delay", "Retry delay cannot be negative")

    def delay_for(self, attempt: int) -> int:
        """Delay in milliseconds before retry number `attempt` (1-based)"""
        if self.exponential_backoff:
            return self.delay * (2 ** max(attempt - 1, 0))
        return self.delay

    def should_retry(self, status: Union[str, Enum], attempt: int) -> bool:
        value = status.value if isinstance(status, Enum) else status
        return attempt < self.max_attempts and value in self.retryable_statuses

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "delay": self.delay,
            "exponential_backoff": self.exponential_backoff,
            "retryable_statuses": list(self.retryable_statuses),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        return cls(
            max_attempts=data.get("max_attempts", 1),
            delay=data.get("delay", 1000),
            exponential_backoff=data.get("exponential_backoff", False),
            retryable_statuses=list(data.get("retryable_statuses", ["failed", "timeout"])),
        )


@dataclass
class TestStep:
    """A single ordered action within a scenario"""
    name: str
    action: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    expected_result: Any = None
    timeout: int = 30000  # milliseconds
    order: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order,
            "name": self.name,
            "action": self.action,
            "parameters": self.parameters,
            "expected_result": self.expected_result,
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestStep":
        return cls(
            name=data.get("name", ""),
            action=data.get("action", ""),
            parameters=dict(data.get("parameters") or {}),
            expected_result=data.get("expected_result"),
            timeout=data.get("timeout", 30000),
            order=data.get("order"),
        )


@dataclass
class TestOutcome:
    """
    Expected assertion over the results of a scenario run.

    `step_order` selects the step whose actual result is inspected (the last
    step when omitted) and `field` is a dot-notation path into that result.
    """
    description: str
    expected_value: Any = None
    operator: str = "equals"
    field: Optional[str] = None
    step_order: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "expected_value": self.expected_value,
            "operator": self.operator,
            "field": self.field,
            "step_order": self.step_order,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestOutcome":
        return cls(
            description=data.get("description", ""),
            expected_value=data.get("expected_value"),
            operator=data.get("operator", "equals"),
            field=data.get("field"),
            step_order=data.get("step_order"),
        )


@dataclass
class TestScenario:
    """Named, ordered multi-step test with expected outcomes and a retry policy"""
    name: str
    steps: List[TestStep]
    expected_outcomes: List[TestOutcome]
    description: str = ""
    type: ScenarioType = ScenarioType.END_TO_END
    environment: str = "local"
    tags: List[str] = field(default_factory=list)
    timeout: int = 300000  # milliseconds
    dependencies: List[str] = field(default_factory=list)
    retry_config: RetryConfig = field(default_factory=RetryConfig)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ScenarioStatus = ScenarioStatus.CREATED
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if isinstance(self.type, str):
            self.type = ScenarioType(self.type)
        self.status = _coerce_status(self.status)
        self.steps = list(self.steps)
        self.expected_outcomes = list(self.expected_outcomes)
        next_order = 0
        for step in self.steps:
            if step.order is None:
                step.order = next_order + 1
            next_order = max(next_order, step.order)
        self.validate()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self):
        """Check every invariant, raising ValidationError for the first violated rule"""
        if not self.name or not self.name.strip():
            raise ValidationError("empty_name", "Scenario name is required")
        if not self.steps:
            raise ValidationError("no_steps", "Scenario must contain at least one step")
        if not self.expected_outcomes:
            raise ValidationError("no_outcomes", "Scenario must declare at least one expected outcome")

        orders = [step.order for step in self.steps]
        seen = set()
        for order in orders:
            if order in seen:
                raise ValidationError("duplicate_step_order", f"Duplicate step order: {order}")
            seen.add(order)
        for previous, current in zip(orders, orders[1:]):
            if current < previous:
                raise ValidationError(
                    "steps_out_of_order",
                    f"Steps are out of ascending order: {previous} before {current}"
                )

        if not MIN_SCENARIO_TIMEOUT_MS <= self.timeout <= MAX_SCENARIO_TIMEOUT_MS:
            raise ValidationError(
                "timeout_out_of_range",
                f"Scenario timeout must be between {MIN_SCENARIO_TIMEOUT_MS} and "
                f"{MAX_SCENARIO_TIMEOUT_MS} ms, got {self.timeout}"
            )

        for step in self.steps:
            if not step.name or not step.name.strip():
                raise ValidationError("step_name_required", f"Step {step.order} has no name")
            if not step.action:
                raise ValidationError("step_action_required", f"Step '{step.name}' has no action")
            if step.timeout <= 0:
                raise ValidationError("step_timeout_positive", f"Step '{step.name}' timeout must be positive")
        for outcome in self.expected_outcomes:
            if not outcome.description:
                raise ValidationError("outcome_description_required", "Expected outcome needs a description")

        self.retry_config.validate()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def update_status(self, next_status: Union[str, ScenarioStatus]) -> ScenarioStatus:
        requested = _coerce_status(next_status)
        if not can_transition(self.status, requested):
            raise InvalidTransitionError(self.status.value, requested.value)

        previous = self.status
        self.status = requested
        self.updated_at = _utcnow()
        logger.debug(f"Scenario {self.id} status {previous.value} -> {requested.value}")
        return self.status

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]

    # ------------------------------------------------------------------
    # Mutators (validated, rolled back on failure)
    # ------------------------------------------------------------------

    def _mutate(self, change):
        snapshot = (list(self.steps), list(self.expected_outcomes), self.updated_at)
        try:
            result = change()
            self.validate()
        except ValidationError:
            self.steps, self.expected_outcomes, self.updated_at = snapshot
            raise
        self.updated_at = _utcnow()
        return result

    def next_step_order(self) -> int:
        if not self.steps:
            return 1
        return max(step.order for step in self.steps) + 1

    def add_step(self, step: TestStep) -> TestStep:
        def change():
            if step.order is None:
                step.order = self.next_step_order()
            self.steps.append(step)
            return step

        assigned = step.order is None
        try:
            return self._mutate(change)
        except ValidationError:
            if assigned:
                step.order = None
            raise

    def remove_step(self, order: int) -> TestStep:
        matches = [step for step in self.steps if step.order == order]
        if not matches:
            raise NotFoundError("Step", [str(order)])

        def change():
            self.steps.remove(matches[0])
            return matches[0]

        return self._mutate(change)

    def add_expected_outcome(self, outcome: TestOutcome) -> TestOutcome:
        def change():
            self.expected_outcomes.append(outcome)
            return outcome

        return self._mutate(change)

    def remove_expected_outcome(self, description: str) -> TestOutcome:
        matches = [o for o in self.expected_outcomes if o.description == description]
        if not matches:
            raise NotFoundError("Expected outcome", [description])

        def change():
            self.expected_outcomes.remove(matches[0])
            return matches[0]

        return self._mutate(change)

    def get_step(self, order: int) -> Optional[TestStep]:
        for step in self.steps:
            if step.order == order:
                return step
        return None

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def clone(self, **overrides) -> "TestScenario":
        """Fresh CREATED copy, used when a run needs its own state machine"""
        data = self.to_dict()
        data.update(id=str(uuid.uuid4()), status=ScenarioStatus.CREATED.value)
        data.pop("created_at", None)
        data.pop("updated_at", None)
        data.update(overrides)
        return TestScenario.from_dict(copy.deepcopy(data))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "environment": self.environment,
            "steps": [step.to_dict() for step in self.steps],
            "expected_outcomes": [outcome.to_dict() for outcome in self.expected_outcomes],
            "tags": list(self.tags),
            "timeout": self.timeout,
            "dependencies": list(self.dependencies),
            "retry_config": self.retry_config.to_dict(),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestScenario":
        kwargs: Dict[str, Any] = {
            "name": data.get("name", ""),
            "description": data.get("description", ""),
            "type": data.get("type", ScenarioType.END_TO_END.value),
            "environment": data.get("environment", "local"),
            "steps": [TestStep.from_dict(s) for s in data.get("steps", [])],
            "expected_outcomes": [TestOutcome.from_dict(o) for o in data.get("expected_outcomes", [])],
            "tags": list(data.get("tags", [])),
            "timeout": data.get("timeout", 300000),
            "dependencies": list(data.get("dependencies", [])),
            "retry_config": RetryConfig.from_dict(data.get("retry_config") or {}),
            "status": data.get("status", ScenarioStatus.CREATED.value),
        }
        if data.get("id"):
            kwargs["id"] = data["id"]
        for stamp in ("created_at", "updated_at"):
            if data.get(stamp):
                kwargs[stamp] = datetime.fromisoformat(data[stamp])
        return cls(**kwargs)
