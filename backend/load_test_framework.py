# -*- coding: utf-8 -*-
"""
Load Test Framework
Simulates concurrent virtual users across ramp-up, sustain and ramp-down phases
"""

import asyncio
import logging
import math
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from engine_errors import InvalidTransitionError, NotFoundError, ValidationError
from health_monitor import HealthSample, StressThresholds, sample_system_health
from load_test_events import EventSubscription, LoadTestEventBus, LoadTestEventType
from settings import settings

logger = logging.getLogger(__name__)


class LoadTestPhase(Enum):
    """Load test lifecycle"""
    IDLE = "idle"
    RAMPING_UP = "ramping_up"
    SUSTAINING = "sustaining"
    RAMPING_DOWN = "ramping_down"
    COMPLETED = "completed"
    STOPPED = "stopped"


TERMINAL_PHASES = (LoadTestPhase.COMPLETED, LoadTestPhase.STOPPED)

PHASE_ORDER = {
    LoadTestPhase.IDLE: LoadTestPhase.RAMPING_UP,
    LoadTestPhase.RAMPING_UP: LoadTestPhase.SUSTAINING,
    LoadTestPhase.SUSTAINING: LoadTestPhase.RAMPING_DOWN,
    LoadTestPhase.RAMPING_DOWN: LoadTestPhase.COMPLETED,
}


@dataclass
class SuccessCriteria:
    max_error_rate: float  # percent
    max_average_response_time: float  # milliseconds
    max_p95_response_time: float  # milliseconds
    min_throughput: float  # requests per second

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_error_rate": self.max_error_rate,
            "max_average_response_time": self.max_average_response_time,
            "max_p95_response_time": self.max_p95_response_time,
            "min_throughput": self.min_throughput,
        }


@dataclass
class LoadTestConfig:
    """Configuration for one load test run"""
    name: str
    target_users: int
    ramp_up_duration: float  # seconds
    sustain_duration: float  # seconds
    ramp_down_duration: float = 0.0  # seconds
    think_time: int = 1000  # milliseconds between invocations
    timeout: int = 10000  # milliseconds per invocation
    max_retries: int = 3  # consecutive failures a user tolerates
    health_check_interval: int = 5000  # milliseconds
    description: str = ""
    memory_stress_percent: float = settings.memory_stress_percent
    load_stress_average: float = settings.load_stress_average
    success_criteria: Optional[SuccessCriteria] = None

    def validate(self, max_users: Optional[int] = None):
        if not self.name or not self.name.strip():
            raise ValidationError("load_test_name_required", "Load test name is required")
        if self.target_users < 1:
            raise ValidationError("target_users_positive", "Target users must be at least 1")
        if max_users is not None and self.target_users > max_users:
            raise ValidationError(
                "target_users_capacity", f"Target users {self.target_users} exceeds capacity of {max_users}"
            )
        if self.ramp_up_duration < 0 or self.ramp_down_duration < 0:
            raise ValidationError("durations_non_negative", "Ramp durations cannot be negative")
        if self.sustain_duration <= 0:
            raise ValidationError("sustain_positive", "Sustain duration must be positive")
        if self.think_time < 0:
            raise ValidationError("think_time_non_negative", "Think time cannot be negative")
        if self.timeout <= 0:
            raise ValidationError("timeout_positive", "Timeout must be positive")
        if self.max_retries < 0:
            raise ValidationError("max_retries_non_negative", "Max retries cannot be negative")
        if self.health_check_interval <= 0:
            raise ValidationError("health_interval_positive", "Health check interval must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "target_users": self.target_users,
            "ramp_up_duration": self.ramp_up_duration,
            "sustain_duration": self.sustain_duration,
            "ramp_down_duration": self.ramp_down_duration,
            "think_time": self.think_time,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
            "health_check_interval": self.health_check_interval,
            "memory_stress_percent": self.memory_stress_percent,
            "load_stress_average": self.load_stress_average,
            "success_criteria": self.success_criteria.to_dict() if self.success_criteria else None,
        }


# ============================================================================
# PRESETS
# ============================================================================

def _preset(name, description, users, ramp, sustain, think, timeout, retries, interval, criteria):
    return LoadTestConfig(
        name=name,
        description=description,
        target_users=users,
        ramp_up_duration=ramp,
        sustain_duration=sustain,
        ramp_down_duration=ramp,
        think_time=think,
        timeout=timeout,
        max_retries=retries,
        health_check_interval=interval,
        success_criteria=SuccessCriteria(*criteria),
    )


PRESETS: Dict[str, Callable[[], LoadTestConfig]] = {
    "baseline": lambda: _preset("baseline-load", "Baseline performance with 100 concurrent users",
                                100, 30, 300, 1000, 10000, 3, 5000, (1.0, 500, 1000, 50)),
    "medium": lambda: _preset("medium-load", "Moderate load with 1,000 concurrent users",
                              1000, 60, 600, 500, 15000, 3, 3000, (2.0, 1000, 2000, 400)),
    "high": lambda: _preset("high-load", "High load with 5,000 concurrent users",
                            5000, 120, 600, 250, 20000, 3, 2000, (3.0, 2000, 4000, 1500)),
    "stress": lambda: _preset("stress-load", "Stress test with 10,000 concurrent users",
                              10000, 180, 600, 100, 30000, 5, 1000, (5.0, 3000, 8000, 2500)),
    "breakpoint": lambda: _preset("break-point", "Find the breaking point at 15,000 users",
                                  15000, 300, 300, 50, 45000, 5, 500, (15.0, 10000, 20000, 1000)),
    "recovery": lambda: _preset("recovery-test", "Recovery behaviour after a stress period",
                                500, 60, 300, 2000, 15000, 3, 5000, (1.5, 800, 1500, 100)),
}


def preset_config(name: str) -> LoadTestConfig:
    factory = PRESETS.get(name)
    if factory is None:
        raise NotFoundError("Load test preset", [name])
    return factory()


# ============================================================================
# METRICS
# ============================================================================

@dataclass
class RequestSample:
    user_id: str
    started_at: float  # seconds since the test started
    duration_ms: float
    success: bool


@dataclass
class UserMetrics:
    user_id: str
    index: int
    scheduled_start: float  # seconds since the test started
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    request_count: int = 0
    error_count: int = 0
    consecutive_errors: int = 0
    response_times: List[float] = field(default_factory=list)
    stop_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "scheduled_start": self.scheduled_start,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "average_response_time": (sum(self.response_times) / len(self.response_times)
                                      if self.response_times else 0.0),
            "stop_reason": self.stop_reason,
        }


@dataclass
class AggregatedMetrics:
    concurrent_users_achieved: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    error_rate: float = 0.0  # percent
    average_response_time: float = 0.0
    p95_response_time: float = 0.0
    sustained_throughput: float = 0.0  # requests per second
    sustain_window: float = 0.0  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concurrent_users_achieved": self.concurrent_users_achieved,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "error_rate": self.error_rate,
            "average_response_time": self.average_response_time,
            "p95_response_time": self.p95_response_time,
            "sustained_throughput": self.sustained_throughput,
            "sustain_window": self.sustain_window,
        }


def percentile(values: List[float], pct: float) -> float:
    """Nearest-rank percentile; 0.0 for an empty sample"""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[min(rank, len(ordered)) - 1]


def compute_start_offsets(target_users: int, ramp_up_seconds: float) -> List[float]:
    """Evenly staggered start offsets: user i starts at i * T / N"""
    if target_users <= 0:
        return []
    step = ramp_up_seconds / target_users
    return [index * step for index in range(target_users)]


def aggregate_metrics(
    samples: List[RequestSample],
    window_start: float,
    window_end: float,
    concurrency: int,
) -> AggregatedMetrics:
    """Steady-state figures from samples that started inside the sustain window"""
    window = [s for s in samples if window_start <= s.started_at < window_end]
    duration = max(window_end - window_start, 0.0)
    if not window:
        return AggregatedMetrics(concurrent_users_achieved=concurrency, sustain_window=duration)

    times = [s.duration_ms for s in window]
    failed = sum(1 for s in window if not s.success)
    return AggregatedMetrics(
        concurrent_users_achieved=concurrency,
        total_requests=len(window),
        successful_requests=len(window) - failed,
        failed_requests=failed,
        error_rate=failed / len(window) * 100,
        average_response_time=sum(times) / len(times),
        p95_response_time=percentile(times, 95),
        sustained_throughput=(len(window) / duration) if duration > 0 else 0.0,
        sustain_window=duration,
    )


@dataclass
class LoadTestResults:
    id: str
    config: LoadTestConfig
    phase: LoadTestPhase
    start_time: datetime
    end_time: datetime
    aggregated: AggregatedMetrics
    user_metrics: List[UserMetrics] = field(default_factory=list)
    health_samples: List[HealthSample] = field(default_factory=list)
    stress_signals: int = 0
    total_invocations: int = 0

    def evaluate_success(self, criteria: Optional[SuccessCriteria] = None) -> Dict[str, Any]:
        criteria = criteria or self.config.success_criteria
        if criteria is None:
            return {"passed": self.phase == LoadTestPhase.COMPLETED, "failures": []}

        metrics = self.aggregated
        failures = []
        if metrics.error_rate > criteria.max_error_rate:
            failures.append(f"Error rate {metrics.error_rate:.2f}% exceeds {criteria.max_error_rate}%")
        if metrics.average_response_time > criteria.max_average_response_time:
            failures.append(f"Average response time {metrics.average_response_time:.0f}ms exceeds "
                            f"{criteria.max_average_response_time}ms")
        if metrics.p95_response_time > criteria.max_p95_response_time:
            failures.append(f"P95 response time {metrics.p95_response_time:.0f}ms exceeds "
                            f"{criteria.max_p95_response_time}ms")
        if metrics.sustained_throughput < criteria.min_throughput:
            failures.append(f"Throughput {metrics.sustained_throughput:.1f} req/s below "
                            f"{criteria.min_throughput} req/s")
        return {"passed": not failures, "failures": failures}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "config": self.config.to_dict(),
            "phase": self.phase.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "aggregated_metrics": self.aggregated.to_dict(),
            "user_metrics": [u.to_dict() for u in self.user_metrics],
            "health_samples": [s.to_dict() for s in self.health_samples],
            "stress_signals": self.stress_signals,
            "total_invocations": self.total_invocations,
            "success": self.evaluate_success(),
        }


# ============================================================================
# FRAMEWORK
# ============================================================================

@dataclass
class VirtualUserContext:
    """Passed to the workload on every invocation"""
    user_id: str
    index: int
    iteration: int
    config: LoadTestConfig
    rng: random.Random


Workload = Callable[[VirtualUserContext], Awaitable[Any]]


class LoadTestFramework:
    """
    Drives virtual users as asyncio tasks.

    A workload invocation fails when it raises, returns False, or runs past
    the configured timeout. Failures are counted for that user only. `stop()`
    sets a shared event that every user checks before its next invocation;
    invocations already in flight run to completion or to their timeout.
    """

    def __init__(
        self,
        max_users: int = settings.load_test_max_users,
        health_probe: Callable[[], HealthSample] = sample_system_health,
        rng: Optional[random.Random] = None,
        event_bus: Optional[LoadTestEventBus] = None,
    ):
        self.max_users = max_users
        self.health_probe = health_probe
        self.rng = rng or random.Random()
        self.events = event_bus or LoadTestEventBus()
        self.phase = LoadTestPhase.IDLE
        self.last_results: Optional[LoadTestResults] = None
        self._stop_event = asyncio.Event()
        self._active_users = 0
        self._peak_users = 0
        self._invocations = 0
        self._started_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def subscribe(self, *event_types: LoadTestEventType) -> EventSubscription:
        return self.events.subscribe(*event_types)

    def _set_phase(self, phase: LoadTestPhase):
        if phase == self.phase:
            return
        allowed = PHASE_ORDER.get(self.phase) == phase or (
            phase == LoadTestPhase.STOPPED and self.phase not in TERMINAL_PHASES
        )
        if not allowed:
            raise InvalidTransitionError(self.phase.value, phase.value)
        previous = self.phase
        self.phase = phase
        logger.info(f"Load test phase {previous.value} -> {phase.value}")
        self.events.publish(LoadTestEventType.PHASE_CHANGED, {"phase": phase.value, "previous": previous.value})

    @property
    def is_running(self) -> bool:
        return self.phase not in (LoadTestPhase.IDLE,) + TERMINAL_PHASES

    @property
    def is_stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self):
        """
        Cooperative cancellation, observed by every user before its next
        invocation. A stop requested before `run` starts aborts that run.
        """
        if self.phase not in TERMINAL_PHASES and not self._stop_event.is_set():
            logger.info("Load test stop requested")
            self._stop_event.set()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "active_users": self._active_users,
            "peak_users": self._peak_users,
            "invocations": self._invocations,
            "stopping": self.is_stopping,
        }

    async def _wait_or_stop(self, delay: float) -> bool:
        """Sleep up to `delay` seconds; True if stop was requested"""
        if delay <= 0:
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    # ------------------------------------------------------------------
    # Virtual users
    # ------------------------------------------------------------------

    async def _invoke(self, workload: Workload, ctx: VirtualUserContext, timeout_ms: int) -> bool:
        try:
            outcome = await asyncio.wait_for(workload(ctx), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.debug(f"{ctx.user_id} invocation timed out after {timeout_ms}ms")
            return False
        except Exception as e:
            logger.debug(f"{ctx.user_id} invocation failed: {str(e)}")
            return False
        return outcome is not False

    async def _user_loop(
        self,
        metrics: UserMetrics,
        config: LoadTestConfig,
        workload: Workload,
        samples: List[RequestSample],
        sustain_end: float,
    ):
        loop = asyncio.get_running_loop()
        if await self._wait_or_stop(self._started_at + metrics.scheduled_start - loop.time()):
            metrics.stop_reason = "stopped"
            self._publish_user_completed(metrics)
            return

        metrics.started_at = loop.time() - self._started_at
        self._active_users += 1
        self._peak_users = max(self._peak_users, self._active_users)
        iteration = 0
        try:
            while True:
                if self._stop_event.is_set():
                    metrics.stop_reason = "stopped"
                    break
                if loop.time() >= sustain_end:
                    metrics.stop_reason = "completed"
                    break

                ctx = VirtualUserContext(
                    user_id=metrics.user_id, index=metrics.index, iteration=iteration,
                    config=config, rng=self.rng,
                )
                began = loop.time()
                self._invocations += 1
                success = await self._invoke(workload, ctx, config.timeout)
                duration_ms = (loop.time() - began) * 1000

                samples.append(RequestSample(
                    user_id=metrics.user_id, started_at=began - self._started_at,
                    duration_ms=duration_ms, success=success,
                ))
                metrics.request_count += 1
                metrics.response_times.append(duration_ms)
                if success:
                    metrics.consecutive_errors = 0
                else:
                    metrics.error_count += 1
                    metrics.consecutive_errors += 1
                    if metrics.consecutive_errors > config.max_retries:
                        metrics.stop_reason = "error_budget"
                        logger.warning(f"{metrics.user_id} exhausted its error budget")
                        break

                iteration += 1
                think = config.think_time * (0.5 + self.rng.random()) / 1000
                await self._wait_or_stop(min(think, max(sustain_end - loop.time(), 0.0)))
        finally:
            self._active_users -= 1
            metrics.ended_at = loop.time() - self._started_at
            self._publish_user_completed(metrics)

    def _publish_user_completed(self, metrics: UserMetrics):
        self.events.publish(LoadTestEventType.USER_COMPLETED, {
            "user_id": metrics.user_id,
            "request_count": metrics.request_count,
            "error_count": metrics.error_count,
            "stop_reason": metrics.stop_reason,
        })

    async def _health_loop(self, config: LoadTestConfig, samples: List[HealthSample], stress: List[dict]):
        thresholds = StressThresholds(config.memory_stress_percent, config.load_stress_average)
        while True:
            sample = self.health_probe()
            samples.append(sample)
            payload = thresholds.check(sample)
            if payload is not None:
                stress.append(payload)
                logger.warning(f"System under stress: memory {sample.memory_percent:.1f}%, "
                               f"load {sample.load_average:.2f}")
                self.events.publish(LoadTestEventType.SYSTEM_STRESS, payload)
            if await self._wait_or_stop(config.health_check_interval / 1000):
                return

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, config: LoadTestConfig, workload: Workload) -> LoadTestResults:
        config.validate(self.max_users)
        if self.is_running:
            raise InvalidTransitionError(self.phase.value, LoadTestPhase.RAMPING_UP.value)

        self.phase = LoadTestPhase.IDLE
        self._active_users = 0
        self._peak_users = 0
        self._invocations = 0

        loop = asyncio.get_running_loop()
        test_id = str(uuid.uuid4())
        start_time = datetime.now(timezone.utc)
        self._started_at = loop.time()
        ramp_end = self._started_at + config.ramp_up_duration
        sustain_end = ramp_end + config.sustain_duration

        samples: List[RequestSample] = []
        health_samples: List[HealthSample] = []
        stress: List[dict] = []
        users = [
            UserMetrics(user_id=f"user-{index + 1}", index=index, scheduled_start=offset)
            for index, offset in enumerate(compute_start_offsets(config.target_users, config.ramp_up_duration))
        ]

        logger.info(f"Starting load test '{config.name}' with {config.target_users} users")
        self._set_phase(LoadTestPhase.RAMPING_UP)
        health_task = asyncio.create_task(self._health_loop(config, health_samples, stress))
        user_tasks = [
            asyncio.create_task(self._user_loop(user, config, workload, samples, sustain_end))
            for user in users
        ]

        stopped_at: Optional[float] = None
        try:
            if not await self._wait_or_stop(ramp_end - loop.time()):
                self._set_phase(LoadTestPhase.SUSTAINING)
                if not await self._wait_or_stop(sustain_end - loop.time()):
                    self._set_phase(LoadTestPhase.RAMPING_DOWN)

            if self._stop_event.is_set():
                stopped_at = loop.time()
                self._set_phase(LoadTestPhase.STOPPED)

            drain_limit = max(config.ramp_down_duration, config.timeout / 1000) + 1
            _, pending = await asyncio.wait(user_tasks, timeout=drain_limit)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"{len(pending)} virtual user(s) did not drain in time")
                await asyncio.gather(*pending, return_exceptions=True)

            if self.phase == LoadTestPhase.RAMPING_DOWN:
                if self._stop_event.is_set():
                    stopped_at = loop.time()
                    self._set_phase(LoadTestPhase.STOPPED)
                else:
                    self._set_phase(LoadTestPhase.COMPLETED)
        finally:
            self._stop_event.set()
            await asyncio.gather(health_task, return_exceptions=True)
            self._stop_event = asyncio.Event()

        window_end = min(sustain_end, stopped_at) if stopped_at is not None else sustain_end
        aggregated = aggregate_metrics(
            samples,
            window_start=config.ramp_up_duration,
            window_end=window_end - self._started_at,
            concurrency=self._peak_users,
        )
        results = LoadTestResults(
            id=test_id,
            config=config,
            phase=self.phase,
            start_time=start_time,
            end_time=datetime.now(timezone.utc),
            aggregated=aggregated,
            user_metrics=users,
            health_samples=health_samples,
            stress_signals=len(stress),
            total_invocations=len(samples),
        )
        self.last_results = results
        self.events.publish(LoadTestEventType.TEST_COMPLETED, {
            "test_id": test_id,
            "name": config.name,
            "phase": self.phase.value,
            **aggregated.to_dict(),
        })
        logger.info(
            f"Load test '{config.name}' {self.phase.value}: {aggregated.total_requests} sustained requests, "
            f"error rate {aggregated.error_rate:.2f}%, p95 {aggregated.p95_response_time:.0f}ms"
        )
        return results
