# -*- coding: utf-8 -*-
"""
Health Monitor
Samples process-wide memory, CPU and load indicators during load tests
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import psutil


@dataclass
class HealthSample:
    memory_percent: float
    cpu_percent: float
    load_average: float  # one-minute
    process_rss: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_percent": self.memory_percent,
            "cpu_percent": self.cpu_percent,
            "load_average": self.load_average,
            "process_rss": self.process_rss,
            "timestamp": self.timestamp.isoformat(),
        }


def sample_system_health() -> HealthSample:
    """Current readings from psutil"""
    memory = psutil.virtual_memory()
    return HealthSample(
        memory_percent=memory.percent,
        cpu_percent=psutil.cpu_percent(interval=None),
        load_average=psutil.getloadavg()[0],
        process_rss=psutil.Process().memory_info().rss,
    )


@dataclass
class StressThresholds:
    memory_percent: float = 90.0
    load_average: float = 4.0

    def check(self, sample: HealthSample) -> Optional[Dict[str, Any]]:
        """Stress payload when a sample crosses either threshold, else None"""
        reasons = []
        if sample.memory_percent > self.memory_percent:
            reasons.append("memory")
        if sample.load_average > self.load_average:
            reasons.append("load_average")
        if not reasons:
            return None
        return {
            "reasons": reasons,
            "memory_percent": sample.memory_percent,
            "load_average": sample.load_average,
            "cpu_percent": sample.cpu_percent,
            "memory_threshold": self.memory_percent,
            "load_average_threshold": self.load_average,
        }
