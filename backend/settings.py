# -*- coding: utf-8 -*-
"""
Engine Settings
Environment-driven configuration for the orchestration engine
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _default_load_threshold() -> float:
    return float((os.cpu_count() or 1) * 2)


@dataclass
class EngineSettings:
    """Runtime configuration, read once from the environment"""
    base_url: str = "http://localhost:3000"
    default_request_timeout_ms: int = 30000
    verify_ssl: bool = True

    # Mock data cache
    mock_cache_max_bytes: int = 100 * 1024 * 1024
    mock_cache_max_age_seconds: float = 24 * 60 * 60
    mock_data_ttl_seconds: Optional[float] = 24 * 60 * 60

    result_history_limit: int = 1000

    # Load testing
    load_test_max_users: int = 15000
    memory_stress_percent: float = 90.0
    load_stress_average: float = field(default_factory=_default_load_threshold)

    # Build descriptor
    environment: str = "local"
    build_version: str = "0.0.0"
    build_commit: str = "unknown"
    build_branch: str = "unknown"

    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "EngineSettings":
        ttl = float(os.environ.get("MOCK_DATA_TTL_SECONDS", str(24 * 60 * 60)))
        load_stress = os.environ.get("LOAD_STRESS_AVERAGE")

        return cls(
            base_url=os.environ.get("ENGINE_BASE_URL", "http://localhost:3000"),
            default_request_timeout_ms=int(os.environ.get("DEFAULT_REQUEST_TIMEOUT_MS", "30000")),
            verify_ssl=_env_bool("VERIFY_SSL", True),
            mock_cache_max_bytes=int(os.environ.get("MOCK_CACHE_MAX_BYTES", str(100 * 1024 * 1024))),
            mock_cache_max_age_seconds=float(os.environ.get("MOCK_CACHE_MAX_AGE_SECONDS", "86400")),
            mock_data_ttl_seconds=ttl if ttl > 0 else None,
            result_history_limit=int(os.environ.get("RESULT_HISTORY_LIMIT", "1000")),
            load_test_max_users=int(os.environ.get("LOAD_TEST_MAX_USERS", "15000")),
            memory_stress_percent=float(os.environ.get("MEMORY_STRESS_PERCENT", "90")),
            load_stress_average=float(load_stress) if load_stress else _default_load_threshold(),
            environment=os.environ.get("ENVIRONMENT", "local"),
            build_version=os.environ.get("BUILD_VERSION", "0.0.0"),
            build_commit=os.environ.get("BUILD_COMMIT", "unknown"),
            build_branch=os.environ.get("BUILD_BRANCH", "unknown"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            cors_origins=[o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()],
        )


settings = EngineSettings.from_env()
