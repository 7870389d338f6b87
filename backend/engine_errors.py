# -*- coding: utf-8 -*-
"""
Engine Errors
Error taxonomy shared by the scenario, mock data, API testing and load test modules
"""

from typing import Iterable, List, Optional


class EngineError(Exception):
    """Base class for all orchestration engine errors"""


class ValidationError(EngineError, ValueError):
    """An entity failed one of its invariants at construction or mutation"""

    def __init__(self, rule: str, message: Optional[str] = None):
        self.rule = rule
        self.message = message or rule
        super().__init__(f"{self.message} (rule: {rule})")


class InvalidTransitionError(EngineError):
    """Status change outside the allowed transition graph"""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid status transition: {current} -> {requested}")


class NotFoundError(EngineError, LookupError):
    """
    One or more identifiers could not be resolved.

    All missing identifiers of a batch are reported together so callers can
    fix every problem in one pass.
    """

    def __init__(self, kind: str, ids: Iterable[str] = (), message: Optional[str] = None):
        self.kind = kind
        self.ids: List[str] = list(ids)
        if message is None:
            message = f"{kind} not found: {', '.join(self.ids)}"
        self.message = message
        super().__init__(message)


class UnsupportedFormatError(EngineError, ValueError):
    """Unknown import, export or report format"""

    def __init__(self, fmt: str, supported: Iterable[str] = ()):
        self.format = fmt
        self.supported = list(supported)
        message = f"Unsupported format: {fmt}"
        if self.supported:
            message += f" (supported: {', '.join(self.supported)})"
        super().__init__(message)


class NetworkError(EngineError):
    """Transport-level failure while talking to the target API"""


class RequestTimeoutError(EngineError):
    """An HTTP call exceeded its own timeout"""

    def __init__(self, timeout_ms: int, message: Optional[str] = None):
        self.timeout_ms = timeout_ms
        super().__init__(message or f"Request timed out after {timeout_ms}ms")
