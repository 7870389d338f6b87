# -*- coding: utf-8 -*-
"""
HTTP Transport
aiohttp-backed request execution that reports network and timeout failures as typed errors
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

from engine_errors import NetworkError, RequestTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    elapsed_ms: float = 0.0

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return ""


class AiohttpTransport:
    """
    Issues one HTTP request per call.

    A shared ClientSession is used between `open()` and `close()` (or inside
    `async with`); otherwise each call opens and closes its own session.
    """

    def __init__(self, verify_ssl: bool = True):
        self.verify_ssl = verify_ssl
        self._session: Optional[aiohttp.ClientSession] = None

    async def open(self):
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout_ms: int = 30000,
    ) -> TransportResponse:
        """
        Send a request and return status, headers and raw text.

        Raises RequestTimeoutError when the call exceeds `timeout_ms` and
        NetworkError for any other transport failure.
        """
        kwargs: Dict[str, Any] = {
            "headers": headers or {},
            "timeout": aiohttp.ClientTimeout(total=timeout_ms / 1000),
            "ssl": self.verify_ssl,
        }
        if body is not None:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["data"] = body.encode("utf-8") if isinstance(body, str) else body

        started = time.perf_counter()
        owns_session = self._session is None or self._session.closed
        session = aiohttp.ClientSession() if owns_session else self._session
        try:
            async with session.request(method, url, **kwargs) as response:
                text = await response.text(errors="replace")
                return TransportResponse(
                    status=response.status,
                    headers={k: v for k, v in response.headers.items()},
                    text=text,
                    elapsed_ms=(time.perf_counter() - started) * 1000,
                )
        except asyncio.TimeoutError:
            logger.warning(f"{method} {url} timed out after {timeout_ms}ms")
            raise RequestTimeoutError(timeout_ms)
        except aiohttp.ClientError as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise NetworkError(str(e) or e.__class__.__name__) from e
        finally:
            if owns_session:
                await session.close()
