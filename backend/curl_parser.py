# -*- coding: utf-8 -*-
"""
cURL Parser
Turns a textual curl invocation into method, URL, headers and body
"""

import base64
import json
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

from engine_errors import EngineError

DATA_FLAGS = {"-d", "--data", "--data-raw", "--data-binary", "--data-ascii", "--json"}
# Flags that consume a value we do not use
IGNORED_VALUE_FLAGS = {
    "-o", "--output", "-A", "--user-agent", "-e", "--referer", "-b", "--cookie",
    "--connect-timeout", "--retry", "-w", "--write-out", "--cacert", "--cert", "--key",
    "-x", "--proxy", "--resolve",
}


class CurlParseError(EngineError, ValueError):
    """The text is not a usable curl command"""


@dataclass
class ParsedCurl:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    timeout_ms: Optional[int] = None

    @property
    def base_url(self) -> str:
        parts = urlsplit(self.url)
        return urlunsplit((parts.scheme, parts.netloc, "", "", ""))

    @property
    def endpoint(self) -> str:
        parts = urlsplit(self.url)
        path = parts.path or "/"
        return f"{path}?{parts.query}" if parts.query else path


def _split_header(raw: str):
    if ":" not in raw:
        raise CurlParseError(f"Malformed header: {raw}")
    key, value = raw.split(":", 1)
    return key.strip(), value.strip()


def _decode_body(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def parse_curl(command: str) -> ParsedCurl:
    """Parse a curl command line, raising CurlParseError on anything unusable"""
    if not command or not command.strip():
        raise CurlParseError("Empty curl command")

    # Join shell line continuations
    text = command.replace("\\\r\n", " ").replace("\\\n", " ").strip()
    try:
        tokens = shlex.split(text)
    except ValueError as e:
        raise CurlParseError(f"Could not tokenize command: {e}")

    if not tokens or tokens[0] != "curl":
        raise CurlParseError("Command must start with 'curl'")

    method: Optional[str] = None
    url: Optional[str] = None
    headers: Dict[str, str] = {}
    data_parts = []
    timeout_ms: Optional[int] = None
    force_get = False
    is_json = False

    def take_value(index: int, flag: str) -> str:
        if index + 1 >= len(tokens):
            raise CurlParseError(f"Missing value for {flag}")
        return tokens[index + 1]

    i = 1
    while i < len(tokens):
        token = tokens[i]

        if token in ("-X", "--request"):
            method = take_value(i, token).upper()
            i += 2
        elif token.startswith("-X") and len(token) > 2:
            method = token[2:].upper()
            i += 1
        elif token in ("-H", "--header"):
            key, value = _split_header(take_value(i, token))
            headers[key] = value
            i += 2
        elif token in DATA_FLAGS:
            data_parts.append(take_value(i, token))
            is_json = is_json or token == "--json"
            i += 2
        elif token in ("-u", "--user"):
            credentials = take_value(i, token)
            encoded = base64.b64encode(credentials.encode()).decode()
            headers["Authorization"] = f"Basic {encoded}"
            i += 2
        elif token in ("-m", "--max-time"):
            try:
                timeout_ms = int(float(take_value(i, token)) * 1000)
            except ValueError:
                raise CurlParseError(f"Invalid {token} value: {tokens[i + 1]}")
            i += 2
        elif token == "--url":
            url = take_value(i, token)
            i += 2
        elif token in ("-I", "--head"):
            method = "HEAD"
            i += 1
        elif token in ("-G", "--get"):
            force_get = True
            i += 1
        elif token in IGNORED_VALUE_FLAGS:
            i += 2
        elif token.startswith("-"):
            # Flag-only options such as -L, -k, -s, -v, --compressed
            i += 1
        else:
            if url is not None:
                raise CurlParseError(f"Unexpected argument: {token}")
            url = token
            i += 1

    if not url:
        raise CurlParseError("No URL found in curl command")
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise CurlParseError(f"Unsupported URL: {url}")

    body: Any = None
    if data_parts:
        raw = "&".join(data_parts)
        if force_get:
            separator = "&" if parts.query else "?"
            url = f"{url}{separator}{raw}"
        else:
            body = _decode_body(raw)
        if is_json:
            headers.setdefault("Content-Type", "application/json")

    if method is None:
        method = "POST" if body is not None else "GET"

    return ParsedCurl(method=method, url=url, headers=headers, body=body, timeout_ms=timeout_ms)
