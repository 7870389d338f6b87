# -*- coding: utf-8 -*-
"""
API Test Reports
Renders batches of API results as JSON, HTML or plain text
"""

import html
import json
from datetime import datetime, timezone
from enum import Enum
from typing import List

from api_test_models import APIResult, ResultStatus, TestSummary
from engine_errors import UnsupportedFormatError


class ReportFormat(Enum):
    JSON = "json"
    HTML = "html"
    TEXT = "text"


def _coerce_report_format(value) -> ReportFormat:
    if isinstance(value, ReportFormat):
        return value
    try:
        return ReportFormat(str(value).strip().lower())
    except ValueError:
        raise UnsupportedFormatError(str(value), [f.value for f in ReportFormat])


def generate_report(results: List[APIResult], fmt="json") -> str:
    fmt = _coerce_report_format(fmt)
    if fmt == ReportFormat.JSON:
        return json.dumps([r.to_dict() for r in results], indent=2, default=str)
    if fmt == ReportFormat.HTML:
        return _html_report(results)
    return _text_report(results)


def _text_report(results: List[APIResult]) -> str:
    summary = TestSummary.from_results(results)
    lines = [
        "API Test Report",
        "================",
        "",
        "Summary:",
        f"  Total Tests: {len(results)}",
        f"  Passed: {sum(1 for r in results if r.status == ResultStatus.PASSED)}",
        f"  Failed: {sum(1 for r in results if r.status == ResultStatus.FAILED)}",
        f"  Errors: {sum(1 for r in results if r.status == ResultStatus.ERROR)}",
        f"  Success Rate: {summary.success_rate:.2f}%",
        f"  Average Response Time: {summary.average_response_time:.2f}ms",
        "",
        "Results:",
    ]
    for index, result in enumerate(results, start=1):
        lines.append("")
        lines.append(f"{index}. Status: {result.status.value.upper()}")
        lines.append(f"   Test Case: {result.test_case_id}")
        lines.append(f"   HTTP Status: {result.actual_status}")
        lines.append(f"   Response Time: {result.response_time:.2f}ms")
        for error in result.errors:
            lines.append(f"   Error: {error}")
    return "\n".join(lines) + "\n"


def _html_report(results: List[APIResult]) -> str:
    summary = TestSummary.from_results(results)
    rows = []
    for index, result in enumerate(results, start=1):
        css = "passed" if result.status == ResultStatus.PASSED else "failed"
        errors = "<br>".join(html.escape(e) for e in result.errors)
        rows.append(
            f'<tr class="{css}">'
            f"<td>{index}</td>"
            f"<td>{html.escape(result.test_case_id)}</td>"
            f"<td>{result.status.value.upper()}</td>"
            f"<td>{result.actual_status}</td>"
            f"<td>{result.response_time:.2f}ms</td>"
            f"<td>{errors}</td>"
            f"</tr>"
        )

    generated = datetime.now(timezone.utc).isoformat()
    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>API Test Report</title>
<style>
body {{ font-family: sans-serif; margin: 2em; }}
table {{ border-collapse: collapse; width: 100%; }}
th, td {{ border: 1px solid #ccc; padding: 6px 10px; text-align: left; }}
tr.passed {{ background: #e6f4ea; }}
tr.failed {{ background: #fce8e6; }}
</style>
</head>
<body>
<h1>API Test Report</h1>
<p>Generated: {generated}</p>
<ul>
<li>Total Tests: {len(results)}</li>
<li>Success Rate: {summary.success_rate:.2f}%</li>
<li>Average Response Time: {summary.average_response_time:.2f}ms</li>
</ul>
<table>
<thead><tr><th>#</th><th>Test Case</th><th>Status</th><th>HTTP Status</th><th>Response Time</th><th>Errors</th></tr></thead>
<tbody>
{chr(10).join(rows)}
</tbody>
</table>
</body>
</html>
"""
