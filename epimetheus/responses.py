"""Response assembly.

Maps fetched records and a health report to an HTTP status and JSON body:
200 when the judgement is ok, 417 when it is degraded, 503 when the fetch
failed without usable data. A fetch error that still left usable records
is listed in ``errors`` next to the evaluator's reasons and degrades the
response.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Callable, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .agent.invoker import FetchResult
from .metrics import observe_judgement
from .models import HealthReport

STATUS_OK = HTTPStatus.OK
STATUS_DEGRADED = HTTPStatus.EXPECTATION_FAILED
STATUS_UNAVAILABLE = HTTPStatus.SERVICE_UNAVAILABLE


def error_response(error: Any, status: int = STATUS_UNAVAILABLE) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": str(error)})


def assemble(
    domain: str,
    key: str,
    records: Any,
    report: HealthReport,
    extra_errors: Optional[list[str]] = None,
) -> JSONResponse:
    """Build the response for evaluated records."""
    errors = list(report.reasons) + list(extra_errors or [])
    status = STATUS_OK if not errors else STATUS_DEGRADED
    observe_judgement(domain, "ok" if status == STATUS_OK else "degraded")
    return JSONResponse(
        status_code=status,
        content={key: jsonable_encoder(records), "errors": errors},
    )


def evaluate_result(
    domain: str,
    key: str,
    result: FetchResult,
    evaluate: Callable[[Any], HealthReport],
) -> JSONResponse:
    """Evaluate a fetch result, keeping partial data alongside the fetch error."""
    if not result.usable:
        return error_response(result.error)
    report = evaluate(result.records)
    extra = [str(result.error)] if result.error is not None else []
    return assemble(domain, key, result.records, report, extra)
