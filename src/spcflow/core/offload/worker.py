"""Worker-side request handling for offloaded calculations.

Requests and responses are plain dicts so they can cross a process boundary:

    request:  {"type": ..., "payload": {...}, "request_id": ...}
    response: {"request_id": ..., "success": bool, "result" | "error": ...,
               "duration": milliseconds}

``handle_request`` is a module-level function so a process pool can pickle it.
"""

import time
from enum import Enum
from typing import Any

from spcflow.core.engine.control_limits import LimitInputs, calculate_limits
from spcflow.core.engine.outlier_rules import RuleInputs, detect_outliers


class RequestType(str, Enum):
    """Operations a worker can run."""
    CALCULATE_LIMITS = "calculate_limits"
    DETECT_OUTLIERS = "detect_outliers"
    DETECT_OUTLIERS_BATCH = "detect_outliers_batch"
    PING = "ping"


def _calculate_limits(payload: dict[str, Any]) -> Any:
    inputs: LimitInputs = payload["inputs"]
    return calculate_limits(payload["chart_type"], inputs)


def _detect_outliers(payload: dict[str, Any]) -> Any:
    inputs: RuleInputs = payload["inputs"]
    return detect_outliers(payload["rule"], inputs)


def _detect_outliers_batch(payload: dict[str, Any]) -> Any:
    return [_detect_outliers(item) for item in payload["requests"]]


def _ping(payload: dict[str, Any]) -> Any:
    return "pong"


_HANDLERS = {
    RequestType.CALCULATE_LIMITS: _calculate_limits,
    RequestType.DETECT_OUTLIERS: _detect_outliers,
    RequestType.DETECT_OUTLIERS_BATCH: _detect_outliers_batch,
    RequestType.PING: _ping,
}


def handle_request(request: dict[str, Any]) -> dict[str, Any]:
    """Run one request and describe the outcome.

    Failures are reported in the response rather than raised, so the caller
    can fall back to running the calculation itself.

    Example:
        >>> handle_request({"type": "ping", "payload": {}, "request_id": "r1"})["result"]
        'pong'
    """
    start = time.perf_counter()
    request_id = request.get("request_id")
    try:
        handler = _HANDLERS[RequestType(request.get("type"))]
        result = handler(request.get("payload") or {})
    except Exception as exc:
        return {
            "request_id": request_id,
            "success": False,
            "error": f"{type(exc).__name__}: {exc}",
            "duration": (time.perf_counter() - start) * 1000,
        }
    return {
        "request_id": request_id,
        "success": True,
        "result": result,
        "duration": (time.perf_counter() - start) * 1000,
    }
