"""Caller-owned offloading of limit and outlier calculations to a worker pool.

A ``CalculationOffloader`` runs the same pure entry points as the synchronous
path (``calculate_limits`` and ``detect_outliers``) on a process or thread
pool. Whenever offloading is not possible or not worth it (small input,
offloader not initialised, timeout, transport error, failed response) the
call runs synchronously instead, so callers always get a result.

Example:
    >>> with CalculationOffloader(Settings(offload_executor="thread")) as offloader:
    ...     result = offloader.calculate_limits("i", LimitInputs([1.0, 2.0, 3.0]))
"""

import asyncio
import itertools
import threading
import time
from collections import deque
from concurrent.futures import (
    Executor,
    Future,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
)
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from functools import partial
from typing import Any, Callable

import structlog

from spcflow.core.config import Settings, get_settings
from spcflow.core.engine.control_limits import (
    ChartType,
    LimitInputs,
    LimitResult,
    calculate_limits,
    get_chart_spec,
)
from spcflow.core.engine.outlier_rules import (
    Direction,
    OutlierRuleName,
    RuleInputs,
    detect_outliers,
)
from spcflow.core.exceptions import TransportTimeout
from spcflow.core.offload.worker import RequestType, handle_request

logger = structlog.get_logger(__name__)

# Number of recent execution times kept for metrics
METRICS_WINDOW = 100

Handler = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class OffloadMetrics:
    """Summary of recent offloader activity.

    Attributes:
        samples: Number of recorded execution times (at most METRICS_WINDOW)
        average_ms: Mean of the recorded execution times
        max_ms: Largest recorded execution time
        offloaded: Calls answered by a worker
        fallbacks: Calls that ran synchronously after trying a worker
        timeouts: Calls that timed out waiting for a worker
        discarded: Worker responses that arrived after their request was dropped
    """
    samples: int
    average_ms: float
    max_ms: float
    offloaded: int
    fallbacks: int
    timeouts: int
    discarded: int


class CalculationOffloader:
    """Runs calculations on a worker pool with a synchronous fallback.

    The offloader has an explicit lifecycle: ``initialize()`` starts the pool
    and ``dispose()`` shuts it down. It is also a context manager.

    Args:
        settings: Offload settings (defaults to the cached SPCFLOW_ settings)
        executor: Pool to use instead of creating one; the caller keeps
            ownership and the offloader never shuts it down
        handler: Worker entry point, replaceable for testing
    """

    def __init__(
        self,
        settings: Settings | None = None,
        executor: Executor | None = None,
        handler: Handler = handle_request,
    ):
        self._settings = settings or get_settings()
        self._executor = executor
        self._owns_executor = executor is None
        self._handler = handler
        self._initialized = False

        self._lock = threading.Lock()
        self._pending: dict[str, Future] = {}
        # Ids cancelled while a worker may still answer
        self._dropped: set[str] = set()
        self._ids = itertools.count(1)

        self._durations: deque[float] = deque(maxlen=METRICS_WINDOW)
        self._offloaded = 0
        self._fallbacks = 0
        self._timeouts = 0
        self._discarded = 0

    # Lifecycle

    @property
    def is_ready(self) -> bool:
        return self._initialized

    @property
    def min_points(self) -> int:
        return self._settings.offload_min_points

    @property
    def timeout(self) -> float:
        return self._settings.offload_timeout_seconds

    def initialize(self) -> bool:
        """Start the worker pool and check it answers.

        Returns:
            True if calculations will be offloaded, False if every call will
            run synchronously
        """
        if self._initialized:
            return True
        if not self._settings.offload_enabled:
            logger.info("offload_disabled")
            return False

        if self._executor is None:
            if self._settings.offload_executor == "process":
                self._executor = ProcessPoolExecutor(
                    max_workers=self._settings.offload_max_workers
                )
            else:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._settings.offload_max_workers,
                    thread_name_prefix="spcflow-offload",
                )
            self._owns_executor = True

        self._initialized = True
        if not self.ping():
            logger.warning("offload_unavailable", executor=self._settings.offload_executor)
            self.dispose()
            return False

        logger.info(
            "offload_initialized",
            executor=self._settings.offload_executor,
            max_workers=self._settings.offload_max_workers,
            min_points=self.min_points,
            timeout_seconds=self.timeout,
        )
        return True

    def dispose(self) -> None:
        """Drop pending requests and shut down an owned pool."""
        with self._lock:
            pending = list(self._pending.values())
            self._dropped.update(self._pending)
            self._pending.clear()
        for future in pending:
            future.cancel()

        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self._initialized = False
        logger.debug("offload_disposed", cancelled=len(pending))

    def __enter__(self) -> "CalculationOffloader":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    # Request tracking

    def submit(self, request_type: RequestType, payload: dict[str, Any]) -> tuple[str, Future]:
        """Send a request to the pool and track it by correlation id.

        Raises:
            RuntimeError: If the offloader is not initialised
        """
        if not self._initialized or self._executor is None:
            raise RuntimeError("CalculationOffloader is not initialized")
        request_id = f"req-{next(self._ids)}"
        request = {"type": request_type.value, "payload": payload, "request_id": request_id}
        future = self._executor.submit(self._handler, request)
        with self._lock:
            self._pending[request_id] = future
        future.add_done_callback(partial(self._on_done, request_id))
        return request_id, future

    def cancel(self, request_id: str) -> bool:
        """Stop waiting for a request. A response arriving later is discarded.

        Returns:
            True if the request was pending
        """
        with self._lock:
            future = self._pending.pop(request_id, None)
            if future is not None and not future.done():
                self._dropped.add(request_id)
        if future is None:
            return False
        future.cancel()
        return True

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _on_done(self, request_id: str, future: Future) -> None:
        with self._lock:
            self._pending.pop(request_id, None)
            dropped = request_id in self._dropped
            self._dropped.discard(request_id)
            late = dropped and not future.cancelled()
            if late:
                self._discarded += 1
        if late:
            logger.debug("offload_late_response_discarded", request_id=request_id)

    def _accept(self, request_id: str, response: dict[str, Any]) -> Any:
        """Unwrap a worker response.

        Raises:
            RuntimeError: If the request was dropped or the worker failed
        """
        with self._lock:
            dropped = request_id in self._dropped
            self._pending.pop(request_id, None)
        if dropped or response.get("request_id") != request_id:
            raise RuntimeError(f"Response for {request_id} is no longer wanted")
        if not response.get("success"):
            raise RuntimeError(response.get("error") or "worker reported failure")
        self._record(response.get("duration", 0.0))
        with self._lock:
            self._offloaded += 1
        return response["result"]

    def _await(self, request_id: str, future: Future) -> Any:
        try:
            response = future.result(timeout=self.timeout)
        except FutureTimeoutError:
            self.cancel(request_id)
            raise TransportTimeout(
                f"{request_id} did not answer within {self.timeout}s"
            ) from None
        return self._accept(request_id, response)

    # Execution

    def _record(self, duration_ms: float) -> None:
        with self._lock:
            self._durations.append(float(duration_ms))

    def _should_offload(self, size: int) -> bool:
        return self._initialized and size >= self.min_points

    def _run_sync(self, func: Callable[..., Any], *args: Any) -> Any:
        start = time.perf_counter()
        result = func(*args)
        self._record((time.perf_counter() - start) * 1000)
        return result

    def _fall_back(self, reason: str, request_type: RequestType, error: Exception) -> None:
        with self._lock:
            self._fallbacks += 1
            if isinstance(error, TransportTimeout):
                self._timeouts += 1
        logger.warning(
            "offload_fallback",
            reason=reason,
            request_type=request_type.value,
            error=str(error),
        )

    def _run(
        self,
        request_type: RequestType,
        payload: dict[str, Any],
        size: int,
        sync: Callable[[], Any],
    ) -> Any:
        if not self._should_offload(size):
            return self._run_sync(sync)
        try:
            request_id, future = self.submit(request_type, payload)
        except Exception as exc:
            self._fall_back("transport_error", request_type, exc)
            return self._run_sync(sync)

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            try:
                return self._await(request_id, future)
            except TransportTimeout as exc:
                self._fall_back("timeout", request_type, exc)
            except Exception as exc:
                self._fall_back("transport_error", request_type, exc)
            return self._run_sync(sync)

    def calculate_limits(self, chart_type: ChartType | str, inputs: LimitInputs) -> LimitResult:
        """Offloaded counterpart of ``calculate_limits``.

        Raises:
            CalculationDomainError: If chart_type is unknown
        """
        chart_type = get_chart_spec(chart_type).chart_type
        result = self._run(
            RequestType.CALCULATE_LIMITS,
            {"chart_type": chart_type, "inputs": inputs},
            len(inputs),
            partial(calculate_limits, chart_type, inputs),
        )
        # Re-freeze arrays that crossed a process boundary
        return replace(result)

    def detect_outliers(
        self,
        rule_name: OutlierRuleName | str,
        inputs: RuleInputs,
    ) -> list[Direction]:
        """Offloaded counterpart of ``detect_outliers``."""
        return self._run(
            RequestType.DETECT_OUTLIERS,
            {"rule": rule_name, "inputs": inputs},
            len(inputs),
            partial(detect_outliers, rule_name, inputs),
        )

    def detect_outliers_batch(
        self,
        requests: list[tuple[OutlierRuleName | str, RuleInputs]],
    ) -> list[list[Direction]]:
        """Run several rules in one round trip."""
        def run_all() -> list[list[Direction]]:
            return [detect_outliers(rule_name, inputs) for rule_name, inputs in requests]

        return self._run(
            RequestType.DETECT_OUTLIERS_BATCH,
            {"requests": [{"rule": r, "inputs": i} for r, i in requests]},
            sum(len(inputs) for _, inputs in requests),
            run_all,
        )

    def ping(self) -> bool:
        """True if a worker answers within the timeout."""
        try:
            request_id, future = self.submit(RequestType.PING, {})
        except RuntimeError as exc:
            logger.warning("offload_ping_failed", error=str(exc))
            return False
        try:
            response = future.result(timeout=self.timeout)
        except Exception as exc:
            self.cancel(request_id)
            logger.warning("offload_ping_failed", error=str(exc) or type(exc).__name__)
            return False
        with self._lock:
            self._pending.pop(request_id, None)
        return bool(response.get("success")) and response.get("result") == "pong"

    # Async variants

    async def _run_async(
        self,
        request_type: RequestType,
        payload: dict[str, Any],
        size: int,
        sync: Callable[[], Any],
    ) -> Any:
        if not self._should_offload(size):
            return self._run_sync(sync)
        try:
            request_id, future = self.submit(request_type, payload)
        except Exception as exc:
            self._fall_back("transport_error", request_type, exc)
            return self._run_sync(sync)

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            try:
                response = await asyncio.wait_for(
                    asyncio.wrap_future(future), timeout=self.timeout
                )
                return self._accept(request_id, response)
            except asyncio.TimeoutError:
                self.cancel(request_id)
                self._fall_back(
                    "timeout",
                    request_type,
                    TransportTimeout(f"{request_id} did not answer within {self.timeout}s"),
                )
            except Exception as exc:
                self._fall_back("transport_error", request_type, exc)
            return self._run_sync(sync)

    async def calculate_limits_async(
        self,
        chart_type: ChartType | str,
        inputs: LimitInputs,
    ) -> LimitResult:
        """Awaitable ``calculate_limits`` for asyncio callers."""
        chart_type = get_chart_spec(chart_type).chart_type
        result = await self._run_async(
            RequestType.CALCULATE_LIMITS,
            {"chart_type": chart_type, "inputs": inputs},
            len(inputs),
            partial(calculate_limits, chart_type, inputs),
        )
        return replace(result)

    async def detect_outliers_async(
        self,
        rule_name: OutlierRuleName | str,
        inputs: RuleInputs,
    ) -> list[Direction]:
        """Awaitable ``detect_outliers`` for asyncio callers."""
        return await self._run_async(
            RequestType.DETECT_OUTLIERS,
            {"rule": rule_name, "inputs": inputs},
            len(inputs),
            partial(detect_outliers, rule_name, inputs),
        )

    # Metrics

    def get_metrics(self) -> OffloadMetrics:
        """Snapshot of recent execution times and counters."""
        with self._lock:
            durations = list(self._durations)
            return OffloadMetrics(
                samples=len(durations),
                average_ms=sum(durations) / len(durations) if durations else 0.0,
                max_ms=max(durations) if durations else 0.0,
                offloaded=self._offloaded,
                fallbacks=self._fallbacks,
                timeouts=self._timeouts,
                discarded=self._discarded,
            )
