"""Optional worker-pool offloading for limit and outlier calculations."""

from .manager import CalculationOffloader, OffloadMetrics
from .worker import RequestType, handle_request

__all__ = [
    "CalculationOffloader",
    "OffloadMetrics",
    "RequestType",
    "handle_request",
]
