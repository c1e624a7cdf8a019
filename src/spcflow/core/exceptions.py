"""Exception types raised by the spcflow core.

Bad input is reported as ``ValueError`` subclasses so callers that only know
about the builtin exception still catch it.
"""

from dataclasses import dataclass


class SPCFlowError(Exception):
    """Base class for all spcflow errors."""


class ValidationError(SPCFlowError, ValueError):
    """Structural input failure. Fatal for the current update cycle."""


class CalculationDomainError(SPCFlowError, ValueError):
    """Unknown chart type or outlier rule selector."""


class TransportTimeout(SPCFlowError, TimeoutError):
    """An offloaded calculation did not answer in time."""


@dataclass(frozen=True)
class RowInvalid:
    """A row excluded from a sequence. Non-fatal, reported as a warning.

    Attributes:
        label: Display label of the excluded row
        reason: Why the row was excluded
    """
    label: str
    reason: str

    @property
    def message(self) -> str:
        return f"{self.label} removed due to: {self.reason}."
