"""Error taxonomy shared by the rating pipeline and the HTTP layer."""

from typing import Iterable, Optional


class TableRateError(Exception):
    """Base class for every error raised on purpose by tablerate."""


class ValidationError(TableRateError):
    """User-correctable rejection: bad input, duplicate, rate limited."""

    def __init__(self, reasons: Iterable[str] | str):
        if isinstance(reasons, str):
            reasons = [reasons]
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons) or "Invalid rating")


class FraudSuspicionError(ValidationError):
    """Rejected by the fraud heuristics. Shown to users like a validation error."""

    def __init__(self, reasons: Iterable[str] | str, detection_type: Optional[str] = None):
        super().__init__(reasons)
        self.detection_type = detection_type


class TransientInfrastructureError(TableRateError):
    """Network, timeout or unavailable backend. Callers retry with back-off."""


class IntegrityFallbackError(TableRateError):
    """A computation had to take a degraded path.

    Never reaches a user: the component that raises it also catches it and
    returns an explicitly flagged result.
    """
