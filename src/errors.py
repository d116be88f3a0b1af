"""Error taxonomy for the margin trading engine."""

from __future__ import annotations

from typing import Any


class MarginEngineError(Exception):
    """Base class for engine errors."""

    pass


class ValidationError(MarginEngineError):
    """Missing or contradictory parameters, raised before any venue call."""

    pass


class NotFound(MarginEngineError):
    """No position, order or exit plan for the requested symbol."""

    pass


class CapacityExceeded(MarginEngineError):
    """Borrow capacity cannot fund even the smallest tradable order."""

    pass


class PricingUnavailable(MarginEngineError):
    """No usable price for a symbol or conversion."""

    pass


class BorrowCapacityUnknown(MarginEngineError):
    """Account state needed to compute borrow capacity could not be read."""

    pass


class StaleDataWarning(MarginEngineError):
    """Indicator data could not be evaluated; treated as not triggered."""

    pass


class VenuePayloadError(MarginEngineError):
    """A venue payload is missing a required field."""

    def __init__(self, record: str, field: str, payload: Any = None) -> None:
        self.record = record
        self.field = field
        self.payload = payload
        super().__init__(f"{record} payload missing required field '{field}'")


class VenueRejection(MarginEngineError):
    """The venue rejected a request.

    ``leg`` names the part of a multi-step operation that failed
    (entry, exit, protection, borrow, repay, query or cancel).
    """

    def __init__(
        self,
        message: str,
        leg: str | None = None,
        code: int | None = None,
        status_code: int | None = None,
    ) -> None:
        self.message = message
        self.leg = leg
        self.code = code
        self.status_code = status_code
        super().__init__(self._render())

    def _render(self) -> str:
        prefix = f"{self.leg} leg failed: " if self.leg else ""
        suffix = f" (code {self.code})" if self.code is not None else ""
        return f"{prefix}{self.message}{suffix}"

    def for_leg(self, leg: str) -> VenueRejection:
        """Return a copy attributed to ``leg``."""
        return VenueRejection(self.message, leg=leg, code=self.code, status_code=self.status_code)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "leg": self.leg,
            "message": self.message,
            "code": self.code,
        }


class ProtectionFailed(VenueRejection):
    """Native OCO and the fallback stop leg both failed."""

    def __init__(self, symbol: str, oco_error: str, stop_error: str) -> None:
        self.symbol = symbol
        self.oco_error = oco_error
        self.stop_error = stop_error
        super().__init__(
            f"{symbol} left unprotected: oco={oco_error}; stop={stop_error}",
            leg="protection",
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"symbol": self.symbol, "oco_error": self.oco_error, "stop_error": self.stop_error})
        return data
