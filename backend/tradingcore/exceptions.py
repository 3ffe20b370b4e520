"""
Domain exceptions for the trading core.

Services raise these instead of fastapi.HTTPException to avoid coupling
the service layer to the web framework. A global exception handler in
main.py translates them into HTTP responses.
"""


class TradingError(Exception):
    """Base trading error with a machine code, severity and HTTP-equivalent status."""

    def __init__(
        self,
        message: str,
        code: str = "TRADING_ERROR",
        severity: str = "MEDIUM",
        status_code: int = 400,
    ):
        self.message = message
        self.code = code
        self.severity = severity
        self.status_code = status_code
        super().__init__(message)


class ValidationError(TradingError):
    """Malformed admission, sizing or config input (400)."""

    def __init__(self, message: str):
        super().__init__(message, code="VALIDATION_ERROR", severity="MEDIUM", status_code=400)


class NotFoundError(TradingError):
    """Unknown order, strategy or position (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", severity="LOW", status_code=404)


class RiskError(TradingError):
    """Risk state unavailable - sizing fails closed (503)."""

    def __init__(self, message: str):
        super().__init__(message, code="RISK_ERROR", severity="CRITICAL", status_code=503)


class ExecutionError(TradingError):
    """Order creation or cancellation failed against the execution venue (502)."""

    def __init__(self, message: str):
        super().__init__(message, code="EXECUTION_ERROR", severity="HIGH", status_code=502)


class APIError(TradingError):
    """Collaborator unreachable or rejected the call."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message, code="API_ERROR", severity="HIGH", status_code=status_code)
