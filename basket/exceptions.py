"""
Custom exceptions for the basket engine.

Anomalies are not exceptions: detectors report into the circuit breaker
and callers poll its status. These types cover the failures that do
cross a function boundary.
"""


class BasketError(Exception):
    """Base exception for all basket engine errors."""

    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(self.format_message())

    def format_message(self) -> str:
        msg = self.message
        if self.suggestion:
            msg += f"\n\nSuggestion: {self.suggestion}"
        return msg


class ConfigurationError(BasketError):
    """Raised at startup when configuration is invalid."""

    def __init__(self, field: str, issue: str, current_value=None):
        self.field = field
        self.issue = issue
        self.current_value = current_value

        message = f"Configuration error in '{field}': {issue}"
        if current_value is not None:
            message += f"\n  Current value: {current_value}"

        suggestion = "Check the BASKET_* variables in .env; regime weights must sum to 100%."

        super().__init__(message, suggestion)


class DataQualityError(BasketError):
    """Raised for a single unusable price entry. Always recovered locally."""

    def __init__(self, symbol: str, issue: str):
        self.symbol = symbol
        self.issue = issue
        super().__init__(f"Bad price data for {symbol}: {issue}")


class TransientFetchError(BasketError):
    """Raised when a feed or contract call fails after its retries."""

    def __init__(self, source: str, original_error: Exception = None):
        self.source = source
        self.original_error = original_error

        message = f"Fetch from {source} failed"
        if original_error:
            message += f": {original_error}"

        super().__init__(message, "Will retry on the next scheduled tick.")


class AuthorizationError(BasketError):
    """Raised when a governance action comes from a non allow-listed caller."""

    def __init__(self, authority: str, action: str):
        self.authority = authority
        self.action = action
        super().__init__(f"Unauthorized {action} attempt by {authority or '<anonymous>'}")
