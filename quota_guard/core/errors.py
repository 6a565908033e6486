"""
Error hierarchy for budget computation.

Every error here is fatal to the call that raised it. Callers deciding
whether to run work should treat any of them as "do not run this cycle".
"""


class QuotaGuardError(Exception):
    """Base exception for all Quota Guard errors."""


class InvalidBudget(QuotaGuardError):
    """Raised when the resolved weekly budget is zero or negative."""

    def __init__(self, provider: str, weekly_tokens: int):
        super().__init__(f"Invalid weekly budget for provider {provider}: {weekly_tokens}")
        self.provider = provider
        self.weekly_tokens = weekly_tokens


class ProviderUnavailable(QuotaGuardError):
    """Raised when no usage source is registered for a provider."""

    def __init__(self, provider: str):
        super().__init__(f"No usage source registered for provider: {provider}")
        self.provider = provider


class InvalidMode(QuotaGuardError):
    """Raised when the budget mode is neither daily nor weekly."""

    def __init__(self, mode: object):
        super().__init__(f"Invalid budget mode: {mode}")
        self.mode = mode


class UpstreamQueryFailed(QuotaGuardError):
    """Raised when a usage source, snapshot store or trend predictor call fails.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, provider: str, operation: str, cause: Exception):
        super().__init__(f"{operation} failed for {provider}: {cause}")
        self.provider = provider
        self.operation = operation
