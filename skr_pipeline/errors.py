from __future__ import annotations


class PipelineError(Exception):
    pass


class OracleError(PipelineError):
    pass


class TransientError(OracleError):
    """Retryable failure: 5xx, timeouts, dropped connections."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimitedError(TransientError):
    pass


class PermanentError(OracleError):
    """The oracle answered, and the answer is an error. Retrying will not help."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class DiscoveryError(PipelineError):
    pass


class StageError(PipelineError):
    pass
