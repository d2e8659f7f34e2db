"""
Error taxonomy for the analysis pipeline.

Every error carries a stable ``code`` so callers can tell a cost denial from a
provider outage when they read a failed job's status.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    code = "pipeline_error"

    def __init__(self, message: str = "", *, detail: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        # Raw upstream detail, kept for operators.
        self.detail = detail

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class InvalidJobSpec(PipelineError):
    """The submitted job specification is malformed."""

    code = "invalid_job_spec"


class JobNotFound(PipelineError):
    code = "job_not_found"


class JobCancelled(PipelineError):
    """Raised at a checkpoint when the running job has been cancelled."""

    code = "job_cancelled"


class ProviderError(PipelineError):
    """Base class for failures talking to an LLM provider."""

    code = "provider_error"

    def __init__(self, message: str = "", *, provider: str = "", detail: str | None = None):
        super().__init__(message, detail=detail)
        self.provider = provider


class ProviderTransportError(ProviderError):
    """Network error, timeout or non-2xx response."""

    code = "provider_transport"


class ProviderRateLimited(ProviderError):
    code = "provider_rate_limited"

    def __init__(
        self,
        message: str = "",
        *,
        provider: str = "",
        retry_after: float | None = None,
        detail: str | None = None,
    ):
        super().__init__(message, provider=provider, detail=detail)
        self.retry_after = retry_after


class ProviderResponseError(ProviderError):
    """The provider answered, but the content could not be parsed."""

    code = "provider_response"


class ProviderUnavailable(ProviderError):
    """All retries and the fallback provider were exhausted."""

    code = "provider_unavailable"

    def __init__(
        self,
        message: str = "",
        *,
        provider: str = "",
        attempts: dict[str, int] | None = None,
        last_error: Exception | None = None,
    ):
        detail = f"{type(last_error).__name__}: {last_error}" if last_error else None
        super().__init__(message, provider=provider, detail=detail)
        self.attempts = attempts or {}
        self.last_error = last_error


class BudgetExceeded(PipelineError):
    """A cost ceiling would be breached by the requested operation."""

    code = "budget_exceeded"

    def __init__(self, message: str = "", *, estimated_cost: float = 0.0, window: str = ""):
        super().__init__(message)
        self.estimated_cost = estimated_cost
        self.window = window


class PartialBatchFailure(PipelineError):
    """One or more sub-batches failed."""

    code = "partial_batch_failure"

    def __init__(self, message: str = "", *, failures: list | None = None):
        super().__init__(message)
        self.failures = failures or []


class CacheUnavailable(PipelineError):
    code = "cache_unavailable"


class AuthorizationError(PipelineError):
    code = "authorization_error"
