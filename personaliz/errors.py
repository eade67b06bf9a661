"""
Error taxonomy for the request pipeline.

  Input errors      - raised before any request row exists (HTTP 4xx).
  Transport errors  - network failure, non-2xx, timeout. Retried inside a
                      stage's attempt budget, then surfaced as a stage failure.
  Provider failures - the provider reported the job as failed. Never retried.
  Stage timeouts    - the attempt budget ran out while the job was pending.
  Delivery rejects  - the messaging channel refused the send.

Illegal state transitions and callback mismatches have no class here:
they are recorded, not raised.
"""

from typing import Optional


class PersonalizError(Exception):
    """Base class for every error raised by this package."""


# ── Input ────────────────────────────────────────────────────────────────────

class RequestValidationError(PersonalizError, ValueError):
    """A submitted request is missing fields or carries invalid values."""


class PresenterNotFoundError(PersonalizError, LookupError):
    def __init__(self, actor_id: str):
        super().__init__(f"Actor not found: {actor_id}")
        self.actor_id = actor_id


class RequestNotFoundError(PersonalizError, LookupError):
    def __init__(self, request_id: str):
        super().__init__(f"Video request not found: {request_id}")
        self.request_id = request_id


# ── Providers ────────────────────────────────────────────────────────────────

class ProviderError(PersonalizError):
    """Anything that went wrong talking to an external provider."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{provider} API error: {message}")
        self.provider = provider
        self.detail = message
        self.status_code = status_code


class ProviderTransportError(ProviderError):
    """Network failure, unexpected HTTP status or call timeout."""


class DeliveryRejectedError(ProviderError):
    """The delivery channel refused the message (bad address, policy, ...)."""


class ProviderJobFailedError(PersonalizError):
    """The provider reported a terminal failure for a stage job."""

    def __init__(self, stage: str, job_id: str, reason: str):
        super().__init__(f"{stage} job {job_id} failed: {reason}")
        self.stage = stage
        self.job_id = job_id
        self.reason = reason


class StageTimeoutError(PersonalizError, TimeoutError):
    """A stage used its whole polling budget without reaching a terminal state."""

    def __init__(self, stage: str, job_id: str, attempts: int, interval: float):
        super().__init__(
            f"{stage} job {job_id} timed out after {attempts} attempts "
            f"({attempts * interval:.0f}s)"
        )
        self.stage = stage
        self.job_id = job_id
        self.attempts = attempts
        self.interval = interval
