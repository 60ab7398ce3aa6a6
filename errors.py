"""
errors.py — Exception taxonomy for the itinerary pipeline.

  ValidationError            missing/invalid required field (converted to a generic ack)
  TransientGenerationError   429 / 5xx / network failure from the generation service
  GenerationTimeoutError     no response within the configured timeout (transient)
  FatalGenerationError       any other generation failure, or retries exhausted
  TransientDeliveryError     connection-level / server-side delivery failure
  FatalDeliveryError         non-retryable transport rejection, or retries exhausted
  NotificationError          operator notification failed (always swallowed)

A truncated generation is not an error: it is reported as
FinishReason.TRUNCATED on the GenerationResult.
"""


class TripServiceError(Exception):
    """Base class for every error raised by the service."""


class ConfigurationError(TripServiceError):
    pass


class ValidationError(TripServiceError):
    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing or invalid field(s): {', '.join(self.missing)}")


# ── Generation ────────────────────────────────────────────────────────────────

class GenerationError(TripServiceError):
    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None, model: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.model       = model


class TransientGenerationError(GenerationError):
    retryable = True


class GenerationTimeoutError(TransientGenerationError):
    pass


class FatalGenerationError(GenerationError):
    pass


# ── Delivery ──────────────────────────────────────────────────────────────────

class DeliveryError(TripServiceError):
    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    retryable = True


class FatalDeliveryError(DeliveryError):
    pass


class NotificationError(TripServiceError):
    pass
