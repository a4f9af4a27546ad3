"""Exception types raised across the forwarding pipeline."""


class ConfigError(Exception):
    """Configuration is missing or invalid. Fatal at startup."""


class EncodingError(Exception):
    """A batch could not be serialized into a request payload."""


class DeliveryError(Exception):
    """A single delivery attempt failed."""

    def __init__(self, message: str, status: int | None = None, detail: str = ""):
        super().__init__(message)
        self.status = status
        self.detail = detail


class TransientDeliveryError(DeliveryError):
    """429, 5xx or a connection-level failure. Worth retrying."""

    def __init__(self, message: str, status: int | None = None, detail: str = "",
                 retry_after: float | None = None):
        super().__init__(message, status, detail)
        self.retry_after = retry_after


class PermanentDeliveryError(DeliveryError):
    """The collector rejected the request; resending the same payload won't help."""
