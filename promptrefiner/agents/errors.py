"""Error kinds and exceptions raised during orchestration."""

from enum import Enum


class ErrorKind(str, Enum):
    """
    Internal classification of orchestration failures.
    """

    AUTH_MISSING = "AuthMissing"
    AUTH_INVALID = "AuthInvalid"
    NETWORK = "Network"
    RATE_LIMITED = "RateLimited"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    EMPTY_RESPONSE = "EmptyResponse"
    UNPARSEABLE = "Unparseable"
    UNKNOWN = "Unknown"


RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.RATE_LIMITED, ErrorKind.SERVICE_UNAVAILABLE, ErrorKind.NETWORK}
)

DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.AUTH_MISSING: "API key not found. Please set your API key in the settings.",
    ErrorKind.AUTH_INVALID: (
        "Your API key is not valid or has been rejected. "
        "Please check your key and update it in the settings."
    ),
    ErrorKind.NETWORK: (
        "A network error occurred. Please check your internet connection and try again."
    ),
    ErrorKind.RATE_LIMITED: (
        "The AI service is receiving too many requests. Please wait a moment and try again."
    ),
    ErrorKind.SERVICE_UNAVAILABLE: (
        "The AI service is temporarily overloaded. Please try again shortly."
    ),
    ErrorKind.EMPTY_RESPONSE: "The AI returned an empty response. Please try again.",
    ErrorKind.UNPARSEABLE: (
        "The AI returned a malformed response that could not be read. Please try again."
    ),
    ErrorKind.UNKNOWN: "An unexpected error occurred while communicating with the AI.",
}


def is_retryable(kind: ErrorKind) -> bool:
    """
    Return whether failures of this kind are retried locally.

    Args:
        kind (ErrorKind): The error kind.

    Returns:
        bool: True for rate-limit, overload and network failures.
    """
    return kind in RETRYABLE_KINDS


class RefinementError(Exception):
    """
    Base error carrying a user-facing message and an internal kind.
    """

    def __init__(self, kind: ErrorKind, message: str | None = None) -> None:
        """
        Initialize the RefinementError.

        Args:
            kind (ErrorKind): The internal error kind.
            message (str | None, optional): User-facing message. Defaults to the kind's default message.
        """
        self.kind = kind
        self.message = message or DEFAULT_MESSAGES[kind]
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)


class TransportError(RefinementError):
    """
    Raised by a transport when the remote call fails.

    The hint is the transport's best guess at what went wrong; ``detail``
    keeps the provider's raw error text for logs.
    """

    def __init__(
        self, hint: ErrorKind, detail: str = "", message: str | None = None
    ) -> None:
        super().__init__(hint, message)
        self.hint = hint
        self.detail = detail


class RetryExhaustedError(RefinementError):
    """
    Raised when every attempt failed with a retryable error.
    """

    def __init__(self, kind: ErrorKind, attempts: int) -> None:
        super().__init__(
            kind,
            f"The AI service is temporarily unavailable after {attempts} attempts. "
            "Please try again.",
        )
        self.attempts = attempts


class InvalidTransitionError(RuntimeError):
    """
    Raised when a session operation is not allowed in the current state.
    """
