"""Error taxonomy for the funnel."""

BUSINESS_CODES: frozenset[str] = frozenset(
    {
        "credits_exhausted",
        "palm_image_invalid",
        "image_not_found",
        "reading_exists",
        "not_found",
        "generation_error",
    }
)

REDIRECTING_CODES: frozenset[str] = frozenset({"credits_exhausted", "reading_exists"})

IMAGE_RETRY_CODES: frozenset[str] = frozenset({"palm_image_invalid", "image_not_found"})


class FunnelError(Exception):
    """Base error carrying a user-facing message."""

    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InputValidationError(FunnelError):
    """Client-detectable bad input; raised before any network call."""

    default_message = "Please check your input and try again."


class TransientError(FunnelError):
    """Network failure, timeout or server-side hiccup; safe to retry."""

    default_message = "Connection problem. Please try again."


class AuthorizationError(FunnelError):
    """Credential still rejected after a refresh-and-retry."""

    default_message = "Your session has expired. Please reload the page."


class RejectedRequestError(FunnelError):
    """Backend rejected the request with a message (e.g. invalid code)."""

    def __init__(
        self, message: str | None = None, status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code


class BusinessRuleError(FunnelError):
    """Server-classified condition with a machine-readable code."""

    def __init__(  # noqa: PLR0913
        self,
        code: str,
        message: str | None = None,
        *,
        redirect_to: str | None = None,
        redirect_delay_ms: int = 0,
        retry_remaining: int | None = None,
        payload: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.redirect_to = redirect_to
        self.redirect_delay_ms = redirect_delay_ms
        self.retry_remaining = retry_remaining
        self.payload = payload or {}

    @property
    def redirects(self) -> bool:
        """Return True when the error moves the user out of the flow."""
        return bool(self.redirect_to)


class JobTimeoutError(FunnelError):
    """Polling attempt budget or deadline exhausted."""

    default_message = (
        "Reading generation is taking longer than expected. Please try again."
    )


class JobCancelledError(FunnelError):
    """Polling abandoned through its cancellation token."""

    default_message = "Reading generation was cancelled."


class CorruptionError(FunnelError):
    """Locally detected inconsistency; healed by clearing persisted state."""
