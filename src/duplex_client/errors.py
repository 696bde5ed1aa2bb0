"""Error taxonomy for the session and message-delivery layer.

Every failure that leaves this package is one of the categories below.
Transient failures are retried internally and never reach the presentation
layer; fatal and terminal ones are surfaced once through the session's error
stream carrying a stable ``category`` and a short ``user_message``.
"""

import asyncio

import aiohttp


class SessionError(Exception):
    """Base class for all categorized session errors."""

    category: str = "unknown"
    default_user_message: str = "An unexpected error occurred. Please try again."

    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or self.default_user_message

    @property
    def retryable(self) -> bool:
        """Whether the operation that raised this may succeed if repeated."""
        return False

    def to_dict(self) -> dict[str, str]:
        """Minimal context for a user-facing notification."""
        return {
            "category": self.category,
            "message": str(self),
            "user_message": self.user_message,
        }


class AuthError(SessionError):
    """Credential rejected (HTTP 401/403 or bad transport token). Not retried."""

    category = "auth"
    default_user_message = "Authentication failed. Please try again."

    def __init__(
        self, message: str, *, status: int | None = None, user_message: str | None = None
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.status = status


class NetworkError(SessionError):
    """Timeout, connection refusal or retryable server failure."""

    category = "network"
    default_user_message = (
        "Network connection failed. Please check your internet connection."
    )

    def __init__(
        self, message: str, *, status: int | None = None, user_message: str | None = None
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.status = status

    @property
    def retryable(self) -> bool:
        return True


class ValidationError(SessionError):
    """Malformed inbound payload or rejected outbound text. Never retried."""

    category = "validation"
    default_user_message = "The message could not be processed."


class ChannelUnavailableError(SessionError):
    """Send attempted while the channel is not connected."""

    category = "channel_unavailable"
    default_user_message = "Not connected. The message will be sent when the connection returns."

    @property
    def retryable(self) -> bool:
        return True


class DeliveryExhaustedError(SessionError):
    """A chat message failed on every allowed attempt."""

    category = "delivery_exhausted"
    default_user_message = "Your message could not be delivered."

    def __init__(self, message_id: str, attempts: int, cause: str | None = None) -> None:
        detail = f"Message {message_id} failed after {attempts} attempts"
        if cause:
            detail = f"{detail}: {cause}"
        super().__init__(detail)
        self.message_id = message_id
        self.attempts = attempts

    def to_dict(self) -> dict[str, str]:
        data = super().to_dict()
        data["message_id"] = self.message_id
        return data


def categorize(error: BaseException, context: str | None = None) -> SessionError:
    """Map any exception onto the taxonomy.

    Already-categorized errors pass through unchanged. Network-flavoured
    exceptions become :class:`NetworkError`; everything else becomes a
    generic :class:`SessionError`. The original exception is chained as
    ``__cause__``.

    Args:
        error: Exception to categorize
        context: Optional operation name prefixed to the message

    Returns:
        Categorized session error
    """
    if isinstance(error, SessionError):
        return error

    prefix = f"{context}: " if context else ""

    categorized: SessionError
    if isinstance(
        error, (aiohttp.ClientError, asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)
    ):
        categorized = NetworkError(f"{prefix}{type(error).__name__}: {error}")
    else:
        categorized = SessionError(f"{prefix}{type(error).__name__}: {error}")

    categorized.__cause__ = error
    return categorized
