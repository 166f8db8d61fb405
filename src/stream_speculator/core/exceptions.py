"""Application-wide exception hierarchy for Stream Speculator.

All custom exceptions subclass ``StreamSpeculatorError``, enabling
consistent error handling and structured logging across the application.

Hierarchy::

    StreamSpeculatorError
    ├── WebhookVerificationError   (status_code: 400 | 401)
    ├── TaskDeliveryError
    ├── StoreError
    └── TwitchApiError
        ├── TwitchRateLimitError   (retry_after: float)
        └── TwitchAuthError
"""

from __future__ import annotations


class StreamSpeculatorError(Exception):
    """Base class for all Stream Speculator exceptions."""


# ---------------------------------------------------------------------------
# Webhook exceptions
# ---------------------------------------------------------------------------


class WebhookVerificationError(StreamSpeculatorError):
    """Raised when an inbound EventSub notification fails authenticity checks.

    Args:
        message: Human-readable description of the failure.
        status_code: HTTP status the webhook route should answer with:
            ``400`` for missing headers, ``401`` for a bad or stale signature.
    """

    def __init__(self, message: str, status_code: int = 401) -> None:
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Scheduling exceptions
# ---------------------------------------------------------------------------


class TaskDeliveryError(StreamSpeculatorError):
    """Raised when the delivery backend refuses or fails to enqueue tasks.

    Args:
        message: Description of the delivery failure.
        task_count: Number of tasks in the rejected delivery.
    """

    def __init__(self, message: str, task_count: int = 1) -> None:
        super().__init__(message)
        self.task_count = task_count


class StoreError(StreamSpeculatorError):
    """Raised when the document store cannot complete an operation."""


# ---------------------------------------------------------------------------
# Twitch API exceptions
# ---------------------------------------------------------------------------


class TwitchApiError(StreamSpeculatorError):
    """Raised when a Twitch Helix or PubSub call fails.

    Args:
        message: Human-readable description of the failure.
        status_code: HTTP status returned by Helix, if any.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TwitchRateLimitError(TwitchApiError):
    """Raised on HTTP 429 from Helix.

    Args:
        message: Human-readable description of the rate limit.
        retry_after: Seconds to wait before retrying. Defaults to 60.
    """

    def __init__(self, message: str, retry_after: float = 60.0) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class TwitchAuthError(TwitchApiError):
    """Raised when the app access token cannot be obtained or is rejected."""
