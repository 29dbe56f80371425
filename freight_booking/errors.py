"""
Errors — The failure taxonomy shared by every stage of the booking pipeline.

Every error raised on purpose by this package derives from BookingError and
carries a message that is safe to show to the operator. Four kinds exist:

  ValidationError   Missing sku / shipping type / sub-SKUs (or a bad scrape
                    date range). Raised before any network call is made.
  NotFoundError     A backend record that was expected to exist is gone.
  NetworkError      Non-success HTTP status, a transport failure, or a body
                    that is not the JSON the endpoint promises.
  ConflictError     Cached state and backend state contradict each other and
                    cannot be reconciled automatically.

InvalidTransition is raised by the workflow state machine when an event is
not allowed in the current state.

Propagation policy:
    Validation errors are reported locally. Network errors are caught at the
    call site and reported as a single message, leaving the staging cache and
    the workflow position unchanged. Nothing is retried automatically.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import requests


GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


class BookingError(Exception):
    """Base class for all expected failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BookingError):
    """Required staging data is missing or malformed."""

    def __init__(self, message: str, missing: Optional[list] = None):
        super().__init__(message)
        self.missing = list(missing or [])


class NotFoundError(BookingError):
    """An expected backend record does not exist."""


class NetworkError(BookingError):
    """A request failed at the HTTP or transport level.

    Attributes:
        status: HTTP status code, or None for transport failures.
        retry_after: ISO timestamp (or raw HTTP-date) from Retry-After, if any.
    """

    def __init__(self, message: str, status: Optional[int] = None, retry_after: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429


class ConflictError(BookingError):
    """Cached and backend state disagree in a way that needs a human."""


class InvalidTransition(BookingError):
    """The workflow received an event it cannot handle in its current state."""


def _parse_retry_after(value: Optional[str]) -> Optional[str]:
    """Normalize a Retry-After header (seconds or HTTP-date)."""
    if not value:
        return None
    try:
        seconds = int(value)
    except ValueError:
        return value
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat()


def _message_from_body(response: requests.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    if body.get("message"):
        return str(body["message"])
    error = body.get("error")
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return None


def raise_for_response(response: requests.Response, action: str) -> None:
    """Translate a non-success response into a BookingError.

    Args:
        response: The requests response to inspect.
        action: Short description used in the message (e.g., "Create shipped order").

    Raises:
        NotFoundError: For 404 responses.
        NetworkError: For every other non-2xx status.
    """
    if response.ok:
        return

    status = response.status_code
    message = _message_from_body(response) or f"{action} failed with status {status}"

    if status == 404:
        raise NotFoundError(message)

    if status == 401:
        message = f"{action} failed: your carrier session has expired. Please log in again."

    raise NetworkError(
        message,
        status=status,
        retry_after=_parse_retry_after(response.headers.get("Retry-After")),
    )


def transport_error(action: str, exc: requests.RequestException) -> NetworkError:
    """Wrap a requests transport failure (connection refused, timeout, ...)."""
    error = NetworkError(f"{action} failed: could not reach the server")
    error.__cause__ = exc
    return error


def parse_json(response: requests.Response, action: str):
    """Decode a success response body, or raise NetworkError if it is not JSON."""
    try:
        return response.json()
    except ValueError as e:
        raise NetworkError(f"{action} failed: invalid response from the server", status=response.status_code) from e


def user_message(exc: BaseException) -> str:
    """Render one readable line for the operator.

    BookingError messages are shown as-is; anything else is replaced with a
    generic message so raw internal detail never reaches the user.
    """
    if isinstance(exc, NetworkError) and exc.is_rate_limited and exc.retry_after:
        return f"{exc.message.rstrip('.')}. Try again after {exc.retry_after}."
    if isinstance(exc, BookingError):
        return exc.message
    if isinstance(exc, requests.RequestException):
        return "Could not reach the server. Please check your connection and try again."
    return GENERIC_ERROR_MESSAGE
