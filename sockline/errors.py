"""
Sockline error contract.

Two families live here:

- Caller errors raised at the call site (bad selector, bad address, a full
  deferred queue under the RAISE overflow policy).
- Protocol/runtime conditions that never propagate to application code
  (malformed message, unknown result, not ready, dispatch miss). Their codes
  are used by the diagnostic channel (logging + events) so callers can map
  them without parsing log text.

Application-level "error" results from the server are never raised; they are
delivered to the caller's own error handler. The one library-generated value
delivered that way is RequestExpired, handed (not raised) to the error
handlers of a pending get that timed out.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class SocklineErrorCode(str, Enum):
    """Stable error codes for logging and external mapping."""
    MALFORMED_MESSAGE = "malformed_message"
    UNKNOWN_RESULT = "unknown_result"
    NOT_READY = "not_ready"
    DISPATCH_MISS = "dispatch_miss"
    INVALID_ITEM = "invalid_item"
    INVALID_SELECTOR = "invalid_selector"
    INVALID_ADDRESS = "invalid_address"
    QUEUE_FULL = "queue_full"
    EXPIRED = "expired"
    TRANSPORT_ERROR = "transport_error"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True, slots=True)
class SocklineErrorContext:
    """
    Optional structured context for debugging/logging.
    """
    address: Optional[str] = None
    identifier: Optional[str] = None
    phase: Optional[str] = None  # e.g. "connect", "send", "dispatch", "flush"
    detail: Optional[str] = None


class SocklineError(RuntimeError):
    """
    Base exception for all sockline failures.

    `message` should be clear English suitable for logs.
    `code` is a stable identifier suitable for programmatic mapping.
    """

    def __init__(
        self,
        message: str,
        *,
        code: SocklineErrorCode = SocklineErrorCode.INTERNAL_ERROR,
        context: Optional[SocklineErrorContext] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.code: SocklineErrorCode = code
        self.context: Optional[SocklineErrorContext] = context
        self.__cause__ = cause


class InvalidSelector(SocklineError, ValueError):
    """
    Raised when a selector violates the data model.

    Examples:
    - missing or non-string identifier
    - mixing an absolute `from` with a relative `until` (or vice versa)
    - a granularity that is not a duration such as "15s"
    """

    def __init__(
        self,
        message: str = "Invalid selector.",
        *,
        context: Optional[SocklineErrorContext] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            code=SocklineErrorCode.INVALID_SELECTOR,
            context=context,
            cause=cause,
        )


class InvalidAddress(SocklineError, ValueError):
    """Raised when connect() is given an address that is not a ws:// or wss:// URL."""

    def __init__(
        self,
        message: str = "Invalid connection address (expected ws:// or wss:// URL).",
        *,
        context: Optional[SocklineErrorContext] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            code=SocklineErrorCode.INVALID_ADDRESS,
            context=context,
            cause=cause,
        )


class DeferredQueueFull(SocklineError):
    """
    Raised by a request call when the deferred queue is at capacity and the
    session is configured with OverflowPolicy.RAISE.
    """

    def __init__(
        self,
        message: str = "Deferred queue is full; request was not queued.",
        *,
        context: Optional[SocklineErrorContext] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            code=SocklineErrorCode.QUEUE_FULL,
            context=context,
            cause=cause,
        )


class NotReady(SocklineError):
    """
    A send was attempted while the connection is not open.

    The session recovers from this by deferring, so it is only ever raised
    internally by transports that prefer exceptions over a False return.
    """

    def __init__(
        self,
        message: str = "Connection is not open.",
        *,
        context: Optional[SocklineErrorContext] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            code=SocklineErrorCode.NOT_READY,
            context=context,
            cause=cause,
        )


class RequestExpired(SocklineError):
    """
    Delivered (not raised) to the error handlers of a get request that saw no
    response within SessionConfig.get_timeout_s.
    """

    def __init__(
        self,
        message: str = "Request expired without a response.",
        *,
        selector: Any = None,
        context: Optional[SocklineErrorContext] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            code=SocklineErrorCode.EXPIRED,
            context=context,
            cause=cause,
        )
        self.selector = selector
