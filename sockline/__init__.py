"""sockline: get / subscribe client for a time-series data service over one WebSocket."""

from .deferred import Action, ActionKind, OverflowPolicy
from .errors import (
    DeferredQueueFull,
    InvalidAddress,
    InvalidSelector,
    RequestExpired,
    SocklineError,
    SocklineErrorCode,
)
from .registry import ResultKind
from .selector import RangeKind, Selector, canonical_key
from .session import Session, SessionConfig, SessionState, SubscriptionHandle

__all__ = [
    "Action",
    "ActionKind",
    "DeferredQueueFull",
    "InvalidAddress",
    "InvalidSelector",
    "OverflowPolicy",
    "RangeKind",
    "RequestExpired",
    "ResultKind",
    "Selector",
    "Session",
    "SessionConfig",
    "SessionState",
    "SocklineError",
    "SocklineErrorCode",
    "SubscriptionHandle",
    "canonical_key",
]
