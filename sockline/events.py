"""
sockline/events.py

Diagnostic event dataclasses.

Rules:
- Components construct event objects with a placeholder `at`.
- Session.emit() stamps `at` from its monotonic clock, appends the event to
  its bounded queue and notifies observers attached under the event's KIND.
- Events are diagnostics only: nothing in the session's behaviour depends on
  anyone consuming them.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Tuple


@dataclass(frozen=True, slots=True)
class Event:
    kind: str
    at: float


UNSET_AT: float = 0.0


# -------------------------
# Connection lifecycle
# -------------------------

@dataclass(frozen=True, slots=True)
class ConnectionStateChanged(Event):
    KIND = "connection_state_changed"

    state: str
    previous: str
    reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TransportError(Event):
    KIND = "transport_error"

    info: str
    error_type: Optional[str] = None


# -------------------------
# Deferred queue
# -------------------------

@dataclass(frozen=True, slots=True)
class DeferredFlushed(Event):
    KIND = "deferred_flushed"

    attempted: int
    sent: int
    remaining: int


@dataclass(frozen=True, slots=True)
class DeferredOverflow(Event):
    KIND = "deferred_overflow"

    policy: str
    dropped_action: Optional[str]
    dropped_identifier: Optional[str]
    max_len: int


# -------------------------
# Dispatch
# -------------------------

@dataclass(frozen=True, slots=True)
class DispatchDiagnostic(Event):
    KIND = "dispatch_diagnostic"

    code: str
    message: str
    section: Optional[str] = None
    identifier: Optional[str] = None
    keys: Tuple[str, ...] = ()
    severity: str = "warning"  # "debug"|"info"|"warning"|"error"


@dataclass(frozen=True, slots=True)
class RequestExpiredEvent(Event):
    KIND = "request_expired"

    identifier: str
    age_s: float
    callbacks: int


def stamp_event(evt: Event, *, at: float) -> Event:
    """Replace the header timestamp. Session.emit() uses this."""
    return replace(evt, at=at)
