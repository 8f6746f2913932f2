"""
Sockline Session

Responsibilities:
- Own the connection handle and its lifecycle state
  (DISCONNECTED -> CONNECTING -> OPEN -> CLOSED -> DISCONNECTED).
- Own both callback registries (one-shot "get", persistent "subscription")
  and the deferred queue.
- Expose get / subscribe / unsubscribe; send requests immediately when OPEN,
  otherwise defer them until the next "open" event.
- Feed inbound text to the Dispatcher.
- Report diagnostics through logging, a bounded event queue and a Notifier.

Non-responsibilities (explicit):
- Reconnect / backoff policy. A closed session stays DISCONNECTED until
  connect() is called again.
- Socket, TLS and framing (the transport's business).

Concurrency:
- Registries, queue and state are guarded by one re-entrant lock. Dispatch
  and handler invocation happen under it, so a handler may call back into
  the session (e.g. unsubscribe) on the same thread, and an unsubscribe from
  another thread never races a dispatch for the same selector.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set

from elkm1_lib.notify import Notifier

from .connection import Transport, TransportFactory, WebSocketConnection
from .deferred import Action, ActionKind, DeferredQueue, OverflowPolicy
from .dispatcher import (
    DispatchError,
    DispatchResult,
    DispatchSeverity,
    Dispatcher,
    ERR_MALFORMED_MESSAGE,
)
from .errors import DeferredQueueFull, NotReady, RequestExpired, SocklineErrorContext
from .events import (
    ConnectionStateChanged,
    DeferredFlushed,
    DeferredOverflow,
    DispatchDiagnostic,
    Event,
    RequestExpiredEvent,
    TransportError,
    UNSET_AT,
    stamp_event,
)
from .registry import CallbackRegistry, ErrorFn, ResultKind, SuccessFn
from .selector import CanonicalKey, Selector, as_selector
from .util import parse_url

logger = logging.getLogger(__name__)


_SEVERITY_LEVELS = {
    DispatchSeverity.DEBUG: logging.DEBUG,
    DispatchSeverity.INFO: logging.INFO,
    DispatchSeverity.WARNING: logging.WARNING,
    DispatchSeverity.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class SessionConfig:
    deferred_max_len: int = 1024       # 0 means unbounded
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    get_timeout_s: Optional[float] = None  # None: pending gets never expire
    snapshot_on_subscribe: bool = True     # server answers a subscribe with an initial "get" result
    resubscribe_on_open: bool = False      # resend subscribe for every live subscription on open
    event_queue_maxlen: int = 256          # 0 means unbounded
    open_timeout_s: float = 30.0


class SessionState(str, Enum):
    """Connection lifecycle states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class SubscriptionHandle:
    """Returned by Session.subscribe(); unsubscribe() removes exactly that registration."""

    def __init__(self, session: "Session", selector: Selector, on_success: SuccessFn, on_error: ErrorFn) -> None:
        self.selector = selector
        self._session = session
        self._on_success = on_success
        self._on_error = on_error
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> bool:
        """
        Remove this subscription's callbacks. Idempotent.

        Returns True when this was the last registration for the selector and
        an unsubscribe request was sent (or deferred).
        """
        if not self._active:
            return False
        self._active = False
        return self._session._unsubscribe(self)

    def __repr__(self) -> str:
        return f"SubscriptionHandle({self.selector}, active={self._active})"


class Session:
    """
    Client session to a time-series data service.

    Typical usage (inside a running asyncio loop for the default transport):
        s = Session()
        s.connect("wss://metrics.example.net/socket")
        handle = s.subscribe(
            {"identifier": "cpu.load", "from": "-5m", "until": "now", "granularity": "15s"},
            on_data, on_error,
        )
        ...
        handle.unsubscribe()

    Requests made before the connection is open are queued and sent on open.
    """

    def __init__(
        self,
        cfg: Optional[SessionConfig] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
        notifier: Optional[Notifier] = None,
        now_monotonic: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.cfg = cfg or SessionConfig()
        self._log = logger or logging.getLogger(__name__)
        self.now = now_monotonic
        self.notifier = notifier or Notifier()
        self._transport_factory: TransportFactory = transport_factory or self._default_transport

        self.address: Optional[str] = None
        self.state: SessionState = SessionState.DISCONNECTED
        self._transport: Optional[Transport] = None
        self._lock = threading.RLock()

        self.gets = CallbackRegistry("get")
        self.subscriptions = CallbackRegistry("subscription")
        self.deferred = DeferredQueue(max_len=self.cfg.deferred_max_len, policy=self.cfg.overflow_policy)
        self.dispatcher = Dispatcher(self.gets, self.subscriptions)
        self.dispatcher.register_error_handler(self._handle_dispatch_error)

        self._events: Deque[Event] = deque(maxlen=(self.cfg.event_queue_maxlen or None))
        self._handles: Dict[CanonicalKey, List[SubscriptionHandle]] = {}

    def _default_transport(self, address: str) -> Transport:
        return WebSocketConnection(address, open_timeout=self.cfg.open_timeout_s)

    @property
    def connected(self) -> bool:
        return self.state is SessionState.OPEN

    # --------------------------
    # Connection lifecycle
    # --------------------------

    def connect(self, address: str) -> None:
        """
        Begin a new connection attempt to address (ws:// or wss:// URL).

        Any existing connection is dropped first. Queued actions are kept and
        flushed when the new connection opens.
        """
        parse_url(address)

        with self._lock:
            if self._transport is not None:
                self._drop_transport("reconnect")

            transport = self._transport_factory(address)
            transport.on_open = lambda: self._on_open(transport)
            transport.on_message = lambda text: self._on_message(transport, text)
            transport.on_error = lambda info: self._on_error(transport, info)
            transport.on_close = lambda info: self._on_close(transport, info)

            self._transport = transport
            self.address = address
            self._set_state(SessionState.CONNECTING)

        self._log.info("Session connecting to %s", address)
        try:
            transport.open()
        except Exception:
            with self._lock:
                if self._transport is transport:
                    self._drop_transport("open failed")
            raise

    def close(self) -> None:
        """Close the connection. Safe to call multiple times."""
        with self._lock:
            if self._transport is None:
                return
            self._drop_transport("closed by client")

    def _drop_transport(self, reason: str) -> None:
        transport = self._transport
        self._transport = None
        self._set_state(SessionState.CLOSED, reason)
        self._set_state(SessionState.DISCONNECTED, reason)
        if transport is not None:
            try:
                transport.close()
            except Exception as e:
                self._log.warning("Session.close(): transport close failed: %s", e, exc_info=True)

    def _set_state(self, new: SessionState, reason: Optional[str] = None) -> None:
        old = self.state
        if new is old:
            return
        self.state = new
        self._log.info("Session state %s -> %s%s", old.value, new.value, f" ({reason})" if reason else "")
        self.emit(
            ConnectionStateChanged(
                kind=ConnectionStateChanged.KIND,
                at=UNSET_AT,
                state=new.value,
                previous=old.value,
                reason=reason,
            )
        )

    # --------------------------
    # Transport events
    # --------------------------

    def _on_open(self, transport: Transport) -> None:
        with self._lock:
            if transport is not self._transport:
                return
            self._set_state(SessionState.OPEN)

            sent_subscriptions: Set[CanonicalKey] = set()

            def _sender(action: Action) -> bool:
                ok = self.send_action(action)
                if ok and action.kind is ActionKind.SUBSCRIBE:
                    sent_subscriptions.add(action.selector.key)
                return ok

            result = self.deferred.flush(_sender)
            if result.attempted:
                self._log.info(
                    "Flushed deferred queue: %d attempted, %d sent, %d remaining",
                    result.attempted,
                    result.sent,
                    result.remaining,
                )
            self.emit(
                DeferredFlushed(
                    kind=DeferredFlushed.KIND,
                    at=UNSET_AT,
                    attempted=result.attempted,
                    sent=result.sent,
                    remaining=result.remaining,
                )
            )

            if self.cfg.resubscribe_on_open:
                for selector in self.subscriptions.selectors():
                    if selector.key not in sent_subscriptions:
                        self._submit(Action(ActionKind.SUBSCRIBE, selector))

    def _on_message(self, transport: Transport, text: str) -> Optional[DispatchResult]:
        with self._lock:
            if transport is not self._transport:
                return None
            self._log.debug("Received: %s", text)
            self._expire_pending()

            try:
                obj = json.loads(text)
            except (TypeError, ValueError) as e:
                self.dispatcher.report([
                    DispatchError(
                        code=ERR_MALFORMED_MESSAGE,
                        message=f"Received invalid JSON: {e}",
                        severity=DispatchSeverity.ERROR,
                    )
                ])
                return None

            if not isinstance(obj, Mapping):
                self.dispatcher.report([
                    DispatchError(
                        code=ERR_MALFORMED_MESSAGE,
                        message=f"Expected a JSON object but received {type(obj).__name__}.",
                        severity=DispatchSeverity.ERROR,
                    )
                ])
                return None

            return self.dispatcher.dispatch(obj)

    def _on_error(self, transport: Transport, info: Any) -> None:
        with self._lock:
            if transport is not self._transport:
                return
            self._log.warning("Transport error on %s: %s", self.address, info)
            self.emit(
                TransportError(
                    kind=TransportError.KIND,
                    at=UNSET_AT,
                    info=str(info),
                    error_type=type(info).__name__ if isinstance(info, BaseException) else None,
                )
            )

    def _on_close(self, transport: Transport, info: Any) -> None:
        with self._lock:
            if transport is not self._transport:
                return
            self._transport = None
            reason = str(info) if info is not None else None
            self._set_state(SessionState.CLOSED, reason)
            self._set_state(SessionState.DISCONNECTED, reason)

    # --------------------------
    # Sending
    # --------------------------

    def send(self, raw: str) -> bool:
        """Diagnostic escape hatch: send raw text now. Never deferred."""
        with self._lock:
            return self._send_text(raw)

    def send_action(self, action: Action) -> bool:
        """Send action now. False (nothing sent) when the connection is not open."""
        with self._lock:
            return self._send_text(action.encode())

    def _send_text(self, text: str) -> bool:
        transport = self._transport
        if self.state is not SessionState.OPEN or transport is None:
            return False
        try:
            ok = bool(transport.send(text))
        except NotReady:
            self._log.debug("Transport on %s not ready", self.address)
            return False
        except Exception as e:
            self._log.warning("Send failed on %s: %s", self.address, e)
            return False
        if ok:
            self._log.debug("Sent: %s", text)
        return ok

    def _submit(self, action: Action) -> None:
        """Send action, or defer it until the next open."""
        if self.send_action(action):
            return

        self._log.info("called %s while not connected - deferring", action.kind.value)
        dropped = self.deferred.push(action)
        if dropped is None:
            return

        self._log.warning(
            "Deferred queue full (%d); dropped %s under policy %s",
            self.deferred.max_len,
            dropped,
            self.deferred.policy.value,
        )
        self.emit(
            DeferredOverflow(
                kind=DeferredOverflow.KIND,
                at=UNSET_AT,
                policy=self.deferred.policy.value,
                dropped_action=dropped.kind.value,
                dropped_identifier=dropped.selector.identifier,
                max_len=self.deferred.max_len,
            )
        )
        self._fail_dropped(dropped)

    def _fail_dropped(self, dropped: Action) -> None:
        """Fail the request a dropped action was carrying. Nothing will ever answer it."""
        if any(a == dropped for a in self.deferred):
            # An identical action is still queued and carries the request.
            return
        err = DeferredQueueFull(
            f"Deferred queue is full; {dropped} was dropped.",
            context=SocklineErrorContext(identifier=dropped.selector.identifier, phase="defer"),
        )
        if dropped.kind is ActionKind.GET:
            # Passive snapshot entries stay; their subscription still stands.
            record = self.gets.detach_active(dropped.selector)
            if record is not None:
                self.gets.invoke(record, ResultKind.ERROR, err)
        elif dropped.kind is ActionKind.SUBSCRIBE:
            record = self.subscriptions.discard(dropped.selector)
            if record is None:
                return
            for handle in self._handles.pop(record.key, []):
                handle._active = False
            for entry in record.entries:
                self.gets.unregister(record.selector, entry.success, entry.error, passive_only=True)
            self.subscriptions.invoke(record, ResultKind.ERROR, err)

    # --------------------------
    # Public request API
    # --------------------------

    def get(
        self,
        selector: Selector | Mapping[str, Any],
        on_success: SuccessFn,
        on_error: ErrorFn,
    ) -> None:
        """
        One-shot snapshot request. The first matching "get" response is
        delivered to the handlers, then the registration is gone.
        """
        sel = as_selector(selector)
        with self._lock:
            self._expire_pending()
            if not self.gets.register(sel, on_success, on_error, now=self.now()):
                return
            try:
                self._submit(Action(ActionKind.GET, sel))
            except DeferredQueueFull:
                # This call is the only active entry on the record.
                self.gets.detach_active(sel)
                raise

    def subscribe(
        self,
        selector: Selector | Mapping[str, Any],
        on_success: SuccessFn,
        on_error: ErrorFn,
    ) -> SubscriptionHandle:
        """
        Persistent subscription. Every matching "subscription" response is
        delivered until the returned handle is unsubscribed.
        """
        sel = as_selector(selector)
        with self._lock:
            now = self.now()
            snapshot = self.cfg.snapshot_on_subscribe
            if snapshot:
                # Passive: the server's initial "get"-tagged snapshot lands here.
                self.gets.register(sel, on_success, on_error, now=now, active=False)
            created = self.subscriptions.register(sel, on_success, on_error, now=now)
            handle = SubscriptionHandle(self, sel, on_success, on_error)
            self._handles.setdefault(sel.key, []).append(handle)
            if created:
                try:
                    self._submit(Action(ActionKind.SUBSCRIBE, sel))
                except DeferredQueueFull:
                    self._forget_handle(handle)
                    self.subscriptions.unregister(sel, on_success, on_error)
                    if snapshot:
                        self.gets.unregister(sel, on_success, on_error, passive_only=True)
                    raise
            return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        return handle.unsubscribe()

    def _unsubscribe(self, handle: SubscriptionHandle) -> bool:
        with self._lock:
            self._forget_handle(handle)
            if not self.subscriptions.unregister(handle.selector, handle._on_success, handle._on_error):
                return False
            self._submit(Action(ActionKind.UNSUBSCRIBE, handle.selector))
            return True

    def _forget_handle(self, handle: SubscriptionHandle) -> None:
        handles = self._handles.get(handle.selector.key, [])
        if handle in handles:
            handles.remove(handle)
        if not handles:
            self._handles.pop(handle.selector.key, None)

    # --------------------------
    # Pending-get expiry
    # --------------------------

    def expire_pending(self) -> int:
        """Fail pending gets older than cfg.get_timeout_s. Returns how many expired."""
        with self._lock:
            return self._expire_pending()

    def _expire_pending(self) -> int:
        timeout = self.cfg.get_timeout_s
        if timeout is None:
            return 0

        now = self.now()
        stale = self.gets.expire(now=now, max_age=timeout)
        for record in stale:
            age = now - record.created_at
            self._log.warning("get %s expired after %.1fs without a response", record.selector, age)
            self.emit(
                RequestExpiredEvent(
                    kind=RequestExpiredEvent.KIND,
                    at=UNSET_AT,
                    identifier=record.selector.identifier,
                    age_s=age,
                    callbacks=len(record.entries),
                )
            )
            self.gets.invoke(
                record,
                ResultKind.ERROR,
                RequestExpired(
                    f"get {record.selector} expired after {age:.1f}s without a response.",
                    selector=record.selector,
                ),
            )
        return len(stale)

    # --------------------------
    # Diagnostics
    # --------------------------

    def _handle_dispatch_error(self, err: DispatchError) -> None:
        self._log.log(_SEVERITY_LEVELS[err.severity], "Dispatch %s: %s", err.code, err.message)
        self.emit(
            DispatchDiagnostic(
                kind=DispatchDiagnostic.KIND,
                at=UNSET_AT,
                code=err.code,
                message=err.message,
                section=err.section,
                identifier=err.identifier,
                keys=err.keys,
                severity=err.severity.value,
            )
        )

    def emit(self, evt: Event) -> None:
        stamped = stamp_event(evt, at=self.now())
        self._events.append(stamped)
        try:
            self.notifier.notify(stamped.kind, {"event": stamped})
        except Exception:
            self._log.exception("Observer for %s raised", stamped.kind)

    def drain_events(self) -> list[Event]:
        with self._lock:
            out: list[Event] = list(self._events)
            self._events.clear()
            return out

    def debug(self) -> Dict[str, Any]:
        """Introspection dump of state, both registries and the deferred queue."""
        with self._lock:
            return {
                "state": self.state.value,
                "address": self.address,
                "get": self.gets.snapshot(),
                "subscription": self.subscriptions.snapshot(),
                "deferred": self.deferred.snapshot(),
            }
