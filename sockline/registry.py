"""
Selector-keyed callback registry.

A Session owns two instances:
- "get": one-shot records, destroyed right after their response is dispatched
- "subscription": persistent records, destroyed only when their last callback
  pair is unregistered

Key points:
- Records are keyed by the selector's canonical key, so field order never
  matters for lookup.
- Callback pairs are opaque and matched by identity. Registering the same
  (selector, success, error) triple twice creates two independent entries;
  one unregister removes one of them.
- Handlers fire in registration order. A handler that raises is logged and
  does not stop delivery to the others.
- A pair removed while a dispatch is in progress (e.g. an earlier handler
  unsubscribes a later one) is not invoked by that dispatch. Pairs added
  during a dispatch wait for the next one.
- The registry performs no I/O; deciding what to send on create/remove is
  the Session's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from .selector import CanonicalKey, Selector, as_selector

logger = logging.getLogger(__name__)


SuccessFn = Callable[[Any], Any]
ErrorFn = Callable[[Any], Any]


class ResultKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True, eq=False, slots=True)
class CallbackEntry:
    success: SuccessFn
    error: ErrorFn
    active: bool = True

    def matches(self, success: SuccessFn, error: ErrorFn) -> bool:
        return self.success is success and self.error is error


@dataclass(slots=True)
class RegistryRecord:
    key: CanonicalKey
    selector: Selector
    created_at: float
    entries: List[CallbackEntry] = field(default_factory=list)
    # False while only passive registrations (no request sent) hold the record.
    active: bool = True


class CallbackRegistry:
    """Maps canonical selector keys to ordered lists of callback pairs."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._records: Dict[CanonicalKey, RegistryRecord] = {}

    # --- Registration API ---

    def register(
        self,
        selector: Selector | Mapping[str, Any],
        success: SuccessFn,
        error: ErrorFn,
        *,
        now: float = 0.0,
        active: bool = True,
    ) -> bool:
        """
        Append (success, error) to the record for selector.

        Returns True when this call created the record or turned a passive
        record active; either is the caller's cue to submit the network
        request for it. A passive registration (active=False) is one the
        caller sends nothing for; only active records are subject to expire().
        """
        sel = as_selector(selector)
        record = self._records.get(sel.key)
        if record is not None:
            record.entries.append(CallbackEntry(success, error, active))
            if active and not record.active:
                record.active = True
                record.created_at = now
                logger.debug("%s registry: activated %s", self.name, sel)
                return True
            logger.debug("%s registry: added callbacks to %s (%d total)", self.name, sel, len(record.entries))
            return False

        self._records[sel.key] = RegistryRecord(
            key=sel.key,
            selector=sel,
            created_at=now,
            entries=[CallbackEntry(success, error, active)],
            active=active,
        )
        logger.debug("%s registry: created record for %s", self.name, sel)
        return True

    def unregister(
        self,
        selector: Selector | Mapping[str, Any],
        success: SuccessFn,
        error: ErrorFn,
        *,
        passive_only: bool = False,
    ) -> bool:
        """
        Remove the first entry matching (success, error) by identity.

        Returns True only when that removal emptied the record (the record is
        destroyed and the caller should submit an unsubscription). Unknown
        selectors or pairs are a no-op returning False. With passive_only,
        active entries are never matched.
        """
        sel = as_selector(selector)
        record = self._records.get(sel.key)
        if record is None:
            return False

        for i, entry in enumerate(record.entries):
            if entry.matches(success, error) and not (passive_only and entry.active):
                del record.entries[i]
                break
        else:
            return False

        if record.entries:
            if not any(e.active for e in record.entries):
                record.active = False
            return False

        self._records.pop(sel.key, None)
        logger.debug("%s registry: removed last callbacks for %s", self.name, sel)
        return True

    # --- Dispatch API ---

    def dispatch_persistent(
        self,
        selector: Selector | Mapping[str, Any],
        result: ResultKind,
        payload: Any,
    ) -> Optional[int]:
        """
        Invoke every handler for result on the record; the record is kept.

        Returns the number of handlers invoked, or None when no record exists
        (a dispatch miss).
        """
        record = self._records.get(as_selector(selector).key)
        if record is None:
            return None
        return self.invoke(record, result, payload)

    def dispatch_once(
        self,
        selector: Selector | Mapping[str, Any],
        result: ResultKind,
        payload: Any,
    ) -> Optional[int]:
        """
        One-shot dispatch: the record is destroyed whatever the outcome.

        It is detached before the handlers run, so a handler that issues a new
        request for the same selector gets a fresh record.
        """
        record = self._records.pop(as_selector(selector).key, None)
        if record is None:
            return None
        return self.invoke(record, result, payload)

    def discard(self, selector: Selector | Mapping[str, Any]) -> Optional[RegistryRecord]:
        """Detach and return the record for selector without invoking anything."""
        return self._records.pop(as_selector(selector).key, None)

    def detach_active(self, selector: Selector | Mapping[str, Any]) -> Optional[RegistryRecord]:
        """
        Detach the active entries for selector and return them as a record.

        Passive entries stay behind in a fresh passive record. Returns None
        when there is no record or it holds no active entries.
        """
        record = self._records.get(as_selector(selector).key)
        if record is None or not record.active:
            return None
        return self._split_active(record)

    def expire(self, *, now: float, max_age: float) -> List[RegistryRecord]:
        """
        Detach and return active records older than max_age seconds.

        Only the active entries expire. Passive entries on a stale record stay
        behind in a fresh passive record; the returned record no longer holds
        them.
        """
        stale = [r for r in self._records.values() if r.active and now - r.created_at >= max_age]
        return [self._split_active(record) for record in stale]

    def _split_active(self, record: RegistryRecord) -> RegistryRecord:
        passive = [e for e in record.entries if not e.active]
        if not passive:
            self._records.pop(record.key, None)
            return record
        record.entries = [e for e in record.entries if e.active]
        self._records[record.key] = RegistryRecord(
            key=record.key,
            selector=record.selector,
            created_at=record.created_at,
            entries=passive,
            active=False,
        )
        return record

    # --- Introspection ---

    def get(self, selector: Selector | Mapping[str, Any]) -> Optional[RegistryRecord]:
        return self._records.get(as_selector(selector).key)

    def keys(self) -> List[CanonicalKey]:
        return list(self._records)

    def selectors(self) -> List[Selector]:
        return [r.selector for r in self._records.values()]

    def snapshot(self) -> List[Dict[str, Any]]:
        return [
            {
                "selector": r.selector.to_json(),
                "callbacks": len(r.entries),
                "created_at": r.created_at,
                "active": r.active,
            }
            for r in self._records.values()
        ]

    def clear(self) -> None:
        self._records.clear()

    def __contains__(self, selector: object) -> bool:
        if not isinstance(selector, (Selector, Mapping)):
            return False
        return as_selector(selector).key in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[RegistryRecord]:
        return iter(list(self._records.values()))

    # --- Invocation ---

    def invoke(self, record: RegistryRecord, result: ResultKind, payload: Any) -> int:
        """Call the result handler of every entry still on record, in order."""
        invoked = 0
        for entry in list(record.entries):
            # Removed by an earlier handler during this dispatch.
            if entry not in record.entries:
                continue
            handler = entry.success if result is ResultKind.SUCCESS else entry.error
            invoked += 1
            try:
                handler(payload)
            except Exception:
                logger.exception(
                    "%s registry: %s handler for %s raised",
                    self.name,
                    result.value,
                    record.selector,
                )
        return invoked
