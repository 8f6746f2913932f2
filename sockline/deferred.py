"""
Deferred send queue.

Outbound requests that could not be sent (connection not open) wait here as
tagged Actions until the next "connection ready" event flushes them.

Flush contract:
- every action present when the flush starts is attempted exactly once, in
  insertion order
- actions the sender reports as sent are discarded
- actions still not sendable stay queued, keeping their relative order, ahead
  of anything queued while the flush was running
- nothing but a readiness event triggers a flush (no timers, no backoff)

The queue can be capped. What happens to an action that does not fit is
decided by OverflowPolicy; the caller reports the drop.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from .errors import DeferredQueueFull, SocklineErrorContext
from .selector import Selector


class ActionKind(str, Enum):
    GET = "get"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


@dataclass(frozen=True, slots=True)
class Action:
    """What to send. How and when to send it is the Session's business."""
    kind: ActionKind
    selector: Selector

    def to_message(self) -> Dict[str, Any]:
        return {self.kind.value: [self.selector.to_json()]}

    def encode(self) -> str:
        return json.dumps(self.to_message(), separators=(",", ":"), ensure_ascii=False)

    def __str__(self) -> str:
        return f"{self.kind.value}({self.selector})"


class OverflowPolicy(str, Enum):
    DROP_OLDEST = "drop_oldest"
    DROP_NEWEST = "drop_newest"
    RAISE = "raise"


@dataclass(frozen=True, slots=True)
class FlushResult:
    attempted: int
    sent: int
    remaining: int


Sender = Callable[[Action], bool]


class DeferredQueue:
    """FIFO of Actions awaiting connection readiness."""

    def __init__(self, *, max_len: int = 0, policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST) -> None:
        if max_len < 0:
            raise ValueError(f"DeferredQueue: max_len must be >= 0 (got {max_len})")
        self.max_len = max_len  # 0 means unbounded
        self.policy = policy
        self._actions: Deque[Action] = deque()

    def push(self, action: Action) -> Optional[Action]:
        """
        Queue action.

        Returns the action that was dropped to respect max_len (the oldest one
        under DROP_OLDEST, `action` itself under DROP_NEWEST), or None.
        Raises DeferredQueueFull under RAISE.
        """
        if self.max_len and len(self._actions) >= self.max_len:
            if self.policy is OverflowPolicy.RAISE:
                raise DeferredQueueFull(
                    f"Deferred queue is full ({self.max_len} actions); {action} was not queued.",
                    context=SocklineErrorContext(identifier=action.selector.identifier, phase="defer"),
                )
            if self.policy is OverflowPolicy.DROP_NEWEST:
                return action
            dropped = self._actions.popleft()
            self._actions.append(action)
            return dropped

        self._actions.append(action)
        return None

    def flush(self, sender: Sender) -> FlushResult:
        pending = list(self._actions)
        self._actions.clear()

        kept: List[Action] = []
        sent = 0
        attempted = 0
        try:
            for action in pending:
                ok = sender(action)
                attempted += 1
                if ok:
                    sent += 1
                else:
                    kept.append(action)
        finally:
            # Anything not attempted (sender raised) is kept too.
            kept.extend(pending[attempted:])
            self._actions.extendleft(reversed(kept))

        return FlushResult(attempted=attempted, sent=sent, remaining=len(self._actions))

    def clear(self) -> None:
        self._actions.clear()

    def snapshot(self) -> List[Dict[str, Any]]:
        return [a.to_message() for a in self._actions]

    def __len__(self) -> int:
        return len(self._actions)

    def __iter__(self) -> Iterator[Action]:
        return iter(list(self._actions))
