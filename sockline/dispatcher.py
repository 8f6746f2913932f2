"""
Sockline inbound dispatcher.

Key points:
- Input: one decoded envelope (a JSON object) with up to two sections:
      {"get": [item*], "subscription": [item*]}
  where each item is {"graphSelector": {...}, "result": "success"|"error", "data": any}.
  "selector" is accepted as an alias of "graphSelector".
- "get" items are dispatched one-shot (record destroyed after firing);
  "subscription" items are dispatched persistently.
- Both sections present is legal; "get" is processed first.
- Dispatcher never raises for bad envelopes or items. Violations are collected
  as DispatchError records, returned in the DispatchResult and handed to the
  registered error handlers. Only a non-mapping input (programmer error)
  raises TypeError.
- Error payloads are always read from the item being processed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Tuple

from .errors import InvalidSelector, SocklineErrorCode
from .registry import CallbackRegistry, ResultKind
from .selector import Selector

logger = logging.getLogger(__name__)


GET_SECTION = "get"
SUBSCRIPTION_SECTION = "subscription"
SECTIONS = (GET_SECTION, SUBSCRIPTION_SECTION)

ITEM_SELECTOR_KEYS = ("graphSelector", "selector")


class DispatchSeverity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# Stable error codes (dispatcher-generated; never extracted from JSON)
ERR_MALFORMED_MESSAGE = SocklineErrorCode.MALFORMED_MESSAGE.value
ERR_UNKNOWN_RESULT = SocklineErrorCode.UNKNOWN_RESULT.value
ERR_DISPATCH_MISS = SocklineErrorCode.DISPATCH_MISS.value
ERR_INVALID_ITEM = SocklineErrorCode.INVALID_ITEM.value


@dataclass(frozen=True)
class DispatchError:
    code: str
    message: str
    section: Optional[str] = None
    identifier: Optional[str] = None
    keys: Tuple[str, ...] = ()
    severity: DispatchSeverity = DispatchSeverity.WARNING


@dataclass
class DispatchResult:
    items: int = 0        # items examined
    delivered: int = 0    # items that matched a record
    invoked: int = 0      # handler calls made
    errors: List[DispatchError] = field(default_factory=list)

    @property
    def handled(self) -> bool:
        return self.invoked > 0


ErrorHandler = Callable[[DispatchError], Any]


class Dispatcher:
    """
    Routes envelope items to the one-shot get registry or the persistent
    subscription registry and reports protocol violations.
    """

    def __init__(self, get_registry: CallbackRegistry, subscription_registry: CallbackRegistry) -> None:
        self.get_registry = get_registry
        self.subscription_registry = subscription_registry
        self._error_handlers: List[ErrorHandler] = []

    # --- Registration API ---

    def register_error_handler(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    def unregister_error_handler(self, handler: ErrorHandler) -> None:
        try:
            self._error_handlers.remove(handler)
        except ValueError:
            return

    # --- Dispatch API ---

    def dispatch(self, envelope: Mapping[str, Any]) -> DispatchResult:
        """
        Dispatch one decoded envelope.

        Raises TypeError only for programmer error (non-mapping input).
        """
        if not isinstance(envelope, Mapping):
            raise TypeError("Dispatcher.dispatch: envelope must be a mapping (dict-like JSON object)")

        result = DispatchResult()

        present = [s for s in SECTIONS if s in envelope]
        if not present:
            result.errors.append(
                DispatchError(
                    code=ERR_MALFORMED_MESSAGE,
                    message="Envelope has neither 'get' nor 'subscription'.",
                    keys=tuple(str(k) for k in envelope.keys()),
                    severity=DispatchSeverity.ERROR,
                )
            )
            self.report(result.errors)
            return result

        for section in present:
            items = envelope.get(section)
            if not isinstance(items, list):
                result.errors.append(
                    DispatchError(
                        code=ERR_INVALID_ITEM,
                        message=f"Section '{section}' is {type(items).__name__}, expected a list.",
                        section=section,
                    )
                )
                continue
            for item in items:
                self._dispatch_item(section, item, result)

        if result.errors:
            self.report(result.errors)

        return result

    def report(self, errors: List[DispatchError]) -> None:
        """Hand errors to every registered error handler."""
        for err in errors:
            for h in list(self._error_handlers):
                try:
                    h(err)
                except Exception:
                    # Contract: error handler exceptions do not break dispatch.
                    logger.exception("Dispatch error handler raised for %s", err.code)

    # --- Internal ---

    def _dispatch_item(self, section: str, item: Any, result: DispatchResult) -> None:
        result.items += 1

        if not isinstance(item, Mapping):
            result.errors.append(
                DispatchError(
                    code=ERR_INVALID_ITEM,
                    message=f"Item in '{section}' is {type(item).__name__}, expected an object.",
                    section=section,
                )
            )
            return

        raw_selector = None
        for k in ITEM_SELECTOR_KEYS:
            if k in item:
                raw_selector = item[k]
                break

        try:
            selector = Selector.from_json(raw_selector)
        except InvalidSelector as e:
            result.errors.append(
                DispatchError(
                    code=ERR_INVALID_ITEM,
                    message=f"Item in '{section}' has no usable selector: {e}",
                    section=section,
                    keys=tuple(str(k) for k in item.keys()),
                )
            )
            return

        raw_result = item.get("result")
        try:
            kind = ResultKind(raw_result)
        except ValueError:
            result.errors.append(
                DispatchError(
                    code=ERR_UNKNOWN_RESULT,
                    message=f"Unknown result {raw_result!r} for {selector.identifier}.",
                    section=section,
                    identifier=selector.identifier,
                )
            )
            return

        data = item.get("data")
        if kind is ResultKind.ERROR:
            logger.info("%s %s received error: %s", section, selector.identifier, data)

        if section == GET_SECTION:
            invoked = self.get_registry.dispatch_once(selector, kind, data)
        else:
            invoked = self.subscription_registry.dispatch_persistent(selector, kind, data)

        if invoked is None:
            result.errors.append(
                DispatchError(
                    code=ERR_DISPATCH_MISS,
                    message=f"No callbacks registered in '{section}' for {selector}.",
                    section=section,
                    identifier=selector.identifier,
                    severity=DispatchSeverity.DEBUG,
                )
            )
            return

        result.delivered += 1
        result.invoked += invoked
