"""
sockline/selector.py

Selector value type + canonicalizer.

A selector names a series and a time window:

    {"identifier": "cpu.load", "from": "-5m", "until": "now", "granularity": "15s"}

Rules:
- `from`/`until` are both absolute (int/float timestamps) or both relative
  ("-5m", with "now" allowed for `until` only). Mixing is a caller error.
- Selectors compare by value. Equality and hashing go through the canonical
  key, which does not depend on the order fields were supplied in.
- Fields the server echoes that are not part of the model are kept in
  `extra` and take part in equality, so a response only matches a request
  that carried the same extras.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Tuple, Union

from .errors import InvalidSelector, SocklineErrorContext
from .util import NOW, is_absolute_time, is_duration, is_relative_offset


TimeValue = Union[int, float, str]

WIRE_IDENTIFIER = "identifier"
WIRE_FROM = "from"
WIRE_UNTIL = "until"
WIRE_GRANULARITY = "granularity"
WIRE_FIELDS = (WIRE_IDENTIFIER, WIRE_FROM, WIRE_UNTIL, WIRE_GRANULARITY)


class RangeKind(str, Enum):
    ABSOLUTE = "absolute"
    RELATIVE = "relative"


CanonicalKey = Tuple[str, str, TimeValue, TimeValue, str, Tuple[Tuple[str, str], ...]]


def _encode_extra(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _range_kind(value: TimeValue, *, allow_now: bool) -> RangeKind | None:
    if is_absolute_time(value):
        return RangeKind.ABSOLUTE
    if is_relative_offset(value) or (allow_now and value == NOW):
        return RangeKind.RELATIVE
    return None


@dataclass(frozen=True, eq=False)
class Selector:
    identifier: str
    start: TimeValue
    until: TimeValue
    granularity: str
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        ctx = SocklineErrorContext(
            identifier=self.identifier if isinstance(self.identifier, str) else None,
            phase="selector",
        )
        if not isinstance(self.identifier, str) or not self.identifier:
            raise InvalidSelector(
                f"Selector identifier must be a non-empty string (got {self.identifier!r}).",
                context=ctx,
            )
        if not is_duration(self.granularity):
            raise InvalidSelector(
                f"Selector {self.identifier!r}: granularity {self.granularity!r} is not a duration like '15s'.",
                context=ctx,
            )

        start_kind = _range_kind(self.start, allow_now=False)
        if start_kind is None:
            raise InvalidSelector(
                f"Selector {self.identifier!r}: 'from' must be a timestamp or a relative offset like '-5m' "
                f"(got {self.start!r}).",
                context=ctx,
            )
        until_kind = _range_kind(self.until, allow_now=True)
        if until_kind is None:
            raise InvalidSelector(
                f"Selector {self.identifier!r}: 'until' must be a timestamp, a relative offset or 'now' "
                f"(got {self.until!r}).",
                context=ctx,
            )
        if start_kind is not until_kind:
            raise InvalidSelector(
                f"Selector {self.identifier!r}: 'from' is {start_kind.value} but 'until' is {until_kind.value}; "
                "both must be absolute or both relative.",
                context=ctx,
            )

        if not isinstance(self.extra, Mapping):
            raise InvalidSelector(f"Selector {self.identifier!r}: extra must be a mapping.", context=ctx)
        clash = set(self.extra) & set(WIRE_FIELDS)
        if clash:
            raise InvalidSelector(
                f"Selector {self.identifier!r}: extra repeats model fields {sorted(clash)}.",
                context=ctx,
            )
        object.__setattr__(self, "extra", dict(self.extra))

    # --- Constructors ---

    @classmethod
    def relative(cls, identifier: str, start: str, *, granularity: str, until: str = NOW) -> "Selector":
        return cls(identifier=identifier, start=start, until=until, granularity=granularity)

    @classmethod
    def absolute(cls, identifier: str, start: float, until: float, *, granularity: str) -> "Selector":
        return cls(identifier=identifier, start=start, until=until, granularity=granularity)

    @classmethod
    def from_json(cls, obj: Mapping[str, Any]) -> "Selector":
        """Build a Selector from its wire mapping. Field order is irrelevant."""
        if not isinstance(obj, Mapping):
            raise InvalidSelector(f"Selector must be a JSON object (got {type(obj).__name__}).")
        missing = [k for k in WIRE_FIELDS if k not in obj]
        if missing:
            raise InvalidSelector(f"Selector is missing fields {missing}: {dict(obj)!r}")
        extra = {k: v for k, v in obj.items() if k not in WIRE_FIELDS}
        return cls(
            identifier=obj[WIRE_IDENTIFIER],
            start=obj[WIRE_FROM],
            until=obj[WIRE_UNTIL],
            granularity=obj[WIRE_GRANULARITY],
            extra=extra,
        )

    # --- Views ---

    @property
    def range_kind(self) -> RangeKind:
        return RangeKind.ABSOLUTE if is_absolute_time(self.start) else RangeKind.RELATIVE

    @property
    def key(self) -> CanonicalKey:
        extras = tuple(sorted((k, _encode_extra(v)) for k, v in self.extra.items()))
        return (
            self.identifier,
            self.range_kind.value,
            self.start,
            self.until,
            self.granularity,
            extras,
        )

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            WIRE_IDENTIFIER: self.identifier,
            WIRE_FROM: self.start,
            WIRE_UNTIL: self.until,
            WIRE_GRANULARITY: self.granularity,
        }
        for k in sorted(self.extra):
            out[k] = self.extra[k]
        return out

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Selector):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __str__(self) -> str:
        return f"{self.identifier}[{self.start}..{self.until}@{self.granularity}]"


def as_selector(value: Selector | Mapping[str, Any]) -> Selector:
    if isinstance(value, Selector):
        return value
    if isinstance(value, Mapping):
        return Selector.from_json(value)
    raise InvalidSelector(f"Expected a Selector or a mapping (got {type(value).__name__}).")


def canonical_key(value: Selector | Mapping[str, Any]) -> CanonicalKey:
    """
    Comparison key for a selector: identical for structurally-equal selectors
    regardless of the order their fields were given in.
    """
    return as_selector(value).key
