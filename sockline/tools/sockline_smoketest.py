#!/usr/bin/env python3
"""
Sockline smoke test tool

Connects to a data service, issues one subscribe (or one get) for a series
and prints every payload it receives as JSON.

Examples:
    python -m sockline.tools.sockline_smoketest ws://localhost:8080/socket cpu.load
    python -m sockline.tools.sockline_smoketest wss://metrics.example.net/socket cpu.load \\
        --from=-1h --granularity 1m --get

Exit codes: 0 ok, 2 error, 130 interrupted.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from sockline import Selector, Session, SessionConfig, SocklineError


# ----------------------------
# Event helpers (JSONL-ish)
# ----------------------------


def _emit_event(events: list[dict[str, Any]], event: str, *args: Any, **kwargs: Any) -> None:
    obj = {"event": event, "args": list(args), "kwargs": dict(kwargs)}
    events.append(obj)
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _time_value(text: str) -> int | float | str:
    """Numbers become absolute timestamps; anything else stays a relative offset."""
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Sockline smoke test")
    p.add_argument("url", help="ws:// or wss:// URL of the data service")
    p.add_argument("identifier", help="series identifier, e.g. cpu.load")
    p.add_argument("--from", dest="start", default="-5m", help="timestamp or relative offset; write offsets as --from=-1h (default -5m)")
    p.add_argument("--until", default="now", help="timestamp, relative offset or 'now' (default now)")
    p.add_argument("--granularity", default="15s", help="duration such as 15s (default 15s)")
    p.add_argument("--get", action="store_true", help="one-shot get instead of subscribe")
    p.add_argument("--count", type=int, default=1, help="payloads to wait for before exiting (default 1)")
    p.add_argument("--timeout", type=float, default=30.0, help="seconds to wait overall (default 30)")
    p.add_argument("--log-level", default="INFO", help="logging level (default INFO)")
    return p


async def run(args: argparse.Namespace, events: list[dict[str, Any]]) -> int:
    selector = Selector(
        identifier=args.identifier,
        start=_time_value(args.start),
        until=_time_value(args.until),
        granularity=args.granularity,
    )

    done = asyncio.Event()
    received = 0

    def on_success(data: Any) -> None:
        nonlocal received
        received += 1
        _emit_event(events, "data", selector.identifier, data=data)
        if received >= args.count:
            done.set()

    def on_error(data: Any) -> None:
        _emit_event(events, "error", selector.identifier, data=data)
        done.set()

    session = Session(SessionConfig(get_timeout_s=args.timeout if args.get else None))
    session.notifier.attach(
        "connection_state_changed",
        lambda event: _emit_event(events, "state", event.state, reason=event.reason),
    )

    # Queue the request first; it goes out on open.
    if args.get:
        session.get(selector, on_success, on_error)
    else:
        handle = session.subscribe(selector, on_success, on_error)

    session.connect(args.url)
    try:
        await asyncio.wait_for(done.wait(), timeout=args.timeout)
    except TimeoutError:
        _emit_event(events, "timeout", f"no data within {args.timeout}s", debug=session.debug())
        return 2
    finally:
        if not args.get:
            handle.unsubscribe()
            # Let the writer task deliver the unsubscribe.
            await asyncio.sleep(0.1)
        session.close()

    _emit_event(events, "ok", "smoketest completed", received=received)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.INFO))

    events: list[dict[str, Any]] = []
    try:
        return asyncio.run(run(args, events))
    except KeyboardInterrupt:
        _emit_event(events, "error", "Interrupted (Ctrl-C).")
        return 130
    except SocklineError as e:
        _emit_event(events, "error", str(e), code=e.code.value)
        return 2


if __name__ == "__main__":
    sys.exit(main())
