"""
EventStream — one deployment's progress channel.

Single producer (the deployment worker), single consumer (the HTTP
response generator or the CLI).  The producer never blocks: Terraform
keeps running even if nobody is reading.

Back-pressure policy
────────────────────
- Events are queued up to ``max_queued``.
- One more pending event than that marks the stream *overflowed*.
  Overflow is fatal for the stream: later log events are not queued,
  and the terminal event is replaced by an ``InternalError``.  The
  deployment itself still runs to completion and is still recorded.
- ``detach()`` marks the consumer as gone (client disconnect).  Events
  are then discarded quietly; this is not an overflow.

The terminal event is held outside the queue, so it can always be
delivered, and it is always the last event yielded.

Wire format
───────────
One compact JSON object per event, concatenated with no delimiter::

    {"type":"log","message":"Initializing..."}{"type":"success",...}

:class:`EventDecoder` parses that incrementally: a read may carry
several objects, or part of one.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from collections.abc import Iterator
from typing import Any

from cloudforge.core.errors import EventOverflow, FailureKind, StreamConsumed
from cloudforge.core.models.events import (
    ErrorEvent,
    LogEvent,
    SuccessEvent,
    event_from_wire,
)

logger = logging.getLogger(__name__)

Event = LogEvent | ErrorEvent | SuccessEvent

DEFAULT_MAX_QUEUED = 10_000


class EventStream:
    """Finite, non-restartable stream of progress events."""

    def __init__(self, *, max_queued: int = DEFAULT_MAX_QUEUED, poll_interval: float = 0.1) -> None:
        if max_queued < 1:
            raise ValueError("max_queued must be >= 1")
        self._queue: queue.Queue[Event] = queue.Queue(maxsize=max_queued)
        self._max_queued = max_queued
        self._poll_interval = poll_interval
        self._lock = threading.Lock()
        self._finished = threading.Event()
        self._terminal: Event | None = None
        self._overflow: EventOverflow | None = None
        self._detached = False
        self._consumed = False
        self._published = 0

    # ── Properties ──────────────────────────────────────────────

    @property
    def overflowed(self) -> bool:
        return self._overflow is not None

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    @property
    def terminal(self) -> Event | None:
        return self._terminal

    # ── Producer side ───────────────────────────────────────────

    def publish(self, event: LogEvent) -> bool:
        """Queue a non-terminal event.

        Returns:
            True if the event was queued for the consumer.
        """
        if event.is_terminal:
            raise ValueError("Terminal events go through finish()")
        with self._lock:
            if self._finished.is_set():
                raise RuntimeError("Stream already finished")
            self._published += 1
            if self._detached or self._overflow is not None:
                return False
            try:
                self._queue.put_nowait(event)
                return True
            except queue.Full:
                self._overflow = EventOverflow(
                    f"Event stream overflowed ({self._max_queued} events pending)"
                )
        logger.error(
            "Event queue overflow after %d events (bound %d) — consumer too slow",
            self._published, self._max_queued,
        )
        return False

    def finish(self, event: ErrorEvent | SuccessEvent) -> Event:
        """Set the terminal event and close the stream.

        If the stream overflowed, the terminal event becomes an
        ``InternalError`` regardless of the deployment outcome.
        """
        if not event.is_terminal:
            raise ValueError("finish() needs a success or error event")
        with self._lock:
            if self._finished.is_set():
                raise RuntimeError("Stream already finished")
            if self._overflow is not None:
                event = ErrorEvent(
                    message=f"{self._overflow}; deployment outcome: {event.type}: {event.message}",
                    kind=FailureKind.INTERNAL_ERROR,
                )
            self._terminal = event
            self._finished.set()
        return event

    # ── Consumer side ───────────────────────────────────────────

    def detach(self) -> None:
        """The consumer went away; stop queueing events."""
        with self._lock:
            if self._detached:
                return
            self._detached = True
            while True:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    break
        if not self._finished.is_set():
            logger.info("Event consumer detached; deployment continues in background")

    def __iter__(self) -> Iterator[Event]:
        with self._lock:
            if self._consumed:
                raise StreamConsumed("This deployment's event stream was already consumed")
            self._consumed = True
        return self._drain()

    def _drain(self) -> Iterator[Event]:
        while True:
            try:
                yield self._queue.get(timeout=self._poll_interval)
                continue
            except queue.Empty:
                pass
            # finish() happens-after every publish(), so an empty queue
            # once finished means nothing else is coming.
            if self._finished.is_set() and self._queue.empty():
                break
        assert self._terminal is not None
        yield self._terminal


# ═══════════════════════════════════════════════════════════════════
#  Wire codec
# ═══════════════════════════════════════════════════════════════════


def encode_event(event: Event) -> str:
    """Compact JSON object for one event (no trailing delimiter)."""
    return json.dumps(event.to_wire(), separators=(",", ":"), ensure_ascii=False)


class EventDecoder:
    """Incremental parser for concatenated JSON objects.

    Usage::

        decoder = EventDecoder()
        for chunk in response:
            for event in decoder.feed(chunk):
                ...
        decoder.close()   # raises if a partial object is left over
    """

    def __init__(self) -> None:
        self._decoder = json.JSONDecoder()
        self._buffer = ""
        self._bytes = b""

    def feed(self, chunk: bytes | str) -> list[Event]:
        if isinstance(chunk, bytes):
            data = self._bytes + chunk
            try:
                text = data.decode("utf-8")
                self._bytes = b""
            except UnicodeDecodeError as e:
                # A multi-byte character split across reads
                text = data[: e.start].decode("utf-8")
                self._bytes = data[e.start:]
            chunk = text
        self._buffer += chunk
        return [event_from_wire(obj) for obj in self._parse()]

    def _parse(self) -> list[dict[str, Any]]:
        objects: list[dict[str, Any]] = []
        pos = 0
        buf = self._buffer
        while True:
            while pos < len(buf) and buf[pos].isspace():
                pos += 1
            if pos >= len(buf):
                break
            try:
                obj, end = self._decoder.raw_decode(buf, pos)
            except json.JSONDecodeError:
                # Incomplete object; wait for more data
                break
            objects.append(obj)
            pos = end
        self._buffer = buf[pos:]
        return objects

    def close(self) -> None:
        if self._buffer.strip() or self._bytes:
            raise ValueError(f"Truncated event stream: {self._buffer[:80]!r}")
