"""Event gateway: per-request event channels and operator commands.

Every request gets its own channel. Subscribers receive the events already
emitted (replay) followed by live events, and their iteration ends when the
request reaches a terminal event. Closed channels are kept for a while so a
late subscriber can still read the outcome.

Example:
    >>> gateway = EventGateway()
    >>> control = gateway.open("req-1")
    >>> event = gateway.emit("req-1", "model_started", {"model_id": "llama"})
    >>> [e.type for e in gateway.history("req-1")]
    ['model_started']
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, Iterator, List, Optional
import json
import logging
import queue
import threading
import time

from .audit import AuditLog

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "request_started",
    "strategy_selected",
    "model_started",
    "model_chunk",
    "model_completed",
    "model_error",
    "synthesis_fallback",
    "synthesized_response",
    "request_failed",
    "request_stopped",
    "request_paused",
    "request_resumed",
)

TERMINAL_EVENTS = frozenset({"synthesized_response", "request_failed", "request_stopped"})

Emitter = Callable[[str, Dict[str, Any]], None]


def null_emitter(event_type: str, data: Dict[str, Any]) -> None:
    return None


@dataclass
class Event:
    """A single request event."""

    type: str
    request_id: str
    seq: int
    timestamp: float
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)


class RequestControl:
    """Cancellation flag and advisory pause state for one request."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self.state = "running"
        self._cancel = threading.Event()
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def paused(self) -> bool:
        return self.state == "paused"

    def cancel(self) -> bool:
        with self._lock:
            if self.state in ("completed", "failed", "stopped"):
                return False
            self.state = "stopping"
            self._cancel.set()
            return True

    def pause(self) -> bool:
        with self._lock:
            if self.state != "running":
                return False
            self.state = "paused"
            return True

    def resume(self) -> bool:
        with self._lock:
            if self.state != "paused":
                return False
            self.state = "running"
            return True

    def finish(self, state: str) -> bool:
        """Enter a terminal state; completion is refused once a stop was accepted."""
        with self._lock:
            if state == "completed" and self._cancel.is_set():
                return False
            self.state = state
            return True


_CLOSED = object()


class Subscription:
    """Replay-then-live iterator over one request's events."""

    def __init__(self, channel: "_Channel", replay: List[Event], closed: bool) -> None:
        self._channel = channel
        self._queue: "queue.Queue[object]" = queue.Queue()
        for event in replay:
            self._queue.put(event)
        if closed:
            self._queue.put(_CLOSED)
        self.done = False

    def _push(self, item: object) -> None:
        self._queue.put(item)

    def get(self, timeout: float | None = None) -> Optional[Event]:
        """Next event, or None when the channel is closed or the wait timed out."""
        if self.done:
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self.done = True
            return None
        return item  # type: ignore[return-value]

    def __iter__(self) -> Iterator[Event]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        self._channel.unsubscribe(self)
        self.done = True


class _Channel:
    def __init__(self, request_id: str, history_limit: int) -> None:
        self.request_id = request_id
        self.control = RequestControl(request_id)
        self.history: List[Event] = []
        self.history_limit = history_limit
        self.subscribers: List[Subscription] = []
        self.closed = False
        self.seq = 0
        self.lock = threading.Lock()

    def subscribe(self) -> Subscription:
        with self.lock:
            sub = Subscription(self, list(self.history), self.closed)
            if not self.closed:
                self.subscribers.append(sub)
            return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self.lock:
            if sub in self.subscribers:
                self.subscribers.remove(sub)


class EventGateway:
    def __init__(
        self,
        journal: AuditLog | None = None,
        history_limit: int = 500,
        retain_closed: int = 100,
        journal_chunks: bool = False,
    ) -> None:
        self.journal = journal
        self.history_limit = history_limit
        self.retain_closed = retain_closed
        self.journal_chunks = journal_chunks
        self._channels: Dict[str, _Channel] = {}
        self._closed: "OrderedDict[str, _Channel]" = OrderedDict()
        self._lock = threading.Lock()
        self.total_events = 0

    def open(self, request_id: str) -> RequestControl:
        with self._lock:
            if request_id in self._channels:
                return self._channels[request_id].control
            self._closed.pop(request_id, None)
            channel = _Channel(request_id, self.history_limit)
            self._channels[request_id] = channel
            return channel.control

    def control(self, request_id: str) -> RequestControl | None:
        channel = self._find(request_id)
        return channel.control if channel else None

    def _find(self, request_id: str) -> _Channel | None:
        with self._lock:
            return self._channels.get(request_id) or self._closed.get(request_id)

    def emit(self, request_id: str, event_type: str, data: Dict[str, Any] | None = None) -> Event | None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown event type {event_type!r}")
        with self._lock:
            channel = self._channels.get(request_id)
        if channel is None:
            logger.debug("Dropping %s for closed or unknown request %s", event_type, request_id)
            return None
        with channel.lock:
            if channel.closed:
                return None
            channel.seq += 1
            event = Event(event_type, request_id, channel.seq, time.time(), dict(data or {}))
            channel.history.append(event)
            if len(channel.history) > channel.history_limit:
                del channel.history[0]
            for sub in channel.subscribers:
                sub._push(event)
            if event.terminal:
                channel.closed = True
                for sub in channel.subscribers:
                    sub._push(_CLOSED)
                channel.subscribers.clear()
        with self._lock:
            self.total_events += 1
        if self.journal is not None and (self.journal_chunks or event_type != "model_chunk"):
            self.journal.log(event_type, {"request_id": request_id, **event.data})
        if event.terminal:
            self._retire(request_id)
        return event

    def emitter(self, request_id: str) -> Emitter:
        def _emit(event_type: str, data: Dict[str, Any]) -> None:
            self.emit(request_id, event_type, data)
        return _emit

    def _retire(self, request_id: str) -> None:
        with self._lock:
            channel = self._channels.pop(request_id, None)
            if channel is None:
                return
            self._closed[request_id] = channel
            while len(self._closed) > self.retain_closed:
                self._closed.popitem(last=False)

    def subscribe(self, request_id: str) -> Subscription | None:
        channel = self._find(request_id)
        if channel is None:
            return None
        return channel.subscribe()

    def history(self, request_id: str) -> List[Event]:
        channel = self._find(request_id)
        if channel is None:
            return []
        with channel.lock:
            return list(channel.history)

    # -- operator commands -----------------------------------------------

    def _command(self, request_id: str, command: str) -> Dict[str, Any]:
        with self._lock:
            channel = self._channels.get(request_id)
        if channel is None:
            known = self._find(request_id)
            state = known.control.state if known else "unknown"
            return {"request_id": request_id, "command": command, "accepted": False, "state": state}
        control = channel.control
        if command == "stop":
            accepted = control.cancel()
        elif command == "pause":
            accepted = control.pause()
            if accepted:
                self.emit(request_id, "request_paused", {"state": control.state})
        elif command == "resume":
            accepted = control.resume()
            if accepted:
                self.emit(request_id, "request_resumed", {"state": control.state})
        else:
            raise ValueError(f"unknown command {command!r}")
        logger.info("Command %s on %s: %s", command, request_id, "accepted" if accepted else "ignored")
        return {"request_id": request_id, "command": command, "accepted": accepted, "state": control.state}

    def stop(self, request_id: str) -> Dict[str, Any]:
        return self._command(request_id, "stop")

    def pause(self, request_id: str) -> Dict[str, Any]:
        return self._command(request_id, "pause")

    def resume(self, request_id: str) -> Dict[str, Any]:
        return self._command(request_id, "resume")

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            active = {rid: ch.control.state for rid, ch in self._channels.items()}
            closed = len(self._closed)
        return {"active_requests": active, "closed_requests": closed, "total_events": self.total_events}
