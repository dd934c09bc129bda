"""Scripted adapter for offline/demo runs and tests."""
from __future__ import annotations

from typing import Callable, List, Sequence
import itertools
import threading
import time

from ..errors import ModelUnavailableError
from ..stream import ChunkStream
from ..text import semantic_chunks
from .adapter import ModelAdapter, ModelOutput


class ScriptedAdapter(ModelAdapter):
    """Returns canned text, optionally after a delay, in chunks, or failing.

    ``responses`` may be a single string, a sequence cycled per call, or a
    callable ``(prompt) -> str``. ``release()`` lets tests end a blocked
    call early. Streaming calls return a :class:`ChunkStream` fed from a
    producer thread; ``fail_after`` makes that stream fail once the given
    number of chunks has been delivered.
    """

    def __init__(
        self,
        model_id: str,
        responses: str | Sequence[str] | Callable[[str], str] = "",
        delay: float = 0.0,
        fail: BaseException | str | None = None,
        stream: bool = False,
        available: bool = True,
        chunk_delay: float = 0.0,
        fail_after: int | None = None,
    ) -> None:
        self.model_id = model_id
        self.delay = delay
        self.fail = fail
        self.supports_streaming = stream
        self.available = available
        self.chunk_delay = chunk_delay
        self.fail_after = fail_after
        self.calls: List[str] = []
        self.call_times: List[tuple[float, float]] = []
        self._lock = threading.Lock()
        self._release = threading.Event()
        if callable(responses):
            self._respond = responses
        elif isinstance(responses, str):
            self._respond = lambda _prompt: responses
        else:
            cycle = itertools.cycle(list(responses) or [""])
            self._respond = lambda _prompt: next(cycle)

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def release(self) -> None:
        self._release.set()

    def is_available(self) -> bool:
        return self.available

    def call(self, prompt: str, session_id: str | None = None) -> ModelOutput:
        started = time.monotonic()
        with self._lock:
            self.calls.append(prompt)
        if self.delay:
            self._release.wait(self.delay)
        if self.fail is not None:
            with self._lock:
                self.call_times.append((started, time.monotonic()))
            if isinstance(self.fail, BaseException):
                raise self.fail
            raise ModelUnavailableError(self.model_id, str(self.fail))
        text = self._respond(prompt)
        with self._lock:
            self.call_times.append((started, time.monotonic()))
        if not self.supports_streaming:
            return text
        return self._stream(text)

    def _stream(self, text: str) -> ChunkStream:
        stream = ChunkStream()

        def produce() -> None:
            for index, chunk in enumerate(semantic_chunks(text) or [text]):
                if self.fail_after is not None and index >= self.fail_after:
                    stream.fail(ModelUnavailableError(self.model_id, "stream interrupted"))
                    return
                if self.chunk_delay:
                    time.sleep(self.chunk_delay)
                stream.put(chunk)
            stream.close()

        threading.Thread(target=produce, name=f"scripted-{self.model_id}", daemon=True).start()
        return stream
