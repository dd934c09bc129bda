"""Explicit chunk stream with an end-of-stream sentinel and an error channel."""
from __future__ import annotations

from typing import Iterable, Iterator, List
import queue

from .text import semantic_chunks


class _EndOfStream:
    __slots__ = ()

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = _EndOfStream()


class StreamError:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


class ChunkStream:
    """Single-producer, single-consumer stream of text chunks.

    The producer calls :meth:`put` any number of times and then exactly one of
    :meth:`close` or :meth:`fail`. Iterating yields chunks until the sentinel;
    a failure is re-raised on the consumer side after the chunks that preceded
    it have been delivered.
    """

    def __init__(self) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._done = False

    def put(self, chunk: str) -> None:
        if self._done:
            raise RuntimeError("stream already terminated")
        if chunk:
            self._queue.put(chunk)

    def close(self) -> None:
        if not self._done:
            self._done = True
            self._queue.put(END_OF_STREAM)

    def fail(self, exc: BaseException) -> None:
        if not self._done:
            self._done = True
            self._queue.put(StreamError(exc))

    def get(self, timeout: float | None = None) -> object:
        """Next item: a chunk, ``END_OF_STREAM`` or a ``StreamError``."""
        return self._queue.get(timeout=timeout)

    def __iter__(self) -> Iterator[str]:
        while True:
            item = self._queue.get()
            if item is END_OF_STREAM:
                return
            if isinstance(item, StreamError):
                raise item.exc
            yield item  # type: ignore[misc]

    @classmethod
    def from_iterable(cls, chunks: Iterable[str]) -> "ChunkStream":
        stream = cls()
        try:
            for chunk in chunks:
                stream.put(chunk)
        except Exception as exc:
            stream.fail(exc)
        else:
            stream.close()
        return stream


def iter_output(output: object) -> Iterator[str]:
    """Normalize an adapter return value (string, stream or iterable) into chunks."""
    if isinstance(output, str):
        yield from (semantic_chunks(output) or ([output] if output else []))
        return
    if output is None:
        return
    for chunk in output:  # type: ignore[union-attr]
        if chunk:
            yield str(chunk)


def collect(output: object) -> List[str]:
    return list(iter_output(output))
