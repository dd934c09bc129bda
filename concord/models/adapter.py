"""Uniform model adapter contract."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Union

ModelOutput = Union[str, Iterable[str]]


class ModelAdapter(ABC):
    """One text-generation capability: prompt in, text or chunks out.

    ``call`` may raise at any point, including midway through iterating a
    returned chunk iterable. ``is_available`` must be cheap; the selector
    calls it for every request.
    """

    model_id: str = ""
    supports_streaming: bool = False

    @abstractmethod
    def call(self, prompt: str, session_id: str | None = None) -> ModelOutput:
        ...

    def is_available(self) -> bool:
        return True

    def describe(self) -> dict:
        return {
            "id": self.model_id,
            "kind": type(self).__name__,
            "streaming": self.supports_streaming,
        }
