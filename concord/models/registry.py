"""Model registry: adapters plus static capability cards."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Tuple
import logging
import threading
import time

from ..errors import ValidationError
from .adapter import ModelAdapter

logger = logging.getLogger(__name__)

CATEGORIES = ("reasoning", "creative", "coding", "math", "conversation", "analysis", "general")

DEFAULT_CAPABILITY = 0.6

# Static priors for well-known providers; config may override any of them.
DEFAULT_CARDS: Dict[str, Dict[str, float]] = {
    "claude": {"reasoning": 0.95, "creative": 0.9, "coding": 0.9, "math": 0.85,
               "conversation": 0.92, "analysis": 0.95, "general": 0.9},
    "gpt": {"reasoning": 0.9, "creative": 0.88, "coding": 0.9, "math": 0.88,
            "conversation": 0.9, "analysis": 0.88, "general": 0.92},
    "gemini": {"reasoning": 0.85, "creative": 0.85, "coding": 0.8, "math": 0.85,
               "conversation": 0.82, "analysis": 0.85, "general": 0.85},
    "deepseek": {"reasoning": 0.88, "creative": 0.7, "coding": 0.92, "math": 0.9,
                 "conversation": 0.72, "analysis": 0.85, "general": 0.78},
    "mistral": {"reasoning": 0.78, "creative": 0.75, "coding": 0.8, "math": 0.72,
                "conversation": 0.78, "analysis": 0.76, "general": 0.78},
    "llama": {"reasoning": 0.75, "creative": 0.72, "coding": 0.72, "math": 0.68,
              "conversation": 0.8, "analysis": 0.72, "general": 0.76},
}


@dataclass
class ModelCard:
    model_id: str
    capabilities: Dict[str, float]
    meta: Dict[str, Any] = field(default_factory=dict)

    def capability(self, category: str) -> float:
        return self.capabilities.get(category, self.capabilities.get("general", DEFAULT_CAPABILITY))

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.model_id, "capabilities": dict(self.capabilities), **self.meta}


def _validate_capabilities(model_id: str, capabilities: Dict[str, Any]) -> Dict[str, float]:
    cleaned: Dict[str, float] = {}
    for category, value in (capabilities or {}).items():
        if category not in CATEGORIES:
            raise ValidationError(f"{model_id}: unknown capability category {category!r}")
        try:
            score = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{model_id}: capability {category} is not a number") from None
        if not 0.0 <= score <= 1.0:
            raise ValidationError(f"{model_id}: capability {category}={score} outside [0, 1]")
        cleaned[category] = score
    return cleaned


class ModelRegistry:
    """Adapters keyed by model id, validated when registered rather than when called.

    Availability checks are remembered for ``availability_ttl`` seconds so that
    selection and recommendation do not hit every provider on each request.
    """

    def __init__(self, availability_ttl: float = 10.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.availability_ttl = availability_ttl
        self._clock = clock
        self._adapters: Dict[str, ModelAdapter] = {}
        self._cards: Dict[str, ModelCard] = {}
        self._checks: Dict[str, Tuple[bool, float]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, models: Iterable[Dict[str, Any]], availability_ttl: float = 10.0) -> "ModelRegistry":
        registry = cls(availability_ttl=availability_ttl)
        for spec in models or []:
            adapter = build_adapter(spec)
            registry.register(adapter, spec.get("capabilities"), meta={"kind": spec.get("kind")})
        return registry

    def register(
        self,
        adapter: ModelAdapter,
        capabilities: Dict[str, Any] | None = None,
        meta: Dict[str, Any] | None = None,
    ) -> ModelCard:
        model_id = getattr(adapter, "model_id", "")
        if not model_id or not isinstance(model_id, str):
            raise ValidationError("adapter has no model_id")
        if not callable(getattr(adapter, "call", None)):
            raise ValidationError(f"{model_id}: adapter has no call()")
        base = dict(DEFAULT_CARDS.get(model_id, {}))
        base.update(_validate_capabilities(model_id, capabilities or {}))
        card = ModelCard(model_id, base, dict(meta or {}))
        with self._lock:
            if model_id in self._adapters:
                raise ValidationError(f"model {model_id!r} already registered")
            self._adapters[model_id] = adapter
            self._cards[model_id] = card
        logger.debug("Registered model %s (%s)", model_id, type(adapter).__name__)
        return card

    def get(self, model_id: str) -> ModelAdapter | None:
        return self._adapters.get(model_id)

    def card(self, model_id: str) -> ModelCard | None:
        return self._cards.get(model_id)

    def ids(self) -> List[str]:
        return list(self._adapters)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    def available(self, model_ids: Iterable[str]) -> List[str]:
        """Registered ids from ``model_ids`` whose adapter answers its availability check."""
        ready = []
        for model_id in model_ids:
            adapter = self._adapters.get(model_id)
            if adapter is not None and self._check(model_id, adapter):
                ready.append(model_id)
        return ready

    def _check(self, model_id: str, adapter: ModelAdapter) -> bool:
        now = self._clock()
        with self._lock:
            cached = self._checks.get(model_id)
        if cached is not None and now - cached[1] < self.availability_ttl:
            return cached[0]
        try:
            ok = bool(adapter.is_available())
        except Exception:
            logger.warning("Availability check failed for %s", model_id, exc_info=True)
            ok = False
        with self._lock:
            self._checks[model_id] = (ok, now)
        return ok

    def list_models(self) -> List[Dict[str, Any]]:
        return [
            {**self._cards[mid].to_dict(), **self._adapters[mid].describe()}
            for mid in self._adapters
        ]


def build_adapter(spec: Dict[str, Any]) -> ModelAdapter:
    """Construct an adapter from a config entry."""
    kind = spec.get("kind", "scripted")
    model_id = spec.get("id")
    if not model_id:
        raise ValidationError(f"model entry missing id: {spec!r}")
    if kind == "ollama":
        from .ollama import OllamaAdapter
        return OllamaAdapter(
            model_id,
            model=spec.get("model", model_id),
            base_url=spec.get("base_url", "http://localhost:11434"),
            temperature=float(spec.get("temperature", 0.2)),
            timeout=float(spec.get("timeout", 120)),
            stream=bool(spec.get("stream", True)),
            system=spec.get("system"),
        )
    if kind == "gemini":
        from .gemini import GeminiAdapter
        return GeminiAdapter(
            model_id,
            model=spec.get("model", "2.5-flash"),
            api_key=spec.get("api_key"),
            temperature=float(spec.get("temperature", 0.2)),
            timeout=float(spec.get("timeout", 120)),
            system=spec.get("system"),
        )
    if kind == "scripted":
        from .scripted import ScriptedAdapter
        return ScriptedAdapter(
            model_id,
            responses=spec.get("responses", f"[{model_id}] scripted response."),
            delay=float(spec.get("delay", 0.0)),
            stream=bool(spec.get("stream", False)),
        )
    raise ValidationError(f"unknown adapter kind {kind!r} for {model_id}")
