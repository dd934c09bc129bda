"""Inbound orchestration request."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Tuple
import hashlib
import json
import re
import uuid

from .errors import ValidationError
from .strategy import STRATEGIES

MODES = ("auto", "simple", "default", "expert")

_WS_RE = re.compile(r"\s+")


def normalize_prompt(prompt: str) -> str:
    return _WS_RE.sub(" ", prompt or "").strip()


def prompt_fingerprint(prompt: str) -> str:
    return hashlib.sha256(normalize_prompt(prompt).encode("utf-8")).hexdigest()[:16]


def _enabled_models(raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, Mapping):
        return tuple(str(k) for k, v in raw.items() if v)
    if isinstance(raw, str):
        return tuple(m.strip() for m in raw.split(",") if m.strip())
    if isinstance(raw, (list, tuple)):
        return tuple(str(m) for m in raw if m)
    raise ValidationError("models must be a list or an enablement map")


@dataclass(frozen=True)
class Request:
    prompt: str
    enabled_models: Tuple[str, ...]
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    weights: Tuple[Tuple[str, float], ...] = ()
    strategy: str | None = None
    session_id: str | None = None
    mode: str = "auto"
    history: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not normalize_prompt(self.prompt):
            raise ValidationError("prompt must not be empty")
        if not self.enabled_models:
            raise ValidationError("at least one model must be enabled")
        if self.mode not in MODES:
            raise ValidationError(f"mode must be one of {', '.join(MODES)}")
        if self.strategy is not None and self.strategy not in STRATEGIES:
            raise ValidationError(f"unknown strategy {self.strategy!r}")
        for model_id, weight in self.weights:
            if weight < 0:
                raise ValidationError(f"weight for {model_id} must be non-negative")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Request":
        if not isinstance(payload, Mapping):
            raise ValidationError("request body must be an object")
        prompt = payload.get("prompt")
        if not isinstance(prompt, str):
            raise ValidationError("prompt must be a string")
        raw_weights = payload.get("weights") or {}
        if not isinstance(raw_weights, Mapping):
            raise ValidationError("weights must be a map of model id to number")
        try:
            weights = tuple(sorted((str(k), float(v)) for k, v in raw_weights.items()))
        except (TypeError, ValueError):
            raise ValidationError("weights must be numeric") from None
        history = payload.get("history") or ()
        if isinstance(history, str) or not isinstance(history, (list, tuple)):
            raise ValidationError("history must be a list of turns")
        kwargs: Dict[str, Any] = {}
        if payload.get("id"):
            kwargs["id"] = str(payload["id"])
        return cls(
            prompt=prompt,
            enabled_models=_enabled_models(payload.get("models")),
            weights=weights,
            strategy=payload.get("strategy") or None,
            session_id=payload.get("session_id"),
            mode=payload.get("mode") or "auto",
            history=tuple(str(h) for h in history),
            **kwargs,
        )

    @property
    def weight_overrides(self) -> Dict[str, float]:
        return dict(self.weights)

    @property
    def fingerprint(self) -> str:
        return prompt_fingerprint(self.prompt)

    @property
    def cache_key(self) -> str:
        """Identity of the work, ignoring request id and session."""
        body = json.dumps(
            {
                "prompt": normalize_prompt(self.prompt),
                "models": sorted(set(self.enabled_models)),
                "weights": list(self.weights),
                "strategy": self.strategy,
                "mode": self.mode,
                "history": list(self.history),
            },
            sort_keys=True,
        )
        return hashlib.sha256(body.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "models": list(self.enabled_models),
            "weights": self.weight_overrides,
            "strategy": self.strategy,
            "session_id": self.session_id,
            "mode": self.mode,
            "history_turns": len(self.history),
        }
