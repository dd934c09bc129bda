"""Error taxonomy for Concord.

Every caller-visible failure carries a machine-readable ``kind`` so the HTTP
server, the CLI and the event gateway can report it without string matching.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List
import time


class ConcordError(Exception):
    """Base class for orchestration errors."""

    kind = "concord_error"

    def __init__(self, message: str, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.outcome: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class ValidationError(ConcordError, ValueError):
    """Request rejected before any side effect."""

    kind = "validation_error"


class NoAvailableModelsError(ConcordError):
    """No enabled model can serve the request."""

    kind = "no_available_models"


class ModelUnavailableError(ConcordError):
    """A single model failed at transport level."""

    kind = "model_unavailable"

    def __init__(self, model_id: str, message: str = "") -> None:
        super().__init__(message or f"{model_id} unavailable", {"model_id": model_id})
        self.model_id = model_id


class ModelTimeoutError(ConcordError):
    """A single model exceeded its call timeout."""

    kind = "model_timeout"

    def __init__(self, model_id: str, timeout_s: float) -> None:
        super().__init__(
            f"{model_id} timed out after {timeout_s:.1f}s",
            {"model_id": model_id, "timeout_s": timeout_s},
        )
        self.model_id = model_id


class AllModelsFailedError(ConcordError):
    """Every model in the plan failed; nothing to synthesize."""

    kind = "all_models_failed"

    def __init__(self, failures: List[Dict[str, Any]]) -> None:
        names = ", ".join(str(f.get("model_id")) for f in failures) or "none"
        super().__init__(f"All models failed: {names}", {"failures": failures})
        self.failures = failures


class AnalyzerUnavailableError(ConcordError):
    """The meta analyzer could not be reached or returned garbage."""

    kind = "analyzer_unavailable"


class RequestStoppedError(ConcordError):
    """The request was stopped by an operator command."""

    kind = "request_stopped"


@dataclass
class SynthesisFallbackEvent:
    """Non-fatal record: the arbiter failed and the deterministic fallback ran."""

    reason: str
    arbiter: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
