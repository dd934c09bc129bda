"""Performance ledger: rolling per-model and per-strategy metrics.

Each subject keeps a bounded outcome history ordered by the outcome's own
timestamp. EWMA latency and quality are folded over that ordered history, so
recording A then B yields the same profile as B then A.
"""
from __future__ import annotations

from bisect import insort
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Tuple
import logging
import threading
import time

from .store import KeyValueStore

logger = logging.getLogger(__name__)

LEDGER_KEY = "ledger/outcomes"


@dataclass(frozen=True, order=True)
class Outcome:
    timestamp: float
    latency_ms: float
    quality: float
    ok: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ModelProfile:
    model_id: str
    latency_ms: float
    quality: float
    reliability: float
    successes: int = 0
    total: int = 0
    history: Tuple[Outcome, ...] = ()

    @property
    def score(self) -> float:
        return self.reliability * self.quality


@dataclass(frozen=True)
class StrategyStats:
    strategy: str
    success_rate: float
    quality: float
    latency_ms: float
    successes: int = 0
    total: int = 0


@dataclass
class _Track:
    history: List[Outcome] = field(default_factory=list)
    successes: int = 0
    total: int = 0


class PerformanceLedger:
    def __init__(
        self,
        alpha: float = 0.2,
        history_limit: int = 50,
        default_latency_ms: float = 3000.0,
        default_reliability: float = 0.8,
        default_quality: float = 0.7,
    ) -> None:
        if not 0.0 < alpha <= 1.0:
            raise ValueError("alpha must be in (0, 1]")
        self.alpha = alpha
        self.history_limit = max(1, int(history_limit))
        self.default_latency_ms = default_latency_ms
        self.default_reliability = default_reliability
        self.default_quality = default_quality
        self._models: Dict[str, _Track] = {}
        self._strategies: Dict[str, _Track] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PerformanceLedger":
        return cls(
            alpha=float(config.get("alpha", 0.2)),
            history_limit=int(config.get("history_limit", 50)),
            default_latency_ms=float(config.get("default_latency_ms", 3000)),
            default_reliability=float(config.get("default_reliability", 0.8)),
            default_quality=float(config.get("default_quality", 0.7)),
        )

    # -- recording -----------------------------------------------------

    def _record(self, table: Dict[str, _Track], subject: str, outcome: Outcome) -> None:
        with self._lock:
            track = table.setdefault(subject, _Track())
            insort(track.history, outcome)
            if len(track.history) > self.history_limit:
                del track.history[: len(track.history) - self.history_limit]
            track.total += 1
            if outcome.ok:
                track.successes += 1

    def record_model(
        self,
        model_id: str,
        ok: bool,
        latency_ms: float,
        quality: float = 0.0,
        timestamp: float | None = None,
    ) -> Outcome:
        outcome = Outcome(
            timestamp=time.time() if timestamp is None else timestamp,
            latency_ms=float(latency_ms),
            quality=_clamp(quality if ok else 0.0),
            ok=bool(ok),
        )
        self._record(self._models, model_id, outcome)
        return outcome

    def record_strategy(
        self,
        strategy: str,
        ok: bool,
        latency_ms: float,
        quality: float = 0.0,
        timestamp: float | None = None,
    ) -> Outcome:
        outcome = Outcome(
            timestamp=time.time() if timestamp is None else timestamp,
            latency_ms=float(latency_ms),
            quality=_clamp(quality if ok else 0.0),
            ok=bool(ok),
        )
        self._record(self._strategies, strategy, outcome)
        return outcome

    # -- reads ---------------------------------------------------------

    def _fold(self, history: List[Outcome]) -> Tuple[float, float]:
        latency = self.default_latency_ms
        quality = self.default_quality
        a = self.alpha
        for outcome in history:
            latency = a * outcome.latency_ms + (1 - a) * latency
            quality = a * outcome.quality + (1 - a) * quality
        return latency, quality

    def model(self, model_id: str) -> ModelProfile:
        with self._lock:
            track = self._models.get(model_id)
            history = tuple(track.history) if track else ()
            successes = track.successes if track else 0
            total = track.total if track else 0
        latency, quality = self._fold(list(history))
        reliability = successes / total if total else self.default_reliability
        return ModelProfile(model_id, latency, quality, reliability, successes, total, history)

    def models(self, model_ids: List[str] | None = None) -> Dict[str, ModelProfile]:
        if model_ids is None:
            with self._lock:
                model_ids = list(self._models)
        return {mid: self.model(mid) for mid in model_ids}

    def strategy(self, name: str) -> StrategyStats:
        with self._lock:
            track = self._strategies.get(name)
            history = list(track.history) if track else []
            successes = track.successes if track else 0
            total = track.total if track else 0
        latency, quality = self._fold(history)
        rate = successes / total if total else self.default_reliability
        return StrategyStats(name, rate, quality, latency, successes, total)

    def strategies(self) -> Dict[str, StrategyStats]:
        with self._lock:
            names = list(self._strategies)
        return {name: self.strategy(name) for name in names}

    def reset(self, subject: str | None = None) -> None:
        """Operator reset: one subject, or everything."""
        with self._lock:
            if subject is None:
                self._models.clear()
                self._strategies.clear()
            else:
                self._models.pop(subject, None)
                self._strategies.pop(subject, None)
        logger.info("Ledger reset (%s)", subject or "all")

    def stats(self) -> Dict[str, Any]:
        models = self.models()
        strategies = self.strategies()
        return {
            "alpha": self.alpha,
            "models": {
                mid: {
                    "latency_ms": round(p.latency_ms, 1),
                    "quality": round(p.quality, 3),
                    "reliability": round(p.reliability, 3),
                    "calls": p.total,
                }
                for mid, p in models.items()
            },
            "strategies": {
                name: {
                    "success_rate": round(s.success_rate, 3),
                    "quality": round(s.quality, 3),
                    "latency_ms": round(s.latency_ms, 1),
                    "runs": s.total,
                }
                for name, s in strategies.items()
            },
        }

    # -- persistence ---------------------------------------------------

    def save(self, store: KeyValueStore) -> None:
        def dump(table: Dict[str, _Track]) -> Dict[str, Any]:
            return {
                subject: {
                    "successes": track.successes,
                    "total": track.total,
                    "history": [o.to_dict() for o in track.history],
                }
                for subject, track in table.items()
            }

        with self._lock:
            payload = {"models": dump(self._models), "strategies": dump(self._strategies)}
        store.set(LEDGER_KEY, payload)

    def load(self, store: KeyValueStore) -> None:
        payload = store.get(LEDGER_KEY) or {}
        try:
            models = _load_table(payload.get("models", {}), self.history_limit)
            strategies = _load_table(payload.get("strategies", {}), self.history_limit)
        except (TypeError, ValueError, KeyError, AttributeError):
            logger.warning("Ignoring unreadable ledger state", exc_info=True)
            return
        with self._lock:
            self._models = models
            self._strategies = strategies


def _load_table(raw: Dict[str, Any], limit: int) -> Dict[str, _Track]:
    table: Dict[str, _Track] = {}
    for subject, entry in raw.items():
        history = sorted(Outcome(**item) for item in entry.get("history", []))[-limit:]
        table[subject] = _Track(history, int(entry.get("successes", 0)), int(entry.get("total", 0)))
    return table


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))
