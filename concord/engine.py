"""Orchestration engine: one request from validation to synthesized answer."""
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional, Sequence
import logging
import threading
import time

from .analyzer import Analysis, ContextAnalyzer
from .audit import AuditLog
from .cache import ResponseCache
from .config import Config
from .coordinator import ExecutionCoordinator, ExecutionOutcome
from .errors import (
    AllModelsFailedError,
    ConcordError,
    NoAvailableModelsError,
    RequestStoppedError,
    ValidationError,
)
from .events import EventGateway
from .ledger import PerformanceLedger
from .meta import MetaOrchestrator, Recommendation
from .models.registry import ModelRegistry
from .request import Request
from .selector import ExecutionPlan, StrategySelector
from .store import KeyValueStore, MemoryStore, open_store
from .synthesis import SynthesisEngine, SynthesizedResponse

logger = logging.getLogger(__name__)


@dataclass
class EngineResult:
    request_id: str
    response: SynthesizedResponse | None = None
    error: Dict[str, Any] | None = None
    plan: Dict[str, Any] | None = None
    analysis: Dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.response is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "ok": self.ok,
            "response": self.response.to_dict() if self.response else None,
            "error": self.error,
            "plan": self.plan,
            "analysis": self.analysis,
        }


class ConcordEngine:
    def __init__(
        self,
        registry: ModelRegistry,
        ledger: PerformanceLedger | None = None,
        store: KeyValueStore | None = None,
        gateway: EventGateway | None = None,
        analyzer: ContextAnalyzer | None = None,
        selector: StrategySelector | None = None,
        coordinator: ExecutionCoordinator | None = None,
        synthesis: SynthesisEngine | None = None,
        meta: MetaOrchestrator | None = None,
        cache: ResponseCache | None = None,
        background_workers: int = 4,
        retain_runs: int = 200,
    ) -> None:
        self.registry = registry
        self.ledger = ledger or PerformanceLedger()
        self.store = store or MemoryStore()
        self.gateway = gateway or EventGateway()
        self.analyzer = analyzer or ContextAnalyzer()
        self.selector = selector or StrategySelector(self.ledger, registry)
        self.coordinator = coordinator or ExecutionCoordinator(registry, self.ledger)
        self.synthesis = synthesis or SynthesisEngine(registry)
        self.meta = meta or MetaOrchestrator(
            registry, self.ledger, self.selector, analyzer=self.analyzer, store=self.store
        )
        self.cache = cache or ResponseCache()
        self._background = ThreadPoolExecutor(max_workers=background_workers, thread_name_prefix="concord-run")
        self.retain_runs = retain_runs
        self._runs: Dict[str, Future] = {}
        self._runs_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: Config,
        registry: ModelRegistry | None = None,
        persist: bool = True,
    ) -> "ConcordEngine":
        registry = registry or ModelRegistry.from_config(
            config.models, availability_ttl=config.availability_ttl_seconds
        )
        store = open_store(config.data_dir) if persist else MemoryStore()
        ledger = PerformanceLedger.from_config(config.ledger)
        ledger.load(store)
        journal = None
        if persist and config.events.get("journal", True):
            journal = AuditLog(config.data_dir / "events.jsonl")
        gateway = EventGateway(
            journal=journal,
            history_limit=int(config.events.get("history_limit", 500)),
        )
        analyzer = ContextAnalyzer()
        selector = StrategySelector.from_config(config.selector, ledger, registry, config.coordinator)
        meta = MetaOrchestrator.from_config(config.meta, registry, ledger, selector, analyzer=analyzer, store=store)
        return cls(
            registry,
            ledger=ledger,
            store=store,
            gateway=gateway,
            analyzer=analyzer,
            selector=selector,
            coordinator=ExecutionCoordinator.from_config(config.coordinator, registry, ledger),
            synthesis=SynthesisEngine.from_config(config.synthesis, registry),
            meta=meta,
            cache=ResponseCache(
                ttl_seconds=float(config.cache.get("ttl_seconds", 300)),
                capacity=int(config.cache.get("capacity", 256)),
            ),
        )

    def shutdown(self) -> None:
        self._background.shutdown(wait=False, cancel_futures=True)
        self.coordinator.shutdown()
        self.synthesis.shutdown()

    # -- requests ----------------------------------------------------------

    @staticmethod
    def parse(payload: Request | Mapping[str, Any]) -> Request:
        if isinstance(payload, Request):
            return payload
        return Request.from_payload(payload)

    def submit(self, payload: Request | Mapping[str, Any]) -> Request:
        """Validate and start a request in the background; returns at once."""
        request = self.parse(payload)
        self.gateway.open(request.id)
        with self._runs_lock:
            self._runs[request.id] = self._background.submit(self._run_logged, request)
            while len(self._runs) > self.retain_runs:
                self._runs.pop(next(iter(self._runs)))
        return request

    def _run_logged(self, request: Request) -> EngineResult:
        try:
            return self.run(request)
        except Exception:
            logger.exception("Background run %s crashed", request.id)
            raise

    def wait(self, request_id: str, timeout: float | None = None) -> EngineResult | None:
        with self._runs_lock:
            future = self._runs.get(request_id)
        if future is None:
            return None
        return future.result(timeout=timeout)

    def run(self, payload: Request | Mapping[str, Any]) -> EngineResult:
        """Run one request; always returns a response or a structured error."""
        try:
            request = self.parse(payload)
        except ValidationError as exc:
            request_id = str(payload.get("id", "")) if isinstance(payload, Mapping) else ""
            return EngineResult(request_id=request_id, error=exc.to_dict())

        control = self.gateway.open(request.id)
        emit = self.gateway.emitter(request.id)

        cached = self.cache.get(request.cache_key)
        if cached is not None:
            if not control.finish("completed"):
                return self._finish_error(request, _stopped(request), "request_stopped", "stopped", None, None)
            response = replace(cached, cached=True, request_id=request.id)
            emit("synthesized_response", response.to_dict())
            logger.info("Request %s served from cache", request.id)
            return EngineResult(request_id=request.id, response=response)

        emit("request_started", request.to_dict())
        analysis: Analysis | None = None
        plan: ExecutionPlan | None = None
        try:
            analysis = self.analyzer.analyze(request.prompt, request.history, self.ledger.models())
            plan = self.selector.select(
                analysis,
                request.enabled_models,
                request_id=request.id,
                strategy_override=request.strategy,
                weight_overrides=request.weight_overrides,
                mode=request.mode,
            )
            emit("strategy_selected", {**plan.to_dict(), "analysis": analysis.to_dict()})
            outcome = self.coordinator.execute(plan, request.prompt, control, emit, request.session_id)
        except RequestStoppedError as exc:
            if exc.outcome is not None:
                self._record_models(exc.outcome)
            return self._finish_error(request, exc, "request_stopped", "stopped", analysis, plan)
        except AllModelsFailedError as exc:
            if exc.outcome is not None:
                self._record_models(exc.outcome)
            if plan is not None:
                self.ledger.record_strategy(plan.strategy, False, 0.0)
            return self._finish_error(request, exc, "request_failed", "failed", analysis, plan)
        except NoAvailableModelsError as exc:
            return self._finish_error(request, exc, "request_failed", "failed", analysis, plan)
        except Exception as exc:
            emit("request_failed", {"kind": "internal_error", "message": str(exc)})
            control.finish("failed")
            raise

        self._record_models(outcome)
        try:
            response = self.synthesis.synthesize(request.prompt, outcome, emit, request.session_id, control)
        except RequestStoppedError as exc:
            return self._finish_error(request, exc, "request_stopped", "stopped", analysis, plan)
        if not control.finish("completed"):
            return self._finish_error(request, _stopped(request), "request_stopped", "stopped", analysis, plan)
        response.request_id = request.id
        quality = response.quality.get("overall", 0.0)
        self.ledger.record_strategy(plan.strategy, True, outcome.elapsed_ms, quality)
        emit("synthesized_response", response.to_dict())

        try:
            self.meta.observe(request.prompt, analysis, plan, quality)
            self.ledger.save(self.store)
        except OSError:
            logger.warning("Could not persist state for %s", request.id, exc_info=True)
        self.cache.set(request.cache_key, response)
        return EngineResult(request.id, response=response, plan=plan.to_dict(), analysis=analysis.to_dict())

    def _record_models(self, outcome: ExecutionOutcome) -> None:
        for result in outcome.results:
            if result.status not in ("ok", "error", "timeout"):
                continue
            self.ledger.record_model(
                result.model_id,
                result.ok,
                result.elapsed_ms,
                result.quality,
                timestamp=result.finished_at or None,
            )

    def _finish_error(
        self,
        request: Request,
        exc: ConcordError,
        event_type: str,
        state: str,
        analysis: Analysis | None,
        plan: ExecutionPlan | None,
    ) -> EngineResult:
        error = exc.to_dict()
        logger.info("Request %s %s: %s", request.id, state, exc.message)
        self.gateway.emit(request.id, event_type, error)
        control = self.gateway.control(request.id)
        if control is not None:
            control.finish(state)
        return EngineResult(
            request.id,
            error=error,
            plan=plan.to_dict() if plan else None,
            analysis=analysis.to_dict() if analysis else None,
        )

    # -- operator commands ---------------------------------------------------

    def stop(self, request_id: str) -> Dict[str, Any]:
        return self.gateway.stop(request_id)

    def pause(self, request_id: str) -> Dict[str, Any]:
        return self.gateway.pause(request_id)

    def resume(self, request_id: str) -> Dict[str, Any]:
        return self.gateway.resume(request_id)

    # -- read side -------------------------------------------------------------

    def recommend(
        self,
        prompt: str,
        models: Sequence[str] | None = None,
        history: Sequence[Any] | None = None,
    ) -> Recommendation:
        return self.meta.recommend(prompt, models, history)

    def models(self) -> list[Dict[str, Any]]:
        listing = []
        for entry in self.registry.list_models():
            profile = self.ledger.model(entry["id"])
            listing.append({
                **entry,
                "latency_ms": round(profile.latency_ms, 1),
                "quality": round(profile.quality, 3),
                "reliability": round(profile.reliability, 3),
            })
        return listing

    def stats(self) -> Dict[str, Any]:
        return {
            "timestamp": time.time(),
            "ledger": self.ledger.stats(),
            "cache": self.cache.stats(),
            "events": self.gateway.stats(),
            "synthesis_calls": self.synthesis.calls,
            "meta": self.meta.analytics(),
        }

    def reset_ledger(self, subject: Optional[str] = None) -> None:
        self.ledger.reset(subject)
        self.ledger.save(self.store)


def _stopped(request: Request) -> RequestStoppedError:
    return RequestStoppedError("request stopped", {"request_id": request.id})
