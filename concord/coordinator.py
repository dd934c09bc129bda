"""Execution coordinator: runs an ExecutionPlan's concurrency discipline.

Model calls run on a shared thread pool. The coordinating thread never
blocks on a single call: it waits on the pending futures with the nearest
deadline, so per-model timeouts, the plan budget, early completion and
cancellation are all decided on the coordinating side. A worker that
finishes after its result was already settled (timed out, abandoned or
cancelled) is dropped without emitting anything.
"""
from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import math
import threading
import time

from .errors import (
    AllModelsFailedError,
    ConcordError,
    ModelTimeoutError,
    ModelUnavailableError,
    RequestStoppedError,
)
from .events import Emitter, RequestControl, null_emitter
from .ledger import PerformanceLedger
from .models.registry import ModelRegistry
from .selector import ExecutionPlan
from .stream import iter_output
from .strategy import CASCADING, CONSENSUS, DIVERSITY, HYBRID, RACING, SEQUENTIAL
from . import text as textstats

logger = logging.getLogger(__name__)

PERSPECTIVE_PREFIXES = (
    "",
    "From a creative perspective: ",
    "From an analytical viewpoint: ",
    "Considering alternative approaches: ",
    "With a focus on innovation: ",
    "From a practical standpoint: ",
    "Exploring unconventional solutions: ",
)

TERMINAL = ("ok", "error", "timeout", "abandoned", "cancelled")


@dataclass
class ModelResult:
    model_id: str
    slot: str
    prompt: str = ""
    status: str = "pending"
    content: str = ""
    chunks: List[Tuple[float, str]] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0
    quality: float = 0.0
    confidence: float = 0.0
    live_weight: float = 0.0
    error_kind: str | None = None
    error: str | None = None
    stage: int | None = None
    variant: str | None = None
    novelty: float | None = None
    group: str | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def settled(self) -> bool:
        return self.status in TERMINAL

    @property
    def elapsed_ms(self) -> float:
        if not self.started_at:
            return 0.0
        end = self.finished_at or time.time()
        return (end - self.started_at) * 1000

    def to_dict(self, include_content: bool = True) -> Dict[str, Any]:
        data = {
            "model_id": self.model_id,
            "slot": self.slot,
            "status": self.status,
            "elapsed_ms": round(self.elapsed_ms, 1),
            "quality": round(self.quality, 3),
            "confidence": round(self.confidence, 3),
            "chunks": len(self.chunks),
            "error_kind": self.error_kind,
            "error": self.error,
        }
        for key in ("stage", "variant", "novelty", "group"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if include_content:
            data["content"] = self.content
        return data


@dataclass
class ConsensusData:
    clusters: List[List[str]]
    consensus_group: List[str]
    threshold: float
    live_weights: Dict[str, float] = field(default_factory=dict)

    @property
    def agreement(self) -> float:
        members = sum(len(c) for c in self.clusters)
        return len(self.consensus_group) / members if members else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clusters": self.clusters,
            "consensus_group": self.consensus_group,
            "threshold": self.threshold,
            "agreement": round(self.agreement, 3),
            "live_weights": {k: round(v, 3) for k, v in self.live_weights.items()},
        }


@dataclass
class ExecutionOutcome:
    strategy: str
    results: List[ModelResult]
    weights: Dict[str, float]
    started_at: float
    finished_at: float = 0.0
    consensus: ConsensusData | None = None
    groups: Dict[str, "ExecutionOutcome"] = field(default_factory=dict)

    @property
    def successful(self) -> List[ModelResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[ModelResult]:
        return [r for r in self.results if r.status in ("error", "timeout")]

    @property
    def elapsed_ms(self) -> float:
        return ((self.finished_at or time.time()) - self.started_at) * 1000

    def diagnostics(self) -> List[Dict[str, Any]]:
        return [r.to_dict(include_content=False) for r in self.results if not r.ok]


def result_confidence(content: str) -> float:
    """Structured answers of reasonable length read as more confident."""
    length = min(len(content) / 1000.0, 1.0)
    structured = "\n" in content.strip() or any(m in content for m in ("1.", "- ", "* ", ":"))
    if structured:
        return 0.7 + length * 0.3
    return 0.5 + length * 0.2


def result_quality(content: str, elapsed_ms: float) -> float:
    time_score = max(0.0, 1.0 - elapsed_ms / 10000.0)
    completeness = min(1.0, len(content) / 500.0)
    return round(0.3 * time_score + 0.4 * completeness + 0.3 * textstats.coherence(content), 4)


def chunk_weight(chunk: str, buffered: int, reliability: float) -> float:
    weight = 0.5
    if len(chunk) > 20:
        weight += 0.2
    if buffered > 100:
        weight += 0.1
    if reliability > 0.7:
        weight += 0.2
    return weight


def early_completion_target(n: int, fraction: float) -> int:
    return max(1, min(n, math.ceil(fraction * n - 1e-9)))


class ExecutionCoordinator:
    def __init__(
        self,
        registry: ModelRegistry,
        ledger: PerformanceLedger | None = None,
        max_workers: int = 12,
        similarity_threshold: float = 0.75,
        excerpt_chars: int = 500,
        poll_interval: float = 0.05,
        diversity_variants: int = 0,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.similarity_threshold = similarity_threshold
        self.excerpt_chars = excerpt_chars
        self.poll_interval = poll_interval
        self.diversity_variants = diversity_variants
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="concord-model")
        self._groups = ThreadPoolExecutor(max_workers=3, thread_name_prefix="concord-group")

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        registry: ModelRegistry,
        ledger: PerformanceLedger | None = None,
    ) -> "ExecutionCoordinator":
        return cls(
            registry,
            ledger,
            max_workers=int(config.get("max_workers", 12)),
            similarity_threshold=float(config.get("similarity_threshold", 0.75)),
            excerpt_chars=int(config.get("excerpt_chars", 500)),
            poll_interval=float(config.get("poll_interval_seconds", 0.05)),
            diversity_variants=int(config.get("diversity_variants", 0)),
        )

    def shutdown(self) -> None:
        self._groups.shutdown(wait=False, cancel_futures=True)
        self._pool.shutdown(wait=False, cancel_futures=True)

    # -- entry point -----------------------------------------------------

    def execute(
        self,
        plan: ExecutionPlan,
        prompt: str,
        control: RequestControl | None = None,
        emit: Emitter | None = None,
        session_id: str | None = None,
    ) -> ExecutionOutcome:
        """Run the plan; raises AllModelsFailedError or RequestStoppedError."""
        control = control or RequestControl(plan.request_id)
        emit = emit or null_emitter
        deadline = time.monotonic() + plan.plan_timeout_s
        outcome = self._run(plan.strategy, plan, list(plan.models), dict(plan.weights),
                            prompt, control, emit, deadline, session_id)
        outcome.finished_at = time.time()
        if control.cancelled:
            stopped = RequestStoppedError("request stopped", {"request_id": plan.request_id})
            stopped.outcome = outcome
            raise stopped
        if not outcome.successful:
            failed = AllModelsFailedError(outcome.diagnostics())
            failed.outcome = outcome
            raise failed
        logger.info(
            "Plan %s (%s) finished: %d ok, %d failed in %.0fms",
            plan.request_id, plan.strategy, len(outcome.successful), len(outcome.failed), outcome.elapsed_ms,
        )
        return outcome

    def _run(
        self,
        strategy: str,
        plan: ExecutionPlan,
        models: List[str],
        weights: Dict[str, float],
        prompt: str,
        control: RequestControl,
        emit: Emitter,
        deadline: float,
        session_id: str | None,
        group: str | None = None,
    ) -> ExecutionOutcome:
        args = (plan, models, weights, prompt, control, emit, deadline, session_id, group)
        if strategy == RACING:
            return self._racing(*args)
        if strategy == CONSENSUS:
            return self._consensus(*args)
        if strategy == CASCADING:
            return self._staged(*args, augment=True, strategy=CASCADING)
        if strategy == SEQUENTIAL:
            return self._staged(*args, augment=False, strategy=SEQUENTIAL)
        if strategy == DIVERSITY:
            return self._diversity(*args)
        if strategy == HYBRID:
            return self._hybrid(*args)
        raise ValueError(f"unknown strategy {strategy!r}")

    # -- model workers -----------------------------------------------------

    def _slot(self, model_id: str, group: str | None, suffix: str = "") -> str:
        slot = f"{model_id}{suffix}"
        return f"{group}:{slot}" if group else slot

    def _invoke(
        self,
        result: ModelResult,
        session_id: str | None,
        control: RequestControl,
        emit: Emitter,
    ) -> ModelResult:
        adapter = self.registry.get(result.model_id)
        reliability = self.ledger.model(result.model_id).reliability if self.ledger else 0.8
        with result._lock:
            if result.settled:
                return result
            result.status = "running"
            result.started_at = time.time()
        emit("model_started", self._describe(result))
        pieces: List[str] = []
        try:
            if adapter is None:
                raise ModelUnavailableError(result.model_id, "not registered")
            output = adapter.call(result.prompt, session_id)
            for chunk in iter_output(output):
                if control.cancelled or result.settled:
                    break
                pieces.append(chunk)
                buffered = sum(len(p) for p in pieces)
                weight = chunk_weight(chunk, buffered, reliability)
                with result._lock:
                    if result.settled:
                        break
                    result.chunks.append((time.time(), chunk))
                    result.live_weight = weight
                emit("model_chunk", {**self._describe(result), "chunk": chunk, "weight": weight})
            content = output if isinstance(output, str) else "".join(pieces)
        except Exception as exc:
            self._settle(result, "error", emit, exc=exc)
            return result
        if control.cancelled:
            self._settle(result, "cancelled", emit)
            return result
        if not content.strip():
            self._settle(result, "error", emit, exc=ModelUnavailableError(result.model_id, "empty response"))
            return result
        self._settle(result, "ok", emit, content=content)
        return result

    def _settle(
        self,
        result: ModelResult,
        status: str,
        emit: Emitter,
        content: str = "",
        exc: BaseException | None = None,
        kind: str | None = None,
    ) -> bool:
        """Move a result to a terminal status once; later attempts are ignored."""
        with result._lock:
            if result.settled:
                return False
            result.status = status
            result.finished_at = time.time()
            if status == "ok":
                result.content = content
                result.quality = result_quality(content, result.elapsed_ms)
                result.confidence = result_confidence(content)
            elif exc is not None or kind:
                result.error_kind = kind or (exc.kind if isinstance(exc, ConcordError) else "model_error")
                result.error = str(exc) if exc is not None else kind
        if status == "ok":
            emit("model_completed", {**self._describe(result), "elapsed_ms": round(result.elapsed_ms, 1),
                                     "quality": result.quality, "content": result.content})
        elif status in ("error", "timeout"):
            logger.info("Model %s %s: %s", result.slot, status, result.error)
            emit("model_error", {**self._describe(result), "kind": result.error_kind, "error": result.error})
        return True

    @staticmethod
    def _describe(result: ModelResult) -> Dict[str, Any]:
        data: Dict[str, Any] = {"model_id": result.model_id, "slot": result.slot}
        for key in ("stage", "variant", "group"):
            value = getattr(result, key)
            if value is not None:
                data[key] = value
        return data

    def _dispatch(
        self,
        results: Sequence[ModelResult],
        session_id: str | None,
        control: RequestControl,
        emit: Emitter,
    ) -> Dict[Future, ModelResult]:
        return {
            self._pool.submit(self._invoke, result, session_id, control, emit): result
            for result in results
        }

    def _await(
        self,
        futures: Dict[Future, ModelResult],
        model_timeout_s: float,
        deadline: float,
        control: RequestControl,
        emit: Emitter,
        need: Optional[int] = None,
    ) -> None:
        """Wait until all settle, ``need`` results succeed, or time runs out.

        A model's own timeout counts from the moment its call starts; a call
        still queued for a worker when the plan budget ends is abandoned, not
        timed out, since the model was never asked.
        """
        pending = set(futures)
        while pending:
            if control.cancelled:
                for future in pending:
                    future.cancel()
                    self._settle(futures[future], "cancelled", emit)
                return
            if need is not None and sum(1 for r in futures.values() if r.ok) >= need:
                for future in pending:
                    future.cancel()
                    self._settle(futures[future], "abandoned", emit)
                return
            now = time.monotonic()
            wall = time.time()
            for future in list(pending):
                result = futures[future]
                if result.started_at and wall - result.started_at >= model_timeout_s:
                    future.cancel()
                    self._settle(result, "timeout", emit, exc=ModelTimeoutError(result.model_id, model_timeout_s))
                    pending.discard(future)
            if now >= deadline:
                for future in pending:
                    future.cancel()
                    result = futures[future]
                    if result.started_at:
                        budget = wall - result.started_at
                        self._settle(result, "timeout", emit, exc=ModelTimeoutError(result.model_id, budget))
                    else:
                        self._settle(result, "abandoned", emit)
                return
            if not pending:
                return
            done, _ = wait(pending, timeout=min(self.poll_interval, deadline - now),
                           return_when=FIRST_COMPLETED)
            pending -= done

    # -- strategies --------------------------------------------------------

    def _racing(self, plan, models, weights, prompt, control, emit, deadline, session_id, group):
        started = time.time()
        results = [ModelResult(m, self._slot(m, group), prompt=prompt, group=group) for m in models]
        futures = self._dispatch(results, session_id, control, emit)
        need = early_completion_target(len(results), plan.early_completion)
        self._await(futures, plan.model_timeout_s, deadline, control, emit, need=need)
        return ExecutionOutcome(RACING, results, weights, started, time.time())

    def _consensus(self, plan, models, weights, prompt, control, emit, deadline, session_id, group):
        started = time.time()
        results = [ModelResult(m, self._slot(m, group), prompt=prompt, group=group) for m in models]
        futures = self._dispatch(results, session_id, control, emit)
        self._await(futures, plan.model_timeout_s, deadline, control, emit)
        outcome = ExecutionOutcome(CONSENSUS, results, weights, started, time.time())
        outcome.consensus = self.consensus_data(outcome.successful, weights)
        return outcome

    def consensus_data(self, results: Sequence[ModelResult], weights: Dict[str, float]) -> ConsensusData:
        clusters = textstats.cluster([r.content for r in results], self.similarity_threshold)
        named = [[results[i].slot for i in c] for c in clusters]

        def rank(cluster_idx: int) -> Tuple[int, float, int]:
            members = clusters[cluster_idx]
            total = sum(weights.get(results[i].model_id, 0.0) for i in members)
            return (-len(members), -total, members[0])

        best = min(range(len(clusters)), key=rank) if clusters else None
        return ConsensusData(
            clusters=named,
            consensus_group=named[best] if best is not None else [],
            threshold=self.similarity_threshold,
            live_weights={r.slot: r.live_weight for r in results},
        )

    def _staged(self, plan, models, weights, prompt, control, emit, deadline, session_id, group,
                augment: bool, strategy: str):
        started = time.time()
        order = self._history_order(models, weights) if augment else list(models)
        results: List[ModelResult] = []
        previous: str | None = None
        for index, model_id in enumerate(order):
            if control.cancelled or time.monotonic() >= deadline:
                break
            stage_prompt = prompt
            if augment and previous:
                stage_prompt = self._cascade_prompt(prompt, previous, last=index == len(order) - 1)
            result = ModelResult(model_id, self._slot(model_id, group, f"@{index}"),
                                 prompt=stage_prompt, stage=index, group=group)
            results.append(result)
            futures = self._dispatch([result], session_id, control, emit)
            self._await(futures, plan.model_timeout_s, deadline, control, emit)
            if result.ok:
                previous = result.content
        for model_id in order[len(results):]:
            skipped = ModelResult(model_id, self._slot(model_id, group, f"@{len(results)}"),
                                  stage=len(results), group=group)
            results.append(skipped)
            self._settle(skipped, "cancelled" if control.cancelled else "abandoned", emit)
        return ExecutionOutcome(strategy, results, weights, started, time.time())

    def _history_order(self, models: List[str], weights: Dict[str, float]) -> List[str]:
        if self.ledger is None:
            return list(models)
        scored = []
        for position, model_id in enumerate(models):
            profile = self.ledger.model(model_id)
            scored.append((-(profile.reliability * profile.quality), -weights.get(model_id, 0.0), position, model_id))
        return [item[-1] for item in sorted(scored)]

    def _cascade_prompt(self, prompt: str, previous: str, last: bool) -> str:
        excerpt = textstats.excerpt(previous, self.excerpt_chars)
        if last:
            return (
                f"{prompt}\n\nPrevious analysis: {excerpt}\n\n"
                "Please provide a final comprehensive response that builds upon this analysis."
            )
        return f"{prompt}\n\nPrevious response: {excerpt}\n\nPlease expand and improve upon this response."

    def _diversity(self, plan, models, weights, prompt, control, emit, deadline, session_id, group):
        started = time.time()
        count = self.diversity_variants or len(models)
        count = max(1, min(count, len(PERSPECTIVE_PREFIXES)))
        results = []
        for index in range(count):
            model_id = models[index % len(models)]
            prefix = PERSPECTIVE_PREFIXES[index]
            results.append(ModelResult(
                model_id,
                self._slot(model_id, group, f"#{index}"),
                prompt=f"{prefix}{prompt}",
                variant=prefix.strip().rstrip(":") or "base",
                group=group,
            ))
        futures = self._dispatch(results, session_id, control, emit)
        self._await(futures, plan.model_timeout_s, deadline, control, emit)
        seen: set = set()
        for result in results:
            if result.ok:
                result.novelty = round(textstats.novelty(result.content, seen), 4)
                seen |= textstats.token_set(result.content, drop_stopwords=True)
        return ExecutionOutcome(DIVERSITY, results, weights, started, time.time())

    def _hybrid(self, plan, models, weights, prompt, control, emit, deadline, session_id, group):
        started = time.time()
        partitions: Dict[str, List[str]] = {RACING: [], CONSENSUS: [], DIVERSITY: []}
        names = list(partitions)
        for index, model_id in enumerate(models):
            partitions[names[index % 3]].append(model_id)
        for name in names:
            if not partitions[name]:
                partitions[name] = [models[0]]

        futures = {}
        for name, members in partitions.items():
            sub_weights = _renormalize(weights, members)
            futures[name] = self._groups.submit(
                self._run, name, plan, members, sub_weights, prompt, control, emit, deadline, session_id, name,
            )
        groups = {name: future.result() for name, future in futures.items()}
        results = [r for outcome in groups.values() for r in outcome.results]
        outcome = ExecutionOutcome(HYBRID, results, weights, started, time.time(), groups=groups)
        outcome.consensus = groups[CONSENSUS].consensus
        return outcome


def _renormalize(weights: Dict[str, float], members: Sequence[str]) -> Dict[str, float]:
    subset = {m: weights.get(m, 0.0) for m in members}
    total = sum(subset.values())
    if total <= 0:
        return {m: 1.0 / len(members) for m in members}
    return {m: w / total for m, w in subset.items()}
