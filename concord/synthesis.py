"""Synthesis engine: combines per-model results into one answer."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import time

from .coordinator import ExecutionOutcome, ModelResult
from .errors import RequestStoppedError, SynthesisFallbackEvent
from .events import Emitter, RequestControl, null_emitter
from .models.registry import ModelRegistry
from .strategy import CONSENSUS, DIVERSITY, HYBRID
from .stream import collect
from . import text as textstats

logger = logging.getLogger(__name__)

FALLBACK_HEADER = "Based on multiple AI perspectives:"

ARBITER_INSTRUCTIONS = """**Synthesis Instructions:**
1. Create a response that is SUPERIOR to any individual response above
2. Combine the best insights from each response while eliminating redundancies
3. Resolve any contradictions intelligently
4. Maintain the original intent of the user's prompt
5. Be comprehensive yet concise
6. Do not mention or name the individual sources

**Output Format:** Provide only the synthesized response - no meta-commentary about the process."""


@dataclass
class SynthesizedResponse:
    text: str
    strategy: str
    method: str
    models: List[str]
    weights: Dict[str, float]
    quality: Dict[str, float] = field(default_factory=dict)
    fallback_events: List[SynthesisFallbackEvent] = field(default_factory=list)
    partial_failures: List[Dict[str, Any]] = field(default_factory=list)
    consensus: Dict[str, Any] | None = None
    perspectives: List[str] = field(default_factory=list)
    request_id: str = ""
    elapsed_ms: float = 0.0
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "text": self.text,
            "strategy": self.strategy,
            "method": self.method,
            "models": list(self.models),
            "weights": {k: round(v, 4) for k, v in self.weights.items()},
            "quality": self.quality,
            "fallback_events": [e.to_dict() for e in self.fallback_events],
            "partial_failures": self.partial_failures,
            "consensus": self.consensus,
            "perspectives": self.perspectives,
            "elapsed_ms": round(self.elapsed_ms, 1),
            "cached": self.cached,
        }


def consensus_terms(contents: Sequence[str], per_response: int = 20) -> Tuple[List[str], List[str]]:
    """Terms backed by more than half the responses, and terms only one response uses."""
    counts: Dict[str, int] = {}
    order: List[str] = []
    for content in contents:
        for term in textstats.keywords(content, limit=per_response):
            if term not in counts:
                order.append(term)
            counts[term] = counts.get(term, 0) + 1
    n = len(contents)
    agreement = [t for t in order if counts[t] * 2 > n]
    disagreement = [t for t in order if counts[t] == 1] if n > 1 else []
    return agreement[:10], disagreement[:10]


def quality_metrics(prompt: str, sources: Sequence[ModelResult], output: str) -> Dict[str, float]:
    avg_conf = sum(r.confidence for r in sources) / len(sources) if sources else 0.0
    completeness = min(1.0, textstats.coverage(output, textstats.keywords(prompt)) * 1.2)
    coherence = textstats.coherence(output)
    out_tokens = textstats.token_set(output, drop_stopwords=True)
    seen = set()
    for r in sources:
        seen |= textstats.token_set(r.content, drop_stopwords=True)
    uniqueness = len(out_tokens - seen) / len(out_tokens) if out_tokens else 0.0
    overall = 0.3 * avg_conf + 0.3 * completeness + 0.2 * coherence + 0.2 * uniqueness
    return {
        "avg_confidence": round(avg_conf, 4),
        "completeness": round(completeness, 4),
        "coherence": round(coherence, 4),
        "uniqueness": round(uniqueness, 4),
        "overall": round(overall, 4),
        "response_count": len(sources),
    }


class SynthesisEngine:
    def __init__(
        self,
        registry: ModelRegistry,
        arbiter: Optional[str] = None,
        max_perspectives: int = 3,
        arbiter_timeout: float = 60.0,
        poll_interval: float = 0.05,
    ) -> None:
        self.registry = registry
        self.arbiter = arbiter
        self.max_perspectives = max_perspectives
        self.arbiter_timeout = arbiter_timeout
        self.poll_interval = poll_interval
        self.calls = 0
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="concord-arbiter")

    @classmethod
    def from_config(cls, config: Dict[str, Any], registry: ModelRegistry) -> "SynthesisEngine":
        return cls(
            registry,
            arbiter=config.get("arbiter") or None,
            max_perspectives=int(config.get("max_perspectives", 3)),
            arbiter_timeout=float(config.get("arbiter_timeout_seconds", 60)),
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def synthesize(
        self,
        prompt: str,
        outcome: ExecutionOutcome,
        emit: Emitter | None = None,
        session_id: str | None = None,
        control: RequestControl | None = None,
    ) -> SynthesizedResponse:
        """Combine successful results; raises RequestStoppedError once ``control`` is cancelled."""
        emit = emit or null_emitter
        _check_stopped(control)
        self.calls += 1
        started = time.monotonic()
        weights = outcome.weights
        successful = outcome.successful
        if not successful:
            raise ValueError("nothing to synthesize")

        response = SynthesizedResponse(
            text="",
            strategy=outcome.strategy,
            method="passthrough",
            models=list(dict.fromkeys(r.model_id for r in successful)),
            weights=dict(weights),
            partial_failures=outcome.diagnostics(),
            consensus=outcome.consensus.to_dict() if outcome.consensus else None,
        )

        if len(successful) == 1:
            only = successful[0]
            response.text = only.content
            response.quality = quality_metrics(prompt, successful, only.content)
            response.elapsed_ms = (time.monotonic() - started) * 1000
            return response

        sources = successful
        if outcome.strategy == DIVERSITY:
            sources = self.select_perspectives(successful)
            response.perspectives = [r.variant or r.slot for r in sources]
            arbiter_prompt = self.diversity_prompt(prompt, sources)
        elif outcome.strategy == HYBRID and outcome.groups:
            arbiter_prompt, group_scores = self.meta_prompt(prompt, outcome)
            if response.consensus is None:
                response.consensus = {}
            response.consensus["group_scores"] = group_scores
        else:
            evidence = None
            if outcome.strategy == CONSENSUS:
                agreement, disagreement = consensus_terms([r.content for r in successful])
                evidence = (agreement, disagreement)
                response.consensus = {**(response.consensus or {}),
                                      "agreement": agreement, "disagreement": disagreement}
            arbiter_prompt = self.arbiter_prompt(prompt, outcome.strategy, sources, weights, evidence)

        text, reason = self._call_arbiter(arbiter_prompt, session_id, control)
        if text is None:
            event = SynthesisFallbackEvent(reason=reason or "arbiter failed", arbiter=self.arbiter)
            response.fallback_events.append(event)
            emit("synthesis_fallback", event.to_dict())
            logger.info("Synthesis fallback (%s): %s", outcome.strategy, event.reason)
            response.text = self.fallback(sources, weights)
            response.method = "fallback"
        else:
            response.text = text
            response.method = "arbiter"
        response.models = list(dict.fromkeys(r.model_id for r in sources))
        response.quality = quality_metrics(prompt, sources, response.text)
        response.elapsed_ms = (time.monotonic() - started) * 1000
        return response

    # -- arbiter -------------------------------------------------------------

    def _call_arbiter(
        self,
        prompt: str,
        session_id: str | None,
        control: RequestControl | None = None,
    ) -> Tuple[Optional[str], Optional[str]]:
        if not self.arbiter:
            return None, "no arbiter configured"
        adapter = self.registry.get(self.arbiter)
        if adapter is None:
            return None, f"arbiter {self.arbiter} not registered"
        future = self._executor.submit(lambda: "".join(collect(adapter.call(prompt, session_id))))
        deadline = time.monotonic() + self.arbiter_timeout
        while not future.done():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                return None, f"arbiter timed out after {self.arbiter_timeout:.0f}s"
            wait([future], timeout=min(self.poll_interval, remaining))
            if control is not None and control.cancelled:
                future.cancel()
                _check_stopped(control)
        try:
            text = future.result()
        except Exception as exc:
            logger.warning("Arbiter %s failed", self.arbiter, exc_info=True)
            return None, f"arbiter error: {exc}"
        if not text.strip():
            return None, "arbiter returned an empty response"
        return text, None

    def arbiter_prompt(
        self,
        prompt: str,
        strategy: str,
        results: Sequence[ModelResult],
        weights: Dict[str, float],
        evidence: Tuple[List[str], List[str]] | None = None,
    ) -> str:
        parts = [
            "# Response Synthesis Task",
            "",
            f"**Original User Prompt:** {prompt}",
            "",
            "**Your Role:** Synthesize the following responses into a single, superior answer "
            "that leverages the strengths of each.",
            "",
            f"**Orchestration Strategy:** {strategy.upper()}",
            "",
            "**Individual Responses:**",
        ]
        for index, result in enumerate(_by_weight(results, weights), start=1):
            weight = weights.get(result.model_id, 0.0)
            parts.extend([
                "",
                f"## Response {index} (Confidence: {result.confidence * 100:.1f}%, Weight: {weight:.2f})",
                result.content,
                "",
                "---",
            ])
        if evidence is not None:
            agreement, disagreement = evidence
            parts.extend([
                "",
                "**Consensus Analysis:**",
                f"- Agreement Points: {', '.join(agreement) or 'none'}",
                f"- Disagreements: {', '.join(disagreement) or 'none'}",
            ])
        parts.extend(["", ARBITER_INSTRUCTIONS])
        return "\n".join(parts)

    def select_perspectives(self, results: Sequence[ModelResult]) -> List[ModelResult]:
        """Greedy pick of the results that add the most unseen content."""
        remaining = list(results)
        chosen: List[ModelResult] = []
        seen: set = set()
        while remaining and len(chosen) < self.max_perspectives:
            best = max(
                remaining,
                key=lambda r: (textstats.novelty(r.content, seen), -remaining.index(r)),
            )
            chosen.append(best)
            remaining.remove(best)
            seen |= textstats.token_set(best.content, drop_stopwords=True)
        return chosen

    def diversity_prompt(self, prompt: str, results: Sequence[ModelResult]) -> str:
        parts = [
            "# Perspective Synthesis Task",
            "",
            f"**Original User Prompt:** {prompt}",
            "",
            "The following are distinct perspectives on the prompt. Keep each distinct angle visible "
            "in the final answer.",
        ]
        for index, result in enumerate(results, start=1):
            label = result.variant or "base"
            parts.extend(["", f"## Perspective {index} ({label})", result.content, "", "---"])
        parts.extend(["", ARBITER_INSTRUCTIONS])
        return "\n".join(parts)

    def meta_prompt(self, prompt: str, outcome: ExecutionOutcome) -> Tuple[str, Dict[str, float]]:
        keywords = textstats.keywords(prompt)
        scores: Dict[str, float] = {}
        best: Dict[str, ModelResult] = {}
        for name, group in outcome.groups.items():
            ok = group.successful
            if not ok:
                continue
            avg_conf = sum(r.confidence for r in ok) / len(ok)
            completeness = sum(textstats.coverage(r.content, keywords) for r in ok) / len(ok)
            scores[name] = avg_conf * completeness
            best[name] = max(ok, key=lambda r: (group.weights.get(r.model_id, 0.0) * r.confidence, -ok.index(r)))
        total = sum(scores.values())
        normalized = {k: (v / total if total else 1.0 / len(scores)) for k, v in scores.items()}
        parts = [
            "# Meta-Synthesis Task",
            "",
            f"**Original User Prompt:** {prompt}",
            "",
            "Each section below is the output of a different orchestration method. "
            "Weigh them by the given scores.",
        ]
        for name, weight in sorted(normalized.items(), key=lambda kv: -kv[1]):
            parts.extend(["", f"## {name.capitalize()} Output (Score: {weight:.2f})", best[name].content, "", "---"])
        parts.extend(["", ARBITER_INSTRUCTIONS])
        return "\n".join(parts), {k: round(v, 4) for k, v in normalized.items()}

    def fallback(self, results: Sequence[ModelResult], weights: Dict[str, float]) -> str:
        """Deterministic concatenation by descending weight."""
        sections = [FALLBACK_HEADER]
        for index, result in enumerate(_by_weight(results, weights), start=1):
            weight = weights.get(result.model_id, 0.0)
            sections.append(f"### Perspective {index} (weight {weight:.2f})\n\n{result.content.strip()}")
        return "\n\n".join(sections)


def _by_weight(results: Sequence[ModelResult], weights: Dict[str, float]) -> List[ModelResult]:
    indexed = list(enumerate(results))
    indexed.sort(key=lambda item: (-weights.get(item[1].model_id, 0.0), -item[1].confidence, item[0]))
    return [r for _, r in indexed]


def _check_stopped(control: RequestControl | None) -> None:
    if control is not None and control.cancelled:
        raise RequestStoppedError("request stopped", {"request_id": control.request_id})
