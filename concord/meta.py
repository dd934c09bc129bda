"""Meta-orchestrator: explainable, confidence-gated recommendations.

Wraps analysis and selection into a recommendation with a confidence score,
a human-readable reasoning string and a decision tree. Every recommendation
is appended to a bounded decision log and folded into a per-category
learning pattern; once a category has enough scored decisions, its best
historical pattern overrides the default model and strategy choice.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
import json
import logging
import re
import threading
import uuid

from .analyzer import CATEGORIES, Analysis, ContextAnalyzer
from .cache import ResponseCache
from .errors import AnalyzerUnavailableError
from .ledger import PerformanceLedger
from .models.registry import ModelRegistry
from .request import normalize_prompt, prompt_fingerprint
from .selector import ExecutionPlan, StrategySelector
from .store import KeyValueStore, MemoryStore
from .strategy import CASCADING, CONSENSUS, RACING, STRATEGIES
from .stream import collect

logger = logging.getLogger(__name__)

DECISIONS_KEY = "meta/decisions"
PATTERN_PREFIX = "meta/patterns/"

STRATEGY_ALIASES = {
    "parallel": RACING,
    "weighted": CONSENSUS,
    "adaptive": CASCADING,
}

ANALYSIS_PROMPT = """# Prompt Analysis Task

You analyze prompts to recommend the best models and orchestration strategy.

**Prompt to analyze:** "{prompt}"

**Categories:** reasoning, creative, coding, math, conversation, analysis, general
**Strategies:** racing, consensus, cascading, diversity, hybrid, sequential

Reply with JSON only:
{{
  "category": {{"name": "primary_category_name", "confidence": 0.85}},
  "complexity": "low|medium|high",
  "intent": "brief description of user intent",
  "keywords": ["key", "relevant", "words"],
  "recommended_strategy": "racing|consensus|cascading|diversity|hybrid|sequential",
  "reasoning": "Brief explanation of your analysis"
}}"""

_JSON_RE = re.compile(r"\{.*\}", re.S)


@dataclass
class Decision:
    id: str
    fingerprint: str
    category: str
    complexity: str
    models: List[str]
    weights: Dict[str, float]
    strategy: str
    confidence: float
    auto_apply: bool
    timestamp: str
    source: str = "heuristic"
    success_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Decision":
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in fields})


@dataclass
class Recommendation:
    decision_id: str
    category: str
    complexity: str
    models: List[str]
    weights: Dict[str, float]
    strategy: str
    confidence: float
    auto_apply: bool
    reasoning: str
    decision_tree: Dict[str, Any]
    analysis: Dict[str, Any]
    source: str = "heuristic"
    intent: str = ""
    learned: bool = False
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MetaOrchestrator:
    def __init__(
        self,
        registry: ModelRegistry,
        ledger: PerformanceLedger,
        selector: StrategySelector,
        analyzer: ContextAnalyzer | None = None,
        store: KeyValueStore | None = None,
        confidence_threshold: float = 0.8,
        cache_size: int = 100,
        max_decisions: int = 1000,
        trim_decisions_to: int = 500,
        max_pattern_decisions: int = 100,
        trim_pattern_to: int = 50,
        learning_min_samples: int = 5,
        learning_enabled: bool = True,
        analyzer_model: Optional[str] = None,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.selector = selector
        self.analyzer = analyzer or ContextAnalyzer()
        self.store = store or MemoryStore()
        self.confidence_threshold = confidence_threshold
        self.max_decisions = max_decisions
        self.trim_decisions_to = trim_decisions_to
        self.max_pattern_decisions = max_pattern_decisions
        self.trim_pattern_to = trim_pattern_to
        self.learning_min_samples = learning_min_samples
        self.learning_enabled = learning_enabled
        self.analyzer_model = analyzer_model
        self._cache = ResponseCache(ttl_seconds=0, capacity=cache_size)
        self._lock = threading.RLock()
        self._decisions: List[Decision] = []
        self._patterns: Dict[str, Dict[str, Any]] = {}
        self._load()

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        registry: ModelRegistry,
        ledger: PerformanceLedger,
        selector: StrategySelector,
        analyzer: ContextAnalyzer | None = None,
        store: KeyValueStore | None = None,
    ) -> "MetaOrchestrator":
        return cls(
            registry,
            ledger,
            selector,
            analyzer=analyzer,
            store=store,
            confidence_threshold=float(config.get("confidence_threshold", 0.8)),
            cache_size=int(config.get("cache_size", 100)),
            max_decisions=int(config.get("max_decisions", 1000)),
            trim_decisions_to=int(config.get("trim_decisions_to", 500)),
            learning_min_samples=int(config.get("learning_min_samples", 5)),
            learning_enabled=bool(config.get("learning_enabled", True)),
            analyzer_model=config.get("analyzer_model") or None,
        )

    # -- persistence -------------------------------------------------------

    def _load(self) -> None:
        raw = self.store.get(DECISIONS_KEY, [])
        if not isinstance(raw, list):
            logger.warning("Decision log unreadable, starting empty")
            raw = []
        decisions = _parse_decisions(raw)
        patterns: Dict[str, Dict[str, Any]] = {}
        for key in self.store.list_prefix(PATTERN_PREFIX):
            value = self.store.get(key)
            if isinstance(value, dict) and isinstance(value.get("decisions"), list):
                patterns[key[len(PATTERN_PREFIX):]] = value
        with self._lock:
            self._decisions = decisions
            self._patterns = patterns
        if decisions or patterns:
            logger.info("Loaded %d decisions, %d learning patterns", len(decisions), len(patterns))

    def _persist(self, category: str | None = None) -> None:
        """Merge local state into the store under its lock, then adopt the merged view.

        Another process sharing the data dir may have appended records since
        we loaded; merging by decision id keeps both sides.
        """
        with self._lock:
            ours = [d.to_dict() for d in self._decisions]
            merged = self.store.update(
                DECISIONS_KEY,
                lambda stored: _merge_records(stored, ours, self.max_decisions, self.trim_decisions_to),
                default=[],
            )
            self._decisions = _parse_decisions(merged)
            pattern = self._patterns.get(category) if category else None
            if category and pattern is not None:
                self._patterns[category] = self.store.update(
                    PATTERN_PREFIX + category,
                    lambda stored: self._merge_pattern(stored, pattern),
                    default={},
                )

    def _merge_pattern(self, stored: Any, pattern: Dict[str, Any]) -> Dict[str, Any]:
        previous = stored.get("decisions") if isinstance(stored, dict) else None
        decisions = _merge_records(previous, pattern["decisions"], self.max_pattern_decisions, self.trim_pattern_to)
        last = max([pattern.get("last_updated") or ""] + [str(d.get("timestamp") or "") for d in decisions])
        return {"decisions": decisions, "success_rate": _success_rate(decisions), "last_updated": last}

    # -- analysis ------------------------------------------------------------

    def _analyze(self, prompt: str, history: Sequence[Any] | None) -> tuple[Analysis, str, str, Optional[str]]:
        """Returns (analysis, source, intent, suggested strategy). Never raises."""
        heuristic = self.analyzer.analyze(prompt, history, self.ledger.models())
        if not self.analyzer_model:
            return heuristic, "heuristic", "", None
        try:
            return self._llm_analysis(prompt, heuristic)
        except AnalyzerUnavailableError as exc:
            logger.info("Analyzer unavailable, using rule-based fallback: %s", exc)
            return replace(heuristic, confidence=heuristic.confidence * 0.8), "fallback", "", None

    def _llm_analysis(self, prompt: str, heuristic: Analysis) -> tuple[Analysis, str, str, Optional[str]]:
        adapter = self.registry.get(self.analyzer_model or "")
        if adapter is None:
            raise AnalyzerUnavailableError(f"analyzer model {self.analyzer_model} not registered")
        try:
            reply = "".join(collect(adapter.call(ANALYSIS_PROMPT.format(prompt=prompt))))
        except Exception as exc:
            raise AnalyzerUnavailableError(f"analyzer call failed: {exc}") from exc
        match = _JSON_RE.search(reply or "")
        if not match:
            raise AnalyzerUnavailableError("analyzer reply has no JSON object")
        try:
            data = json.loads(match.group(0))
        except ValueError as exc:
            raise AnalyzerUnavailableError("analyzer reply is not valid JSON") from exc
        if not isinstance(data, dict):
            raise AnalyzerUnavailableError("analyzer reply is not an object")
        category = data.get("category")
        if isinstance(category, dict):
            name = category.get("name")
            confidence = category.get("confidence", 0.7)
        else:
            name, confidence = category, 0.7
        if name not in CATEGORIES:
            raise AnalyzerUnavailableError(f"analyzer returned unknown category {name!r}")
        complexity = data.get("complexity")
        if complexity not in ("low", "medium", "high"):
            complexity = heuristic.complexity
        try:
            confidence = max(0.0, min(1.0, float(confidence)))
        except (TypeError, ValueError):
            confidence = 0.7
        keywords = tuple(str(k) for k in data.get("keywords") or () if k)
        analysis = replace(
            heuristic,
            category=name,
            complexity=complexity,
            confidence=confidence,
            category_confidence=confidence,
            keywords=keywords or heuristic.keywords,
        )
        strategy = STRATEGY_ALIASES.get(data.get("recommended_strategy"), data.get("recommended_strategy"))
        return analysis, "analyzer", str(data.get("intent") or ""), strategy if strategy in STRATEGIES else None

    # -- recommendation -----------------------------------------------------

    def recommend(
        self,
        prompt: str,
        enabled_models: Sequence[str] | None = None,
        history: Sequence[Any] | None = None,
        record: bool = True,
    ) -> Recommendation:
        enabled = list(enabled_models) if enabled_models else self.registry.ids()
        cache_key = (normalize_prompt(prompt), tuple(sorted(enabled)))
        cached = self._cache.get(cache_key)
        if cached is not None:
            return replace(cached, cached=True)

        analysis, source, intent, suggested = self._analyze(prompt, history)

        learned = self._learned_pattern(analysis.category) if self.learning_enabled else None
        override_strategy = learned["strategy"] if learned else suggested
        plan = self.selector.select(analysis, enabled, strategy_override=override_strategy)
        models, weights = list(plan.models), dict(plan.weights)
        if learned:
            candidates = {c["id"]: c["score"] for c in plan.rationale.get("candidates", [])}
            learned_models = [m for m in learned["models"] if m in candidates]
            if learned_models:
                models = learned_models
                total = sum(candidates[m] for m in models) or 1.0
                weights = {m: candidates[m] / total for m in models}

        pool = learned["models"] if learned else models
        confidence, parts = self._confidence(analysis, plan, models, pool, enabled)
        auto_apply = confidence >= self.confidence_threshold
        decision_id = uuid.uuid4().hex[:12]
        recommendation = Recommendation(
            decision_id=decision_id,
            category=analysis.category,
            complexity=analysis.complexity,
            models=models,
            weights=weights,
            strategy=plan.strategy,
            confidence=round(confidence, 4),
            auto_apply=auto_apply,
            reasoning=self._reasoning(analysis, plan.strategy, models, confidence, source, learned is not None),
            decision_tree=self._decision_tree(prompt, analysis, plan, models, weights, confidence, parts),
            analysis=analysis.to_dict(),
            source=source,
            intent=intent,
            learned=learned is not None,
        )
        if record:
            self._store_decision(Decision(
                id=decision_id,
                fingerprint=prompt_fingerprint(prompt),
                category=analysis.category,
                complexity=analysis.complexity,
                models=models,
                weights=weights,
                strategy=plan.strategy,
                confidence=recommendation.confidence,
                auto_apply=auto_apply,
                timestamp=datetime.now().astimezone().isoformat(timespec="seconds"),
                source=source,
            ))
        self._cache.set(cache_key, recommendation)
        return recommendation

    def _confidence(
        self,
        analysis: Analysis,
        plan: ExecutionPlan,
        models: Sequence[str],
        pool: Sequence[str],
        enabled: Sequence[str],
    ) -> tuple[float, Dict[str, float]]:
        """Blend selection, availability of ``pool``, strategy success and learning."""
        candidates = {c["id"]: c["score"] for c in plan.rationale.get("candidates", [])}
        model_score = sum(candidates.get(m, 0.0) for m in models) / len(models) if models else 0.0
        selection = 0.5 * analysis.confidence + 0.5 * model_score
        if pool:
            ready = set(self.registry.available([m for m in pool if m in enabled]))
            availability = len([m for m in pool if m in ready]) / len(pool)
        else:
            availability = 1.0
        success = self.ledger.strategy(plan.strategy).success_rate
        learning = 0.1 if self.learning_enabled and self._has_learning_data(analysis.category) else 0.0
        penalty = 0.1 if analysis.tier == "expert" else 0.0
        confidence = 0.4 * selection + 0.3 * availability + 0.2 * success + learning - penalty
        parts = {
            "selection": round(selection, 4),
            "availability": round(availability, 4),
            "strategy_success": round(success, 4),
            "learning_bonus": learning,
            "expert_penalty": penalty,
        }
        return max(0.0, min(1.0, confidence)), parts

    def _reasoning(
        self,
        analysis: Analysis,
        strategy: str,
        models: Sequence[str],
        confidence: float,
        source: str,
        learned: bool,
    ) -> str:
        text = (
            f"Based on analysis, this appears to be a {analysis.category} task "
            f"({analysis.complexity} complexity) with {analysis.confidence * 100:.1f}% confidence. "
            f"Recommended models: {', '.join(models)} using {strategy} strategy. "
        )
        if learned:
            text += "A historically successful pattern for this category was applied. "
        if source == "fallback":
            text += "The analyzer was unavailable, so rule-based analysis was used. "
        if confidence >= self.confidence_threshold:
            text += f"High confidence ({confidence * 100:.1f}%) suggests auto-apply is appropriate."
        else:
            text += f"Moderate confidence ({confidence * 100:.1f}%) suggests manual review."
        return text

    def _decision_tree(
        self,
        prompt: str,
        analysis: Analysis,
        plan: ExecutionPlan,
        models: Sequence[str],
        weights: Dict[str, float],
        confidence: float,
        parts: Dict[str, float],
    ) -> Dict[str, Any]:
        candidates = {c["id"]: c for c in plan.rationale.get("candidates", [])}
        return {
            "root": {
                "type": "analysis",
                "description": "Prompt Analysis",
                "children": [
                    {
                        "type": "category",
                        "description": f"Categorized as: {analysis.category}",
                        "confidence": round(analysis.category_confidence, 4),
                        "children": [
                            {
                                "type": "model_selection",
                                "description": "Model Selection Process",
                                "children": [
                                    {
                                        "type": "model",
                                        "name": model,
                                        "weight": round(weights.get(model, 0.0), 4),
                                        "details": candidates.get(model, {}).get("details", {}),
                                    }
                                    for model in models
                                ],
                            },
                            {
                                "type": "strategy",
                                "description": f"Strategy: {plan.strategy}",
                                "reasoning": plan.reasoning,
                            },
                        ],
                    },
                    {
                        "type": "confidence",
                        "description": f"Overall Confidence: {confidence * 100:.1f}%",
                        "components": parts,
                        "auto_apply": confidence >= self.confidence_threshold,
                    },
                ],
            },
            "metadata": {
                "created_at": datetime.now().astimezone().isoformat(timespec="seconds"),
                "prompt_length": len(prompt),
            },
        }

    # -- learning --------------------------------------------------------------

    def _has_learning_data(self, category: str) -> bool:
        with self._lock:
            pattern = self._patterns.get(category)
            return bool(pattern) and len(pattern["decisions"]) >= self.learning_min_samples

    def _learned_pattern(self, category: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            pattern = self._patterns.get(category)
            if not pattern or len(pattern["decisions"]) < self.learning_min_samples:
                return None
            scored = [
                d for d in pattern["decisions"]
                if d.get("success_score") is not None and d["success_score"] > 0.8
            ]
        if not scored:
            return None
        best = max(scored, key=lambda d: d["success_score"])
        return {"models": list(best.get("models", [])), "strategy": best.get("strategy")}

    def _store_decision(self, decision: Decision) -> None:
        with self._lock:
            self._decisions.append(decision)
            if len(self._decisions) > self.max_decisions:
                self._decisions = self._decisions[-self.trim_decisions_to:]
            pattern = self._patterns.setdefault(
                decision.category, {"decisions": [], "success_rate": 0.0, "last_updated": ""}
            )
            pattern["decisions"].append(decision.to_dict())
            if len(pattern["decisions"]) > self.max_pattern_decisions:
                pattern["decisions"] = pattern["decisions"][-self.trim_pattern_to:]
            pattern["last_updated"] = decision.timestamp
            pattern["success_rate"] = _success_rate(pattern["decisions"])
        self._persist(decision.category)

    def record_outcome(self, decision_id: str, success_score: float) -> bool:
        """Attach an observed success score to a stored decision."""
        score = max(0.0, min(1.0, float(success_score)))
        with self._lock:
            decision = next((d for d in reversed(self._decisions) if d.id == decision_id), None)
            if decision is None:
                return False
            decision.success_score = score
            pattern = self._patterns.get(decision.category)
            if pattern:
                for entry in pattern["decisions"]:
                    if entry.get("id") == decision_id:
                        entry["success_score"] = score
                pattern["success_rate"] = _success_rate(pattern["decisions"])
        self._persist(decision.category)
        return True

    def observe(self, prompt: str, analysis: Analysis, plan: ExecutionPlan, success_score: float | None) -> Decision:
        """Record a decision made by the engine for an executed request."""
        candidates = {c["id"]: c["score"] for c in plan.rationale.get("candidates", [])}
        confidence, _ = self._confidence(analysis, plan, list(plan.models), list(plan.models), list(candidates))
        decision = Decision(
            id=plan.request_id or uuid.uuid4().hex[:12],
            fingerprint=prompt_fingerprint(prompt),
            category=analysis.category,
            complexity=analysis.complexity,
            models=list(plan.models),
            weights=dict(plan.weights),
            strategy=plan.strategy,
            confidence=round(confidence, 4),
            auto_apply=confidence >= self.confidence_threshold,
            timestamp=datetime.now().astimezone().isoformat(timespec="seconds"),
            source="engine",
            success_score=None if success_score is None else round(max(0.0, min(1.0, success_score)), 4),
        )
        self._store_decision(decision)
        return decision

    # -- operator surface ---------------------------------------------------

    def decisions(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            return [d.to_dict() for d in self._decisions[-limit:]]

    def analytics(self) -> Dict[str, Any]:
        with self._lock:
            total = len(self._decisions)
            recent = list(self._decisions[-50:])
            pattern_count = len(self._patterns)
        categories: Dict[str, int] = {}
        strategies: Dict[str, int] = {}
        usage: Dict[str, int] = {}
        for d in recent:
            categories[d.category] = categories.get(d.category, 0) + 1
            strategies[d.strategy] = strategies.get(d.strategy, 0) + 1
            for model in d.models:
                usage[model] = usage.get(model, 0) + 1
        count = len(recent)
        return {
            "total_decisions": total,
            "recent_decisions": count,
            "average_confidence": sum(d.confidence for d in recent) / count if count else 0.0,
            "auto_apply_rate": sum(1 for d in recent if d.auto_apply) / count if count else 0.0,
            "confidence_threshold": self.confidence_threshold,
            "category_breakdown": categories,
            "strategy_breakdown": strategies,
            "model_usage": usage,
            "learning_patterns": pattern_count,
            "learning_enabled": self.learning_enabled,
            "last_analysis": recent[-1].timestamp if recent else None,
        }

    def configure(
        self,
        confidence_threshold: float | None = None,
        learning_enabled: bool | None = None,
        analyzer_model: str | None = None,
    ) -> Dict[str, Any]:
        if confidence_threshold is not None:
            if not 0.0 <= confidence_threshold <= 1.0:
                raise ValueError("confidence_threshold must be within [0, 1]")
            self.confidence_threshold = confidence_threshold
        if learning_enabled is not None:
            self.learning_enabled = learning_enabled
        if analyzer_model is not None:
            self.analyzer_model = analyzer_model or None
        self._cache.clear()
        return {
            "confidence_threshold": self.confidence_threshold,
            "learning_enabled": self.learning_enabled,
            "analyzer_model": self.analyzer_model,
        }

    def clear(self) -> None:
        with self._lock:
            categories = list(self._patterns)
            self._decisions = []
            self._patterns = {}
        self._cache.clear()
        self.store.delete(DECISIONS_KEY)
        for category in categories:
            self.store.delete(PATTERN_PREFIX + category)
        logger.info("Cleared decision log and learning patterns")


def _success_rate(decisions: Sequence[Dict[str, Any]]) -> float:
    scores = [d["success_score"] for d in decisions if d.get("success_score") is not None]
    return sum(scores) / len(scores) if scores else 0.0


def _merge_records(
    stored: Any,
    ours: Sequence[Dict[str, Any]],
    limit: int,
    trim_to: int,
) -> List[Dict[str, Any]]:
    """Union of two decision lists keyed by id; local entries win, order is by timestamp."""
    merged: Dict[str, Dict[str, Any]] = {}
    for item in stored if isinstance(stored, list) else []:
        if isinstance(item, dict) and item.get("id"):
            merged[item["id"]] = item
    for item in ours:
        merged[item["id"]] = item
    records = sorted(merged.values(), key=lambda d: str(d.get("timestamp") or ""))
    if len(records) > limit:
        records = records[-trim_to:]
    return records


def _parse_decisions(raw: Sequence[Any]) -> List[Decision]:
    decisions: List[Decision] = []
    for item in raw:
        try:
            decisions.append(Decision.from_dict(item))
        except (TypeError, AttributeError):
            logger.warning("Skipping malformed decision record")
    return decisions
