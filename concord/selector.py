"""Strategy selector: picks a strategy, a model subset and weights."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from .analyzer import Analysis
from .errors import NoAvailableModelsError
from .ledger import ModelProfile, PerformanceLedger
from .models.registry import ModelRegistry
from .strategy import (
    CASCADING,
    CONSENSUS,
    DIVERSITY,
    HYBRID,
    RACING,
    SEQUENTIAL,
    STRATEGY_PROFILES,
    StrategyProfile,
)

logger = logging.getLogger(__name__)

CAPABILITY_WEIGHT = 0.7
PERFORMANCE_WEIGHT = 0.3

STRATEGY_REASONS = {
    RACING: "fast, simple request: take the first answers to arrive",
    CONSENSUS: "high complexity with multiple perspectives: weight agreeing answers",
    CASCADING: "deep reasoning benefits from models refining each other",
    DIVERSITY: "creative task benefits from differently framed prompts",
    HYBRID: "complex synthesis: combine racing, consensus and diversity groups",
    SEQUENTIAL: "ordered execution without cross-stage context",
}


@dataclass
class ExecutionPlan:
    request_id: str
    strategy: str
    models: Tuple[str, ...]
    weights: Dict[str, float]
    plan_timeout_s: float = 120.0
    model_timeout_s: float = 30.0
    early_completion: float = 0.8
    category: str = "general"
    reasoning: str = ""
    rationale: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "strategy": self.strategy,
            "models": list(self.models),
            "weights": dict(self.weights),
            "plan_timeout_s": self.plan_timeout_s,
            "model_timeout_s": self.model_timeout_s,
            "early_completion": self.early_completion,
            "category": self.category,
            "reasoning": self.reasoning,
            "rationale": self.rationale,
        }


def rule_scores(analysis: Analysis) -> Dict[str, float]:
    """Rule table over (complexity, category, urgency, flags)."""
    scores = {sid: profile.base_score for sid, profile in STRATEGY_PROFILES.items()}
    high = analysis.complexity == "high"

    def bump(strategy: str, delta: float) -> None:
        scores[strategy] += delta

    if analysis.multi_perspective:
        if high:
            bump(CONSENSUS, 0.5)
            bump(HYBRID, 0.4)
            bump(RACING, -0.4)
        else:
            bump(CONSENSUS, 0.3)
            bump(DIVERSITY, 0.1)
    if analysis.deep_reasoning:
        if high:
            bump(CASCADING, 0.5)
            bump(SEQUENTIAL, 0.2)
            bump(RACING, -0.2)
        else:
            bump(CASCADING, 0.3)
    if analysis.urgent:
        bump(RACING, 0.4)
        bump(CASCADING, -0.2)
        bump(SEQUENTIAL, -0.2)
        bump(HYBRID, -0.2)
    if analysis.creativity or analysis.category == "creative":
        bump(DIVERSITY, 0.5)
    if analysis.synthesis:
        bump(HYBRID, 0.5)
    if analysis.category in ("analysis", "reasoning", "math"):
        bump(CONSENSUS, 0.2)
    if analysis.complexity == "low":
        bump(RACING, 0.3)
    return scores


@dataclass
class StrategySelector:
    ledger: PerformanceLedger
    registry: ModelRegistry
    rule_weight: float = 0.8
    inclusion_threshold: float = 0.7
    min_models: int = 2
    top_k: Dict[str, int] = field(default_factory=lambda: {"simple": 2, "default": 3, "expert": 4})
    plan_timeout_s: float = 120.0
    model_timeout_s: float = 30.0
    early_completion: float = 0.8

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        ledger: PerformanceLedger,
        registry: ModelRegistry,
        coordinator: Dict[str, Any] | None = None,
    ) -> "StrategySelector":
        coordinator = coordinator or {}
        top_k = {"simple": 2, "default": 3, "expert": 4}
        top_k.update({k: int(v) for k, v in (config.get("top_k") or {}).items()})
        return cls(
            ledger=ledger,
            registry=registry,
            rule_weight=float(config.get("rule_weight", 0.8)),
            inclusion_threshold=float(config.get("inclusion_threshold", 0.7)),
            min_models=int(config.get("min_models", 2)),
            top_k=top_k,
            plan_timeout_s=float(coordinator.get("plan_timeout_seconds", 120)),
            model_timeout_s=float(coordinator.get("model_timeout_seconds", 30)),
            early_completion=float(coordinator.get("early_completion", 0.8)),
        )

    def score_strategies(self, analysis: Analysis, model_count: int) -> Dict[str, Dict[str, Any]]:
        rules = rule_scores(analysis)
        table: Dict[str, Dict[str, Any]] = {}
        for sid, profile in STRATEGY_PROFILES.items():
            history = self.ledger.strategy(sid).success_rate
            score = self.rule_weight * rules[sid] + (1 - self.rule_weight) * history
            table[sid] = {
                "rule": round(rules[sid], 4),
                "history": round(history, 4),
                "score": score,
                "eligible": model_count >= profile.min_models,
            }
        return table

    def score_model(self, model_id: str, category: str, profile: ModelProfile) -> Tuple[float, Dict[str, float]]:
        card = self.registry.card(model_id)
        capability = card.capability(category) if card else 0.5
        performance = profile.reliability * profile.quality
        score = CAPABILITY_WEIGHT * capability + PERFORMANCE_WEIGHT * performance
        return score, {
            "capability": round(capability, 4),
            "reliability": round(profile.reliability, 4),
            "quality": round(profile.quality, 4),
            "latency_ms": round(profile.latency_ms, 1),
        }

    def rank_models(
        self,
        model_ids: Sequence[str],
        category: str,
        overrides: Dict[str, float] | None = None,
    ) -> List[Dict[str, Any]]:
        overrides = overrides or {}
        ranked = []
        for model_id in model_ids:
            profile = self.ledger.model(model_id)
            score, details = self.score_model(model_id, category, profile)
            if model_id in overrides:
                details["override"] = overrides[model_id]
                score = overrides[model_id]
            ranked.append({
                "id": model_id,
                "score": score,
                "latency_ms": profile.latency_ms,
                "details": details,
            })
        ranked.sort(key=lambda c: (-c["score"], c["latency_ms"], c["id"]))
        return ranked

    def select(
        self,
        analysis: Analysis,
        enabled_models: Sequence[str],
        request_id: str = "",
        strategy_override: Optional[str] = None,
        weight_overrides: Dict[str, float] | None = None,
        mode: str = "auto",
    ) -> ExecutionPlan:
        enabled = list(dict.fromkeys(enabled_models))
        registered = [m for m in enabled if m in self.registry]
        available = self.registry.available(registered)
        skipped = {m: ("not registered" if m not in self.registry else "unavailable")
                   for m in enabled if m not in available}
        if not available:
            raise NoAvailableModelsError(
                "no enabled model is available",
                {"enabled": enabled, "skipped": skipped},
            )

        ranked = self.rank_models(available, analysis.category, weight_overrides)
        tier = analysis.tier if mode == "auto" else mode

        if len(available) == 1:
            strategy = RACING
            strategy_table: Dict[str, Dict[str, Any]] = {}
            reasoning = "single enabled model: one-model plan"
            selected = ranked[:1]
        else:
            strategy_table = self.score_strategies(analysis, len(available))
            strategy = self._pick_strategy(strategy_table, strategy_override)
            reasoning = STRATEGY_REASONS[strategy]
            if strategy_override and strategy == strategy_override:
                reasoning = f"strategy {strategy} requested explicitly"
            selected = self._select_models(ranked, tier, STRATEGY_PROFILES[strategy])

        weights = _normalize({c["id"]: c["score"] for c in selected})
        plan = ExecutionPlan(
            request_id=request_id,
            strategy=strategy,
            models=tuple(c["id"] for c in selected),
            weights=weights,
            plan_timeout_s=self.plan_timeout_s,
            model_timeout_s=self.model_timeout_s,
            early_completion=self.early_completion,
            category=analysis.category,
            reasoning=reasoning,
            rationale={
                "tier": tier,
                "candidates": [
                    {"id": c["id"], "score": round(c["score"], 4), "details": c["details"]}
                    for c in ranked
                ],
                "strategies": {
                    sid: {**row, "score": round(row["score"], 4)} for sid, row in strategy_table.items()
                },
                "skipped": skipped,
            },
        )
        logger.debug("Plan %s: %s over %s", request_id, strategy, ", ".join(plan.models))
        return plan

    def _pick_strategy(self, table: Dict[str, Dict[str, Any]], override: Optional[str]) -> str:
        if override and override in table and table[override]["eligible"]:
            return override
        if override:
            logger.info("Ignoring strategy override %s: not eligible", override)
        best = None
        best_score = float("-inf")
        for sid, row in table.items():
            if row["eligible"] and row["score"] > best_score:
                best, best_score = sid, row["score"]
        return best or RACING

    def _select_models(
        self,
        ranked: List[Dict[str, Any]],
        tier: str,
        profile: StrategyProfile,
    ) -> List[Dict[str, Any]]:
        k = max(1, int(self.top_k.get(tier, self.top_k.get("default", 3))))
        keep = min(len(ranked), max(self.min_models, profile.min_models))
        selected = ranked[:keep]
        for candidate in ranked[keep:k]:
            if candidate["score"] <= self.inclusion_threshold:
                break
            selected.append(candidate)
        return selected


def _normalize(scores: Dict[str, float]) -> Dict[str, float]:
    clean = {k: max(0.0, float(v)) for k, v in scores.items()}
    total = sum(clean.values())
    if total <= 0:
        return {k: 1.0 / len(clean) for k in clean} if clean else {}
    return {k: v / total for k, v in clean.items()}
