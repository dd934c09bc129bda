"""Context analyzer: cheap, offline classification of a prompt.

Produces the feature vector the selector and meta-orchestrator score
against. No network calls; every request passes through here.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Mapping, Pattern, Sequence, Tuple
import logging
import re

logger = logging.getLogger(__name__)

COMPLEXITY_INDICATORS = {
    "high": ("analyze", "analyse", "compare", "evaluate", "critique", "in-depth",
             "comprehensive", "detailed analysis", "thorough"),
    "medium": ("explain", "describe", "how", "why", "what"),
    "low": ("list", "name", "when"),
}

URGENCY_INDICATORS = ("urgent", "immediate", "quickly", "fast", "asap", "right now")

PERSPECTIVE_INDICATORS = ("perspectives", "viewpoints", "points of view", "opinions", "debate",
                          "pros and cons")
REASONING_INDICATORS = ("reasoning", "think deeply", "step by step", "elaborate", "in-depth",
                        "prove", "derive")
SYNTHESIS_INDICATORS = ("merge", "combine", "synthesize", "synthesise", "integrate", "unify")
CREATIVITY_INDICATORS = ("creative", "innovative", "original", "brainstorm", "imagine", "invent")


@dataclass(frozen=True)
class CategoryRule:
    keywords: Tuple[str, ...]
    pattern: Pattern[str]


# Declaration order is the tie-break order.
CATEGORY_RULES: Dict[str, CategoryRule] = {
    "reasoning": CategoryRule(
        ("analyze", "explain", "reasoning", "logic", "because", "therefore", "conclude"),
        re.compile(r"\b(why|how|analyze|reason|logic|conclusion|proof)\b", re.I),
    ),
    "creative": CategoryRule(
        ("create", "write", "story", "poem", "creative", "imagine", "design"),
        re.compile(r"\b(write|create|story|creative|imagine|design|brainstorm)\b", re.I),
    ),
    "coding": CategoryRule(
        ("code", "program", "function", "algorithm", "debug", "script", "develop"),
        re.compile(r"\b(code|function|program|debug|algorithm|javascript|python|react)\b", re.I),
    ),
    "math": CategoryRule(
        ("calculate", "solve", "equation", "formula", "mathematics", "compute"),
        re.compile(r"\b(calculate|solve|equation|math|formula|compute|number)\b", re.I),
    ),
    "conversation": CategoryRule(
        ("chat", "talk", "discuss", "conversation", "opinion", "think"),
        re.compile(r"\b(chat|talk|discuss|opinion|think|feel|believe)\b", re.I),
    ),
    "analysis": CategoryRule(
        ("analyze", "compare", "evaluate", "assess", "review", "examine"),
        re.compile(r"\b(analyze|compare|evaluate|assess|review|examine|contrast)\b", re.I),
    ),
    "general": CategoryRule(
        ("what", "who", "when", "where", "tell", "explain"),
        re.compile(r"\b(what|who|when|where|tell|explain|describe)\b", re.I),
    ),
}

CATEGORIES = tuple(CATEGORY_RULES)


@dataclass(frozen=True)
class Analysis:
    category: str
    complexity: str
    complexity_score: float
    urgency: float
    multi_perspective: bool = False
    deep_reasoning: bool = False
    synthesis: bool = False
    creativity: bool = False
    confidence: float = 0.0
    category_confidence: float = 0.0
    category_scores: Tuple[Tuple[str, int], ...] = ()
    keywords: Tuple[str, ...] = ()
    expected_latency_ms: float | None = None
    word_count: int = 0

    @property
    def urgency_level(self) -> str:
        if self.urgency > 0.6:
            return "high"
        if self.urgency > 0.3:
            return "medium"
        return "low"

    @property
    def urgent(self) -> bool:
        return self.urgency > 0.6

    @property
    def tier(self) -> str:
        """simple / default / expert, used to size the model subset."""
        if self.complexity == "high" or (self.deep_reasoning and self.complexity == "medium"):
            return "expert"
        if self.complexity == "low":
            return "simple"
        return "default"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category_scores"] = dict(self.category_scores)
        data["keywords"] = list(self.keywords)
        data["urgency_level"] = self.urgency_level
        data["tier"] = self.tier
        return data


def _contains_any(text: str, indicators: Sequence[str]) -> bool:
    return any(ind in text for ind in indicators)


class ContextAnalyzer:
    def __init__(self, base_complexity: float = 0.3) -> None:
        self.base_complexity = base_complexity

    def analyze(
        self,
        prompt: str,
        history: Sequence[Any] | None = None,
        ledger_snapshot: Mapping[str, Any] | None = None,
    ) -> Analysis:
        text = (prompt or "").strip()
        if not text:
            return Analysis(
                category="general",
                complexity="low",
                complexity_score=0.0,
                urgency=0.0,
                confidence=0.0,
            )
        lowered = text.lower()
        words = lowered.split()

        score, level = self._complexity(lowered, len(words))
        urgency = 0.8 if _contains_any(lowered, URGENCY_INDICATORS) else 0.3
        category, category_confidence, scores, matched = self._categorize(text, lowered)

        confidence = category_confidence * self._history_multiplier(history)
        return Analysis(
            category=category,
            complexity=level,
            complexity_score=score,
            urgency=urgency,
            multi_perspective=_contains_any(lowered, PERSPECTIVE_INDICATORS),
            deep_reasoning=_contains_any(lowered, REASONING_INDICATORS),
            synthesis=_contains_any(lowered, SYNTHESIS_INDICATORS),
            creativity=_contains_any(lowered, CREATIVITY_INDICATORS),
            confidence=min(1.0, confidence),
            category_confidence=category_confidence,
            category_scores=tuple(scores.items()),
            keywords=tuple(matched),
            expected_latency_ms=self._expected_latency(ledger_snapshot),
            word_count=len(words),
        )

    def _complexity(self, lowered: str, word_count: int) -> Tuple[float, str]:
        score = self.base_complexity
        if _contains_any(lowered, COMPLEXITY_INDICATORS["high"]):
            score += 0.5
        elif _contains_any(lowered, COMPLEXITY_INDICATORS["medium"]):
            score += 0.3
        elif _contains_any(lowered, COMPLEXITY_INDICATORS["low"]):
            score += 0.1
        if word_count > 50:
            score += 0.2
        elif word_count > 20:
            score += 0.1
        score = min(1.0, score)
        if score > 0.7:
            return score, "high"
        if score > 0.4:
            return score, "medium"
        return score, "low"

    def _categorize(self, text: str, lowered: str) -> Tuple[str, float, Dict[str, int], List[str]]:
        scores: Dict[str, int] = {}
        matched: List[str] = []
        for name, rule in CATEGORY_RULES.items():
            score = 0
            for keyword in rule.keywords:
                if keyword in lowered:
                    score += 2
                    if keyword not in matched:
                        matched.append(keyword)
            score += 3 * len(rule.pattern.findall(text))
            scores[name] = score
        best = max(scores, key=lambda name: (scores[name], -CATEGORIES.index(name)))
        if scores[best] <= 0:
            return "general", 0.3, scores, matched
        return best, min(scores[best] / 10.0, 1.0), scores, matched

    @staticmethod
    def _history_multiplier(history: Sequence[Any] | None) -> float:
        turns = len(history or ())
        if turns > 10:
            return 1.1
        if turns > 5:
            return 1.05
        return 1.0

    @staticmethod
    def _expected_latency(ledger_snapshot: Mapping[str, Any] | None) -> float | None:
        if not ledger_snapshot:
            return None
        latencies = [getattr(p, "latency_ms", None) for p in ledger_snapshot.values()]
        latencies = [l for l in latencies if l is not None]
        if not latencies:
            return None
        return sum(latencies) / len(latencies)
