"""Strategy profiles: static descriptors for each execution strategy."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

RACING = "racing"
CONSENSUS = "consensus"
CASCADING = "cascading"
DIVERSITY = "diversity"
HYBRID = "hybrid"
SEQUENTIAL = "sequential"


@dataclass(frozen=True)
class StrategyProfile:
    id: str
    description: str
    good_for: Tuple[str, ...]
    min_models: int = 1
    base_score: float = 0.5


# Declaration order is the tie-break order.
STRATEGY_PROFILES: Dict[str, StrategyProfile] = {
    RACING: StrategyProfile(
        RACING,
        "Run all models at once and keep the first results to arrive.",
        ("speed", "simple questions", "urgent requests"),
        min_models=1,
        base_score=0.5,
    ),
    CONSENSUS: StrategyProfile(
        CONSENSUS,
        "Run all models to completion and weight the answers they agree on.",
        ("analysis", "multiple perspectives", "fact checking"),
        min_models=2,
        base_score=0.45,
    ),
    CASCADING: StrategyProfile(
        CASCADING,
        "Run models one after another, each refining the previous answer.",
        ("deep reasoning", "step by step work"),
        min_models=2,
        base_score=0.4,
    ),
    DIVERSITY: StrategyProfile(
        DIVERSITY,
        "Send differently framed prompts to each model and keep the most novel answers.",
        ("creative work", "brainstorming"),
        min_models=2,
        base_score=0.4,
    ),
    HYBRID: StrategyProfile(
        HYBRID,
        "Run racing, consensus and diversity groups together and merge them.",
        ("complex synthesis", "expert tasks"),
        min_models=3,
        base_score=0.35,
    ),
    SEQUENTIAL: StrategyProfile(
        SEQUENTIAL,
        "Run models one after another on the same prompt.",
        ("ordered fallbacks", "rate-limited providers"),
        min_models=1,
        base_score=0.3,
    ),
}

STRATEGIES: Tuple[str, ...] = tuple(STRATEGY_PROFILES)
