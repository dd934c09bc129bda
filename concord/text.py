"""Text heuristics shared by the coordinator, synthesis engine and analyzer."""
from __future__ import annotations

from typing import Iterable, List, Sequence, Set
import re

_TOKEN_RE = re.compile(r"[a-z0-9']+")
_SENTENCE_RE = re.compile(r"[^.!?]*[.!?]+[\s]*|[^.!?]+$")

STOPWORDS = frozenset(
    "a an and are as at be by for from has have in is it its of on or that the "
    "this to was were will with what which who how why when where can you your i "
    "me my we our they them their there these those do does did not but if then "
    "so than too very just about into over also such".split()
)

CONNECTORS = ("however", "therefore", "moreover", "furthermore", "thus", "consequently")


def tokens(text: str) -> List[str]:
    return _TOKEN_RE.findall((text or "").lower())


def token_set(text: str, drop_stopwords: bool = False) -> Set[str]:
    found = set(tokens(text))
    if drop_stopwords:
        found -= STOPWORDS
    return found


def keywords(text: str, limit: int | None = None, min_length: int = 4) -> List[str]:
    """Ordered, de-duplicated content words."""
    seen: List[str] = []
    for tok in tokens(text):
        if len(tok) < min_length or tok in STOPWORDS or tok in seen:
            continue
        seen.append(tok)
        if limit is not None and len(seen) >= limit:
            break
    return seen


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a and not b:
        return 1.0
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def cluster(texts: Sequence[str], threshold: float = 0.75) -> List[List[int]]:
    """Single-linkage clusters of indices whose token-Jaccard is >= threshold.

    Clusters come back largest first; equal sizes keep first-member order.
    """
    sets = [token_set(t) for t in texts]
    parent = list(range(len(texts)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(len(sets)):
        for j in range(i + 1, len(sets)):
            if jaccard(sets[i], sets[j]) >= threshold:
                ri, rj = find(i), find(j)
                if ri != rj:
                    parent[max(ri, rj)] = min(ri, rj)

    groups: dict[int, List[int]] = {}
    for i in range(len(sets)):
        groups.setdefault(find(i), []).append(i)
    return sorted(groups.values(), key=lambda g: (-len(g), g[0]))


def novelty(text: str, seen: Set[str]) -> float:
    """Fraction of the text's content tokens not present in ``seen``."""
    own = token_set(text, drop_stopwords=True)
    if not own:
        return 0.0
    return len(own - seen) / len(own)


def sentences(text: str) -> List[str]:
    """Split text into sentences; concatenating the result restores the input."""
    if not text:
        return []
    return [m.group(0) for m in _SENTENCE_RE.finditer(text) if m.group(0)]


def semantic_chunks(text: str, per_chunk: int = 2) -> List[str]:
    """Group sentences two at a time; a trailing single sentence joins the last group."""
    parts = sentences(text)
    if not parts:
        return []
    chunks = ["".join(parts[i:i + per_chunk]) for i in range(0, len(parts), per_chunk)]
    if len(chunks) > 1 and len(parts) % per_chunk == 1:
        tail = chunks.pop()
        chunks[-1] += tail
    return chunks


def coherence(text: str) -> float:
    """Sentence-count, connector and paragraph heuristics in [0, 1]."""
    count = len([s for s in sentences(text) if s.strip()])
    if count == 0:
        return 0.0
    if count < 2:
        return 0.5
    if count > 20:
        return 0.7
    lowered = text.lower()
    connector_score = min(1.0, sum(1 for c in CONNECTORS if c in lowered) / 3)
    paragraphs = [p for p in text.split("\n\n") if p.strip()]
    structure_score = 0.8 if len(paragraphs) > 1 else 0.6
    return (connector_score + structure_score) / 2


def coverage(text: str, terms: Iterable[str]) -> float:
    wanted = set(terms)
    if not wanted:
        return 1.0
    return len(wanted & token_set(text)) / len(wanted)


def excerpt(text: str, limit: int = 500) -> str:
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."
