from __future__ import annotations

import re
from typing import Iterable

DEFAULT_NGRAM_SIZE = 3
DEFAULT_THRESHOLD = 0.6

_NON_ALNUM = re.compile(r"[\W_]+")


def normalize(text: str) -> str:
    return _NON_ALNUM.sub(" ", text.lower()).strip()


def ngrams(text: str, size: int = DEFAULT_NGRAM_SIZE) -> set[str]:
    normalized = normalize(text)
    return {normalized[i : i + size] for i in range(len(normalized) - size + 1)}


def trigrams(text: str) -> set[str]:
    return ngrams(text, 3)


def jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 1.0
    union = len(a | b)
    if union == 0:
        return 0.0
    return len(a & b) / union


def max_similarity(candidate: set[str], existing: Iterable[set[str]]) -> float:
    best = 0.0
    for grams in existing:
        score = jaccard(candidate, grams)
        if score > best:
            best = score
    return best


def is_too_similar(
    candidate_text: str,
    existing: Iterable[set[str]],
    threshold: float = DEFAULT_THRESHOLD,
    size: int = DEFAULT_NGRAM_SIZE,
) -> bool:
    candidate = ngrams(candidate_text, size)
    return any(jaccard(candidate, grams) >= threshold for grams in existing)


class SimilarityChecker:
    """Accumulates gram sets for one topic so a batch is deduplicated against itself."""

    def __init__(
        self,
        existing: Iterable[set[str]] = (),
        threshold: float = DEFAULT_THRESHOLD,
        size: int = DEFAULT_NGRAM_SIZE,
    ) -> None:
        self.threshold = threshold
        self.size = size
        self._gram_sets: list[set[str]] = [set(grams) for grams in existing]

    def __len__(self) -> int:
        return len(self._gram_sets)

    def check(self, text: str) -> tuple[bool, set[str]]:
        """Return ``(accepted, grams)``; accepted grams join the comparison set."""
        grams = ngrams(text, self.size)
        if any(jaccard(grams, other) >= self.threshold for other in self._gram_sets):
            return False, grams
        self._gram_sets.append(grams)
        return True, grams
