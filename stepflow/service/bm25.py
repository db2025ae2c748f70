"""Okapi BM25 ranking over a fixed set of tokenized knowledge chunks."""

from __future__ import annotations

import math
import re
from collections import Counter
from typing import List, Sequence, Tuple

K1 = 1.5
B = 0.75

_WORD = re.compile(r"\w+")


def tokenize_text(text: str) -> List[str]:
    return _WORD.findall(text.lower())


class BM25Index:
    """Term statistics for one corpus; build once per query batch."""

    def __init__(self, documents: Sequence[Sequence[str]], *, k1: float = K1, b: float = B) -> None:
        self.k1 = k1
        self.b = b
        self._term_counts = [Counter(doc) for doc in documents]
        self._lengths = [len(doc) for doc in documents]
        total = sum(self._lengths)
        self._avg_length = (total / len(documents)) if documents and total else 1.0
        self._doc_freq: Counter = Counter()
        for counts in self._term_counts:
            self._doc_freq.update(counts.keys())

    def __len__(self) -> int:
        return len(self._term_counts)

    def idf(self, term: str) -> float:
        df = self._doc_freq.get(term, 0)
        if df == 0:
            return 0.0
        n = len(self)
        return math.log(1 + (n - df + 0.5) / (df + 0.5))

    def score(self, query_tokens: Sequence[str]) -> List[float]:
        """Score every document against ``query_tokens``; an empty query scores zero."""
        if not query_tokens:
            return [0.0] * len(self)
        weights = {term: self.idf(term) for term in set(query_tokens)}
        scores: List[float] = []
        for counts, length in zip(self._term_counts, self._lengths):
            norm = self.k1 * (1 - self.b + self.b * length / self._avg_length)
            total = 0.0
            for term in query_tokens:
                freq = counts.get(term, 0)
                if freq:
                    total += weights[term] * freq * (self.k1 + 1) / (freq + norm)
            scores.append(total)
        return scores

    def rank(self, query_tokens: Sequence[str], top_k: int) -> List[Tuple[int, float]]:
        """(document index, score) pairs, best first; ties keep corpus order."""
        scored = list(enumerate(self.score(query_tokens)))
        scored.sort(key=lambda pair: (-pair[1], pair[0]))
        return scored[: max(top_k, 0)]
