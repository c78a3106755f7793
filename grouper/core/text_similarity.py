"""Text similarity between free-text hazard reports.

Bag-of-words cosine similarity over weighted term-frequency vectors.
Hazard vocabulary terms count double, so two reports that both talk about
a "pothole" or a "flood" score higher than two that merely share filler
words. No model downloads, no external NLP dependency: the whole thing is
deterministic and fast enough to run on every candidate pair.
"""

from __future__ import annotations

import math
import re
from typing import Iterable

from grouper.core.models import DocumentVector, TextSimilarityResult

STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
    "has", "he", "in", "is", "it", "its", "of", "on", "that", "the",
    "to", "was", "will", "with", "would", "could", "should", "have",
    "had", "been", "being", "do", "does", "did", "done", "can", "may",
    "must", "shall", "this", "these", "those", "they", "them", "their",
    "there", "where", "when", "why", "how", "what", "which", "who",
    "but", "or", "if", "then", "than", "so", "very", "just", "now",
    "also", "only", "more", "most", "much", "many", "some", "any",
    "all", "each", "every", "few", "little", "less", "least", "own",
})

# Coastal, weather and civic infrastructure hazards.
HAZARD_VOCABULARY = frozenset({
    "tsunami", "wave", "surge", "current", "tide", "swell", "erosion",
    "debris", "sea", "ocean", "coastal", "marine", "flood", "storm",
    "cyclone", "weather", "wind", "water", "shore", "beach", "cliff",
    "port", "harbor", "fishing", "boat", "ship", "danger", "warning",
    "rescue", "safety", "emergency", "urgent", "alert", "hazard", "risk",
    "rough", "strong", "rip", "undertow", "coral", "reef", "sand",
    "park", "playground", "fence", "gate", "parking",
    "pothole", "road", "street", "crack", "sinkhole", "pavement",
    "drain", "sewage", "leak", "pipe", "waterlogging", "garbage",
    "tree", "wire", "streetlight", "electric", "collapse", "fire",
    "smoke", "accident", "traffic",
})

# Checked in order; the first that fits wins.
_SUFFIXES = ("ing", "ly", "ed", "ies", "ied", "s")

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

HAZARD_WEIGHT = 2.0
DEFAULT_WEIGHT = 1.0


def normalize(text: str) -> str:
    text = _NON_WORD.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def stem(word: str) -> str:
    """Strip one common English suffix. Deterministic, not linguistic."""
    for suffix in _SUFFIXES:
        if word.endswith(suffix) and len(word) > len(suffix) + 2:
            return word[: -len(suffix)]
    return word


class TextSimilarityEngine:
    """Compares report texts. Stateless apart from its vocabulary."""

    def __init__(
        self,
        hazard_vocabulary: Iterable[str] = HAZARD_VOCABULARY,
        stop_words: Iterable[str] = STOP_WORDS,
    ) -> None:
        self._stop_words = frozenset(stop_words)
        # Stemmed so that "debris" and "hazards" match their stemmed tokens.
        self._hazard_terms = frozenset(stem(t.lower()) for t in hazard_vocabulary)

    def tokenize(self, text: str) -> list[str]:
        return [w for w in normalize(text).split(" ")
                if len(w) > 2 and w not in self._stop_words]

    def is_hazard_term(self, term: str) -> bool:
        return term in self._hazard_terms

    def term_weight(self, term: str) -> float:
        return HAZARD_WEIGHT if term in self._hazard_terms else DEFAULT_WEIGHT

    def vectorize(self, text: str) -> DocumentVector:
        vec = DocumentVector()
        magnitude_sq = 0.0
        for token in self.tokenize(text):
            term = stem(token)
            prev = vec.terms.get(term, 0.0)
            new = prev + self.term_weight(term)
            vec.terms[term] = new
            magnitude_sq += new * new - prev * prev
            if term in self._hazard_terms and term not in vec.hazard_terms:
                vec.hazard_terms.append(term)
        vec.magnitude = math.sqrt(magnitude_sq)
        return vec

    @staticmethod
    def cosine(a: DocumentVector, b: DocumentVector) -> float:
        if a.magnitude == 0 or b.magnitude == 0:
            return 0.0
        # Sorted so that cosine(a, b) == cosine(b, a) bit for bit.
        common = sorted(a.terms.keys() & b.terms.keys())
        dot = sum(a.terms[t] * b.terms[t] for t in common)
        return min(dot / (a.magnitude * b.magnitude), 1.0)

    @staticmethod
    def matching_terms(a: DocumentVector, b: DocumentVector) -> tuple[str, ...]:
        return tuple(t for t in a.hazard_terms if t in b.terms)

    @staticmethod
    def confidence(text1: str, text2: str, similarity: float, matches: int) -> float:
        length_ratio = min(len(text1), len(text2)) / max(len(text1), len(text2))
        overlap = min(matches / 3, 1.0)
        return min(similarity * 0.6 + length_ratio * 0.2 + overlap * 0.2, 1.0)

    def compare(
        self,
        text1: str,
        text2: str,
        cache: dict[str, DocumentVector] | None = None,
    ) -> TextSimilarityResult:
        """Compare two texts.

        ``cache`` is an optional caller-owned map from exact input string to
        its vector, reused across comparisons in a batch.
        """
        if not text1 or not text2 or not text1.strip() or not text2.strip():
            return TextSimilarityResult(0.0, 0.0, (), 0.0)
        if text1.strip() == text2.strip():
            return TextSimilarityResult(1.0, 1.0, (), 1.0)

        vec1 = self._vector(text1, cache)
        vec2 = self._vector(text2, cache)
        similarity = self.cosine(vec1, vec2)
        matches = self.matching_terms(vec1, vec2)
        boost = min(len(matches) * 0.1, 0.3)
        return TextSimilarityResult(
            similarity=similarity,
            confidence=self.confidence(text1, text2, similarity, len(matches)),
            matching_terms=matches,
            weighted_score=min(similarity + boost, 1.0),
        )

    def _vector(self, text: str, cache: dict[str, DocumentVector] | None) -> DocumentVector:
        if cache is None:
            return self.vectorize(text)
        vec = cache.get(text)
        if vec is None:
            vec = cache[text] = self.vectorize(text)
        return vec

    def build_vector_cache(self, texts: Iterable[str]) -> dict[str, DocumentVector]:
        cache: dict[str, DocumentVector] = {}
        for text in texts:
            self._vector(text, cache)
        return cache

    def find_similar(
        self,
        target: str,
        candidates: list[str],
        threshold: float = 0.7,
    ) -> list[tuple[int, TextSimilarityResult]]:
        """Candidates whose weighted score clears ``threshold``, best first."""
        cache: dict[str, DocumentVector] = {}
        results = []
        for i, candidate in enumerate(candidates):
            result = self.compare(target, candidate, cache)
            if result.weighted_score >= threshold:
                results.append((i, result))
        results.sort(key=lambda item: item[1].weighted_score, reverse=True)
        return results

    def most_similar(
        self,
        target: str,
        candidates: list[str],
        min_score: float = 0.5,
    ) -> tuple[int, float] | None:
        """Index and weighted score of the best candidate strictly above ``min_score``."""
        best: tuple[int, float] | None = None
        best_score = min_score
        for i, candidate in enumerate(candidates):
            score = self.compare(target, candidate).weighted_score
            if score > best_score:
                best_score = score
                best = (i, score)
        return best

    def extract_hazard_terms(self, text: str) -> list[str]:
        terms: list[str] = []
        for token in self.tokenize(text):
            term = stem(token)
            if term in self._hazard_terms and term not in terms:
                terms.append(term)
        return terms

    def text_complexity(self, text: str) -> float:
        """0-1 score mixing vocabulary diversity and length (saturates at 50 words)."""
        tokens = self.tokenize(text)
        if not tokens:
            return 0.0
        diversity = len(set(tokens)) / len(tokens)
        length_factor = min(len(tokens) / 50, 1.0)
        return diversity * 0.6 + length_factor * 0.4
