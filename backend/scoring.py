"""Six-factor relevance scoring for directives.

Each directive gets six sub-scores in [0, 100] (severity, keyword relevance,
layer match, topic overlap, technology overlap, authoritativeness). The final
score is their weighted sum divided by 100, so it always lies in [0, 1].
Mode adjustments boost directives whose topics fit the assistant mode and
clamp the result back to 1.0.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields, replace
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from models import (
    LAYER_SEQUENCE,
    WILDCARD_LAYER,
    Directive,
    ScoreBreakdown,
    ScoredDirective,
    ScoringContext,
    Severity,
)


class ConfigurationError(ValueError):
    """Raised when the scoring engine is built with an unusable configuration."""


SEVERITY_SCORES: Dict[Severity, float] = {
    Severity.MUST: 100.0,
    Severity.SHOULD: 50.0,
    Severity.MAY: 25.0,
}

NEUTRAL_RELEVANCE = 50.0
PHRASE_MATCH_SCORE = 100.0
WORD_MATCH_FLOOR = 60.0
WORD_MATCH_CEILING = 90.0

EXACT_LAYER_SCORE = 100.0
ADJACENT_LAYER_SCORE = 50.0
WILDCARD_LAYER_SCORE = 40.0
DISTANT_LAYER_SCORE = 10.0

TOPIC_POINTS = 20.0
TECH_POINTS = 25.0

_LAYER_NAMES = {name.split("-", 1)[1].lower(): idx + 1 for idx, name in enumerate(LAYER_SEQUENCE)}
_LAYER_NUMBER_RE = re.compile(r"^\s*(\d+)")
_WORD_RE = re.compile(r"[a-z0-9_]+(?:[.'-][a-z0-9_]+)*")

MODE_TOPICS: Dict[str, FrozenSet[str]] = {
    "architect": frozenset({"architecture", "design", "patterns", "pattern", "structure", "modularity"}),
    "code": frozenset({"testing", "implementation", "performance", "refactoring", "coding-standards", "style"}),
    "debug": frozenset({"testing", "error-handling", "errors", "logging", "debugging", "observability"}),
}


@dataclass(frozen=True)
class ScoringWeights:
    severity: float = 0.35
    relevance: float = 0.25
    layer_match: float = 0.15
    topic_match: float = 0.10
    tech_match: float = 0.10
    authoritativeness: float = 0.05

    @classmethod
    def from_mapping(cls, values: Mapping[str, float]) -> "ScoringWeights":
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ConfigurationError(f"Unknown scoring weights: {', '.join(sorted(unknown))}")
        missing = known - set(values)
        if missing:
            raise ConfigurationError(f"Missing scoring weights: {', '.join(sorted(missing))}")
        try:
            return cls(**{k: float(v) for k, v in values.items()})
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Scoring weights must be numbers: {exc}") from exc

    def as_array(self) -> np.ndarray:
        return np.asarray([getattr(self, f.name) for f in fields(self)], dtype=np.float64)


def layer_ordinal(layer: Optional[str]) -> Optional[int]:
    """Position of a layer tag in LAYER_SEQUENCE ("3-Domain" -> 3, "domain" -> 3)."""
    if not layer:
        return None
    match = _LAYER_NUMBER_RE.match(layer)
    if match:
        return int(match.group(1))
    return _LAYER_NAMES.get(layer.strip().lower())


def _normalized(values: Iterable[str]) -> FrozenSet[str]:
    return frozenset(v.strip().lower() for v in values if v and v.strip())


class ScoringEngine:
    """Scores directives against a ScoringContext with fixed, validated weights."""

    def __init__(self, weights: ScoringWeights | Mapping[str, float] | None = None, mode_boost: float = 1.2):
        if weights is None:
            weights = ScoringWeights()
        elif not isinstance(weights, ScoringWeights):
            weights = ScoringWeights.from_mapping(weights)

        vector = weights.as_array()
        if np.any(vector < 0):
            raise ConfigurationError("Scoring weights must be non-negative")
        total = float(vector.sum())
        if not np.isclose(total, 1.0, rtol=0.0, atol=1e-6):
            raise ConfigurationError(f"Scoring weights must sum to 1.0 (got {total:.4f})")
        if mode_boost < 1.0:
            raise ConfigurationError("Mode boost must be >= 1.0")

        self.weights = weights
        self.mode_boost = float(mode_boost)
        self._weight_vector = vector

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def score_directive(self, directive: Directive, context: ScoringContext) -> ScoredDirective:
        breakdown = self._breakdown(directive, context)
        score = float(np.dot(np.asarray(breakdown.as_tuple()), self._weight_vector)) / 100.0
        return ScoredDirective(directive=directive, score=_clamp(score), breakdown=breakdown)

    def score_directives(
        self, directives: Sequence[Directive], context: ScoringContext
    ) -> List[ScoredDirective]:
        """Score every candidate and return them best first (ties keep input order)."""
        if not directives:
            return []
        breakdowns = [self._breakdown(d, context) for d in directives]
        matrix = np.asarray([b.as_tuple() for b in breakdowns], dtype=np.float64)
        scores = np.clip(matrix @ self._weight_vector / 100.0, 0.0, 1.0)
        order = np.argsort(-scores, kind="stable")
        return [
            ScoredDirective(directive=directives[i], score=float(scores[i]), breakdown=breakdowns[i])
            for i in order
        ]

    def apply_mode_adjustments(
        self, scored: Sequence[ScoredDirective], mode: Optional[str] = None
    ) -> List[ScoredDirective]:
        allowlist = MODE_TOPICS.get((mode or "").strip().lower())
        if not allowlist:
            return list(scored)

        adjusted = []
        for item in scored:
            if _normalized(item.topics) & allowlist:
                item = replace(item, score=_clamp(item.score * self.mode_boost))
            adjusted.append(item)
        # sorted() is stable, so equal scores keep their previous order.
        return sorted(adjusted, key=lambda s: s.score, reverse=True)

    # ------------------------------------------------------------------
    # Sub-scores
    # ------------------------------------------------------------------
    def _breakdown(self, directive: Directive, context: ScoringContext) -> ScoreBreakdown:
        return ScoreBreakdown(
            severity=self.severity_score(directive.severity),
            relevance=self.relevance_score(directive.text, context.keywords),
            layer_match=self.layer_score(directive.layers, context.detected_layer),
            topic_match=self.overlap_score(directive.topics, context.topics, TOPIC_POINTS),
            tech_match=self.overlap_score(directive.technologies, context.technologies, TECH_POINTS),
            authoritativeness=100.0 if directive.authoritative else 0.0,
        )

    @staticmethod
    def severity_score(severity: Severity | str) -> float:
        return SEVERITY_SCORES[Severity(severity)]

    @staticmethod
    def relevance_score(text: str, keywords: Sequence[str]) -> float:
        """Best keyword hit in the directive text.

        A literal (case-insensitive) phrase hit scores 100. Otherwise the
        keyword's words are looked up at word starts in the text; any hit
        scores between 60 and 90 depending on how many of its words matched.
        Scores of different keywords are never summed.
        """
        keywords = [k.strip().lower() for k in keywords if k and k.strip()]
        if not keywords:
            return NEUTRAL_RELEVANCE

        haystack = (text or "").lower()
        words = _WORD_RE.findall(haystack)
        best = 0.0
        for keyword in keywords:
            if keyword in haystack:
                return PHRASE_MATCH_SCORE
            parts = _WORD_RE.findall(keyword)
            if not parts:
                continue
            matched = sum(1 for part in parts if any(w.startswith(part) for w in words))
            if matched:
                partial = WORD_MATCH_FLOOR + (WORD_MATCH_CEILING - WORD_MATCH_FLOOR) * matched / len(parts)
                best = max(best, partial)
        return best

    @staticmethod
    def layer_score(directive_layers: Iterable[str], detected_layer: Optional[str]) -> float:
        """Best match over all declared layers of the directive."""
        if not detected_layer or detected_layer == WILDCARD_LAYER:
            return WILDCARD_LAYER_SCORE
        layers = [layer for layer in directive_layers if layer]
        if not layers:
            # Untagged directives apply everywhere.
            return WILDCARD_LAYER_SCORE

        detected_ord = layer_ordinal(detected_layer)
        best = DISTANT_LAYER_SCORE
        for layer in layers:
            if layer == WILDCARD_LAYER:
                best = max(best, WILDCARD_LAYER_SCORE)
                continue
            ordinal = layer_ordinal(layer)
            if layer.lower() == detected_layer.lower() or (
                ordinal is not None and detected_ord is not None and ordinal == detected_ord
            ):
                return EXACT_LAYER_SCORE
            if ordinal is not None and detected_ord is not None and abs(ordinal - detected_ord) == 1:
                best = max(best, ADJACENT_LAYER_SCORE)
        return best

    @staticmethod
    def overlap_score(directive_values: Iterable[str], context_values: Iterable[str], points: float) -> float:
        overlap = _normalized(directive_values) & _normalized(context_values)
        return min(100.0, points * len(overlap))


def _clamp(score: float) -> float:
    return float(min(1.0, max(0.0, score)))
