"""Shared backend models for the directive ranker."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


WILDCARD_LAYER = "*"

# Ordered from the user-facing edge inwards; adjacency drives layer scoring.
LAYER_SEQUENCE = (
    "1-Presentation",
    "2-Application",
    "3-Domain",
    "4-Persistence",
    "5-Infrastructure",
    "6-Integration",
)


class Severity(str, Enum):
    MUST = "MUST"
    SHOULD = "SHOULD"
    MAY = "MAY"

    @property
    def rank(self) -> int:
        """Tier order used by budget allocation (MUST first)."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.MUST: 0, Severity.SHOULD: 1, Severity.MAY: 2}


def _frozen(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    if not values:
        return frozenset()
    if isinstance(values, str):
        values = [values]
    return frozenset(str(v).strip() for v in values if str(v).strip())


@dataclass(frozen=True)
class Directive:
    """A single advisory statement supplied by the knowledge store."""

    id: str
    text: str
    severity: Severity
    topics: FrozenSet[str] = field(default_factory=frozenset)
    layers: FrozenSet[str] = field(default_factory=frozenset)
    technologies: FrozenSet[str] = field(default_factory=frozenset)
    authoritative: bool = False
    section: Optional[str] = None
    source_path: Optional[str] = None
    # Computed by the retrieval side; carried through ranking untouched.
    similarity: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "severity", Severity(self.severity))
        object.__setattr__(self, "topics", _frozen(self.topics))
        object.__setattr__(self, "layers", _frozen(self.layers))
        object.__setattr__(self, "technologies", _frozen(self.technologies))

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Directive":
        return cls(
            id=str(payload["id"]),
            text=str(payload.get("text") or ""),
            severity=Severity(str(payload.get("severity") or "MAY").upper()),
            topics=payload.get("topics") or (),
            layers=payload.get("layers") or (),
            technologies=payload.get("technologies") or (),
            authoritative=bool(payload.get("authoritative", False)),
            section=payload.get("section"),
            source_path=payload.get("source_path"),
            similarity=payload.get("similarity"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "severity": self.severity.value,
            "topics": sorted(self.topics),
            "layers": sorted(self.layers),
            "technologies": sorted(self.technologies),
            "authoritative": self.authoritative,
            "section": self.section,
            "source_path": self.source_path,
            "similarity": self.similarity,
        }


@dataclass(frozen=True)
class ScoringContext:
    """Detected task context that every directive of one query is scored against."""

    detected_layer: Optional[str] = None
    topics: Tuple[str, ...] = ()
    technologies: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "topics", tuple(self.topics or ()))
        object.__setattr__(self, "technologies", tuple(self.technologies or ()))
        object.__setattr__(self, "keywords", tuple(self.keywords or ()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detected_layer": self.detected_layer,
            "topics": list(self.topics),
            "technologies": list(self.technologies),
            "keywords": list(self.keywords),
        }


@dataclass(frozen=True)
class ScoreBreakdown:
    severity: float
    relevance: float
    layer_match: float
    topic_match: float
    tech_match: float
    authoritativeness: float

    def as_tuple(self) -> Tuple[float, ...]:
        return (
            self.severity,
            self.relevance,
            self.layer_match,
            self.topic_match,
            self.tech_match,
            self.authoritativeness,
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "severity": self.severity,
            "relevance": self.relevance,
            "layer_match": self.layer_match,
            "topic_match": self.topic_match,
            "tech_match": self.tech_match,
            "authoritativeness": self.authoritativeness,
        }


@dataclass(frozen=True)
class ScoredDirective:
    directive: Directive
    score: float
    breakdown: ScoreBreakdown

    @property
    def id(self) -> str:
        return self.directive.id

    @property
    def text(self) -> str:
        return self.directive.text

    @property
    def severity(self) -> Severity:
        return self.directive.severity

    @property
    def topics(self) -> FrozenSet[str]:
        return self.directive.topics

    @property
    def layers(self) -> FrozenSet[str]:
        return self.directive.layers

    @property
    def technologies(self) -> FrozenSet[str]:
        return self.directive.technologies


@dataclass
class BudgetSelection:
    """Outcome of fitting scored items into a token budget."""

    items: List[Any] = field(default_factory=list)
    total_tokens: int = 0
    budget_remaining: int = 0
    items_considered: int = 0
    items_included: int = 0
    must_items_required: Optional[int] = None
    must_minimum_met: bool = True

    @property
    def degraded(self) -> bool:
        return not self.must_minimum_met


@dataclass
class DetectedContext:
    """Context produced by a detection provider, before it is turned into a ScoringContext."""

    layer: str = WILDCARD_LAYER
    topics: List[str] = field(default_factory=list)
    technologies: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    confidence: float = 0.0
    provider: str = "rule-based"

    def to_scoring_context(self) -> ScoringContext:
        return ScoringContext(
            detected_layer=self.layer,
            topics=tuple(self.topics),
            technologies=tuple(self.technologies),
            keywords=tuple(self.keywords),
        )


# API payloads

class DirectivePayload(BaseModel):
    id: str
    text: str
    severity: Severity
    topics: List[str] = Field(default_factory=list)
    layers: List[str] = Field(default_factory=list)
    technologies: List[str] = Field(default_factory=list)
    authoritative: bool = False
    section: Optional[str] = None
    source_path: Optional[str] = None

    def to_directive(self) -> Directive:
        return Directive(
            id=self.id,
            text=self.text,
            severity=self.severity,
            topics=self.topics,
            layers=self.layers,
            technologies=self.technologies,
            authoritative=self.authoritative,
            section=self.section,
            source_path=self.source_path,
        )


class ScoredDirectivePayload(BaseModel):
    id: str
    text: str
    severity: Severity
    score: float
    topics: List[str] = Field(default_factory=list)
    layers: List[str] = Field(default_factory=list)
    technologies: List[str] = Field(default_factory=list)
    section: Optional[str] = None
    source_path: Optional[str] = None
    score_breakdown: Dict[str, float] = Field(default_factory=dict)

    @classmethod
    def from_scored(cls, scored: ScoredDirective) -> "ScoredDirectivePayload":
        directive = scored.directive
        return cls(
            id=directive.id,
            text=directive.text,
            severity=directive.severity,
            score=scored.score,
            topics=sorted(directive.topics),
            layers=sorted(directive.layers),
            technologies=sorted(directive.technologies),
            section=directive.section,
            source_path=directive.source_path,
            score_breakdown=scored.breakdown.to_dict(),
        )


class RankingStatsPayload(BaseModel):
    searched: int = 0
    considered: int = 0
    selected: int = 0
    total_tokens: int = 0
    budget_remaining: int = 0
    must_minimum_met: bool = True


class ContextPayload(BaseModel):
    detected_layer: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    technologies: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None

    def to_scoring_context(self) -> ScoringContext:
        return ScoringContext(
            detected_layer=self.detected_layer,
            topics=tuple(self.topics),
            technologies=tuple(self.technologies),
            keywords=tuple(self.keywords),
        )


# Request payloads

class QueryDirectivesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_description: str = Field(alias="task_description")
    mode: Optional[str] = None
    context: Optional[ContextPayload] = None
    max_items: Optional[int] = Field(default=None, ge=1, le=100)
    token_budget: Optional[int] = Field(default=None, ge=0)
    severity_filter: Optional[List[Severity]] = None
    strict_layer: bool = False
    min_must_items: Optional[int] = Field(default=None, ge=0)


class QueryDirectivesResponse(BaseModel):
    directives: List[ScoredDirectivePayload] = Field(default_factory=list)
    context: ContextPayload
    stats: RankingStatsPayload
    cached: bool = False


class DetectContextRequest(BaseModel):
    text: str
    return_keywords: bool = True


class DetectContextResponse(BaseModel):
    detected_layer: str
    topics: List[str] = Field(default_factory=list)
    technologies: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    provider: str = "rule-based"


class UpsertDirectivesRequest(BaseModel):
    directives: List[DirectivePayload] = Field(default_factory=list)


class DeleteDirectivesRequest(BaseModel):
    ids: List[str] = Field(default_factory=list)


class WarmCacheRequest(BaseModel):
    tasks: List[str] = Field(default_factory=list)
    contexts: List[str] = Field(default_factory=list)


class CacheStatsPayload(BaseModel):
    hits: int = 0
    misses: int = 0
    size: int = 0
    hit_rate: float = 0.0


class CacheStatsResponse(BaseModel):
    directives: CacheStatsPayload
    context: CacheStatsPayload
    ranking: CacheStatsPayload
    overall: CacheStatsPayload
