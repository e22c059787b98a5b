"""Retrieve, score and budget directives for a task context."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel, Field

from budget import BudgetAllocator, split_by_severity
from models import (
    WILDCARD_LAYER,
    Directive,
    RankingStatsPayload,
    ScoredDirective,
    ScoringContext,
    Severity,
)
from scoring import ScoringEngine
from token_counter import DEFAULT_SECTIONS, TokenCounter

logger = logging.getLogger(__name__)


class RankingOptions(BaseModel):
    max_items: int = Field(default=8, ge=1)
    token_budget: int = Field(default=1000, ge=0)
    severity_filter: List[Severity] = Field(default_factory=lambda: list(Severity))
    strict_layer: bool = False
    mode: Optional[str] = None
    min_must_items: Optional[int] = Field(default=None, ge=0)
    candidate_limit: int = Field(default=100, ge=1)


@dataclass(frozen=True)
class QueryCriteria:
    """What a directive source should return for one ranking call."""

    layers: Tuple[str, ...] = ()
    topics: Tuple[str, ...] = ()
    technologies: Tuple[str, ...] = ()
    severities: Tuple[Severity, ...] = tuple(Severity)
    strict_layer: bool = False
    limit: int = 100


class DirectiveSource(Protocol):
    def query(self, criteria: QueryCriteria) -> List[Directive]:
        ...


@dataclass
class RankingStats:
    searched: int = 0
    considered: int = 0
    selected: int = 0
    total_tokens: int = 0
    budget_remaining: int = 0
    must_minimum_met: bool = True

    def to_payload(self) -> RankingStatsPayload:
        return RankingStatsPayload(
            searched=self.searched,
            considered=self.considered,
            selected=self.selected,
            total_tokens=self.total_tokens,
            budget_remaining=self.budget_remaining,
            must_minimum_met=self.must_minimum_met,
        )


@dataclass
class RankingResult:
    directives: List[ScoredDirective] = field(default_factory=list)
    stats: RankingStats = field(default_factory=RankingStats)
    candidate_ids: List[str] = field(default_factory=list)

    def copy(self) -> "RankingResult":
        # ScoredDirective is frozen.
        return RankingResult(
            directives=list(self.directives),
            stats=replace(self.stats),
            candidate_ids=list(self.candidate_ids),
        )


class RankingEngine:
    """Scores candidates, reserves formatting overhead and fills the token budget.

    When a CacheManager is given, ranked results are memoized per
    (context, candidate set, options).
    """

    def __init__(
        self,
        scoring_engine: ScoringEngine | None = None,
        token_counter: TokenCounter | None = None,
        allocator: BudgetAllocator | None = None,
        include_header: bool = True,
        include_metadata: bool = True,
        include_citations: bool = True,
        cache=None,
    ):
        self.scoring_engine = scoring_engine or ScoringEngine()
        self.token_counter = token_counter or TokenCounter()
        self.allocator = allocator or BudgetAllocator(self.token_counter)
        self.include_header = include_header
        self.include_metadata = include_metadata
        self.include_citations = include_citations
        self.cache = cache

    def build_criteria(self, context: ScoringContext, options: RankingOptions) -> QueryCriteria:
        layer = context.detected_layer
        layers = (layer,) if layer and layer != WILDCARD_LAYER else ()
        return QueryCriteria(
            layers=layers,
            topics=tuple(context.topics),
            technologies=tuple(context.technologies),
            severities=tuple(options.severity_filter),
            strict_layer=options.strict_layer,
            limit=options.candidate_limit,
        )

    def query_and_rank(
        self,
        source: DirectiveSource,
        context: ScoringContext,
        options: RankingOptions | None = None,
    ) -> RankingResult:
        """Fetch candidates from ``source`` and rank them.

        A failing source yields an empty result rather than an error.
        """
        options = options or RankingOptions()
        criteria = self.build_criteria(context, options)
        try:
            candidates = list(source.query(criteria))
        except Exception as exc:
            logger.exception("Directive query failed: %s", exc)
            return RankingResult(stats=RankingStats(budget_remaining=options.token_budget))

        return self._rank_cached(candidates[: options.candidate_limit], context, options)

    def rank(
        self,
        candidates: Sequence[Directive],
        context: ScoringContext,
        options: RankingOptions | None = None,
    ) -> RankingResult:
        options = options or RankingOptions()
        allowed = set(options.severity_filter)
        return self._rank_cached([d for d in candidates if d.severity in allowed], context, options)

    def _rank_cached(
        self, candidates: List[Directive], context: ScoringContext, options: RankingOptions
    ) -> RankingResult:
        if self.cache is None:
            return self._rank(candidates, context, options)
        cached = self.cache.get_cached_ranking_result(context, candidates, options)
        if cached is not None:
            return cached.copy()
        result = self._rank(candidates, context, options)
        self.cache.cache_ranking_result(context, candidates, options, result.copy())
        return result

    def _rank(self, candidates: List[Directive], context: ScoringContext, options: RankingOptions) -> RankingResult:
        scored = self.scoring_engine.score_directives(candidates, context)
        if options.mode:
            scored = self.scoring_engine.apply_mode_adjustments(scored, options.mode)

        overhead = self.token_counter.calculate_format_overhead(
            include_header=self.include_header,
            include_metadata=self.include_metadata,
            include_citations=self.include_citations,
            num_sections=DEFAULT_SECTIONS,
        )
        selection = self.allocator.allocate_budget_by_severity(
            scored,
            options.token_budget,
            reserve_tokens=overhead,
            min_must_items=options.min_must_items,
        )

        selected = selection.items[: options.max_items]
        total_tokens = selection.total_tokens
        if len(selected) < len(selection.items):
            dropped = selection.items[len(selected):]
            total_tokens -= sum(self.token_counter.estimate_tokens(d.text) for d in dropped)

        return RankingResult(
            directives=selected,
            stats=RankingStats(
                searched=len(candidates),
                considered=len(scored),
                selected=len(selected),
                total_tokens=total_tokens,
                budget_remaining=options.token_budget - total_tokens,
                must_minimum_met=selection.must_minimum_met,
            ),
            candidate_ids=[d.id for d in candidates],
        )

    @staticmethod
    def filter_by_score_threshold(directives: Sequence[ScoredDirective], threshold: float) -> List[ScoredDirective]:
        return [d for d in directives if d.score >= threshold]

    @staticmethod
    def top_n(directives: Sequence[ScoredDirective], n: int) -> List[ScoredDirective]:
        return list(directives[: max(0, n)])

    @staticmethod
    def group_by_severity(directives: Sequence[ScoredDirective]) -> Dict[Severity, List[ScoredDirective]]:
        must, should, may = split_by_severity(directives)
        return {Severity.MUST: must, Severity.SHOULD: should, Severity.MAY: may}
