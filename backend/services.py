"""Service layer tying the directive store, context detection, ranking and caches together."""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, List

from cache_manager import CacheManager
from config import RankerConfig
from context_detection import ContextProvider, RuleBasedContextProvider, create_context_provider
from directive_store import DirectiveStore
from models import (
    CacheStatsPayload,
    CacheStatsResponse,
    ContextPayload,
    DetectedContext,
    Directive,
    QueryDirectivesRequest,
    QueryDirectivesResponse,
    ScoredDirectivePayload,
)
from ranking import RankingEngine, RankingOptions
from scoring import ScoringEngine

logger = logging.getLogger(__name__)

_REQUEST_OPTION_FIELDS = {"max_items", "token_budget", "severity_filter", "strict_layer", "min_must_items", "context"}


class DirectiveService:
    """Answers directive queries for task descriptions."""

    def __init__(
        self,
        store: DirectiveStore | None = None,
        ranking: RankingEngine | None = None,
        cache: CacheManager | None = None,
        provider: ContextProvider | None = None,
        config: RankerConfig | None = None,
    ):
        self.config = config or RankerConfig()
        self.store = store or DirectiveStore()
        self.cache = cache or CacheManager.from_config(self.config)
        self.ranking = ranking or RankingEngine(
            scoring_engine=ScoringEngine(self.config.weights, mode_boost=self.config.mode_boost),
            include_header=self.config.include_header,
            include_metadata=self.config.include_metadata,
            include_citations=self.config.include_citations,
            cache=self.cache,
        )
        self.provider = provider or RuleBasedContextProvider()
        self._fallback = RuleBasedContextProvider()

    @classmethod
    def from_config(cls, config: RankerConfig) -> "DirectiveService":
        store = DirectiveStore(Path(config.store_path) if config.store_path else None)
        return cls(store=store, provider=create_context_provider(config), config=config)

    # ------------------------------------------------------------------
    # Context detection
    # ------------------------------------------------------------------
    def detect_context(self, text: str, return_keywords: bool = True) -> DetectedContext:
        options = {} if return_keywords else {"return_keywords": False}
        cached = self.cache.get_cached_context_detection(text, options)
        if cached is not None:
            return _copy_context(cached)

        detected = self._detect_uncached(text)
        if not return_keywords:
            detected = replace(detected, keywords=[])
        self.cache.cache_context_detection(text, options, _copy_context(detected))
        return detected

    def _detect_uncached(self, text: str) -> DetectedContext:
        try:
            return self.provider.detect_context(text)
        except Exception as exc:
            if isinstance(self.provider, RuleBasedContextProvider):
                raise
            logger.warning("Context provider %s failed, using rule-based detection: %s", self.provider.name, exc)
            return self._fallback.detect_context(text)

    # ------------------------------------------------------------------
    # Directive queries
    # ------------------------------------------------------------------
    def query_directives(self, request: QueryDirectivesRequest) -> QueryDirectivesResponse:
        cache_options = self._cache_options(request)
        cached = self.cache.get_cached_directive_query(request.task_description, request.mode, cache_options)
        if cached is not None:
            return cached.model_copy(update={"cached": True}, deep=True)

        response, source_ids = self._compute(request)
        self.cache.cache_directive_query(
            request.task_description,
            request.mode,
            cache_options,
            response.model_copy(deep=True),
            source_ids=source_ids,
        )
        return response

    def _compute(self, request: QueryDirectivesRequest):
        if request.context is not None:
            context = request.context
        else:
            detected = self.detect_context(request.task_description)
            context = ContextPayload(
                detected_layer=detected.layer,
                topics=detected.topics,
                technologies=detected.technologies,
                keywords=detected.keywords,
                confidence=detected.confidence,
            )

        result = self.ranking.query_and_rank(self.store, context.to_scoring_context(), self._ranking_options(request))
        response = QueryDirectivesResponse(
            directives=[ScoredDirectivePayload.from_scored(item) for item in result.directives],
            context=context,
            stats=result.stats.to_payload(),
        )
        return response, result.candidate_ids

    def _ranking_options(self, request: QueryDirectivesRequest) -> RankingOptions:
        values = {
            "max_items": request.max_items or self.config.default_max_items,
            "token_budget": (
                request.token_budget if request.token_budget is not None else self.config.default_token_budget
            ),
            "strict_layer": request.strict_layer,
            "mode": request.mode,
            "min_must_items": request.min_must_items,
        }
        if request.severity_filter:
            values["severity_filter"] = request.severity_filter
        return RankingOptions(**values)

    @staticmethod
    def _cache_options(request: QueryDirectivesRequest) -> Dict:
        return request.model_dump(
            mode="json",
            include=_REQUEST_OPTION_FIELDS,
            exclude_none=True,
            exclude_defaults=True,
        )

    # ------------------------------------------------------------------
    # Directive management
    # ------------------------------------------------------------------
    def upsert_directives(self, directives: Iterable[Directive]) -> Dict[str, List[str]]:
        created, updated = self.store.upsert(directives)
        if created:
            # New directives can match any earlier query.
            self.cache.invalidate_all_results()
        elif updated:
            self.cache.invalidate_on_rule_update(updated)
        return {"created": created, "updated": updated}

    def delete_directives(self, ids: Iterable[str]) -> List[str]:
        deleted = self.store.delete(ids)
        if deleted:
            self.cache.invalidate_on_rule_update(deleted)
        return deleted

    # ------------------------------------------------------------------
    # Cache administration
    # ------------------------------------------------------------------
    def warm_cache(self, tasks: Iterable[str] = (), contexts: Iterable[str] = ()) -> Dict[str, int]:
        return self.cache.warm_cache(
            common_tasks=list(tasks),
            common_contexts=list(contexts),
            generate_directives=lambda task: self._compute(QueryDirectivesRequest(task_description=task)),
            generate_context=self._detect_uncached,
        )

    def cache_stats(self) -> CacheStatsResponse:
        stats = self.cache.get_stats()
        return CacheStatsResponse(
            **{name: CacheStatsPayload(**value.to_dict()) for name, value in stats.items()}
        )

    def clear_caches(self) -> None:
        self.cache.clear_all()

    def shutdown(self) -> None:
        self.cache.destroy()


def _copy_context(detected: DetectedContext) -> DetectedContext:
    return replace(
        detected,
        topics=list(detected.topics),
        technologies=list(detected.technologies),
        keywords=list(detected.keywords),
    )
