"""Groups the three result caches used by the directive service."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Sequence

from query_cache import CacheStats, QueryCache

logger = logging.getLogger(__name__)

DEFAULT_MODE = "default"


def _plain(value: Any) -> Any:
    if value is None:
        return {}
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", exclude_none=True)
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


class CacheManager:
    """Directive query, context detection and ranking caches.

    Each cache has its own TTL. Rule updates only touch the directive and
    ranking caches; detected context does not depend on the stored rules.
    """

    def __init__(
        self,
        max_size: int = 1000,
        cleanup_interval: Optional[float] = 60.0,
        directives_ttl: float = 600.0,
        context_ttl: float = 1800.0,
        ranking_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.directives = QueryCache(max_size, directives_ttl, cleanup_interval, clock)
        self.context = QueryCache(max_size, context_ttl, cleanup_interval, clock)
        self.ranking = QueryCache(max_size, ranking_ttl, cleanup_interval, clock)

    @classmethod
    def from_config(cls, config) -> "CacheManager":
        return cls(
            max_size=config.cache_max_size,
            cleanup_interval=config.cache_cleanup_interval,
            directives_ttl=config.directives_ttl,
            context_ttl=config.context_ttl,
            ranking_ttl=config.ranking_ttl,
        )

    # ------------------------------------------------------------------
    # Directive queries
    # ------------------------------------------------------------------
    @staticmethod
    def _directive_params(task: str, mode: Optional[str], options: Any) -> Dict[str, Any]:
        return {
            "type": "directives",
            "task_description": task,
            "mode": mode or DEFAULT_MODE,
            "options": _plain(options),
        }

    def cache_directive_query(
        self,
        task: str,
        mode: Optional[str],
        options: Any,
        result: Any,
        source_ids: Optional[Iterable[str]] = None,
    ) -> None:
        self.directives.set(self._directive_params(task, mode, options), result, source_ids=source_ids)

    def get_cached_directive_query(self, task: str, mode: Optional[str], options: Any) -> Optional[Any]:
        return self.directives.get(self._directive_params(task, mode, options))

    # ------------------------------------------------------------------
    # Context detection
    # ------------------------------------------------------------------
    @staticmethod
    def _context_params(text: str, options: Any) -> Dict[str, Any]:
        return {"type": "context", "text": text, "options": _plain(options)}

    def cache_context_detection(self, text: str, options: Any, result: Any) -> None:
        self.context.set(self._context_params(text, options), result)

    def get_cached_context_detection(self, text: str, options: Any) -> Optional[Any]:
        return self.context.get(self._context_params(text, options))

    # ------------------------------------------------------------------
    # Ranking results
    # ------------------------------------------------------------------
    @staticmethod
    def _ranking_params(context: Any, candidates: Sequence[Any], options: Any) -> Dict[str, Any]:
        return {
            "type": "ranking",
            "context": _plain(context),
            "candidate_count": len(candidates),
            "candidate_ids": sorted(str(c.id) for c in candidates),
            "options": _plain(options),
        }

    def cache_ranking_result(self, context: Any, candidates: Sequence[Any], options: Any, result: Any) -> None:
        self.ranking.set(
            self._ranking_params(context, candidates, options),
            result,
            source_ids=[str(c.id) for c in candidates],
        )

    def get_cached_ranking_result(self, context: Any, candidates: Sequence[Any], options: Any) -> Optional[Any]:
        return self.ranking.get(self._ranking_params(context, candidates, options))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def invalidate_on_rule_update(self, ids: Iterable[str]) -> int:
        ids = list(ids)
        removed = self.directives.invalidate_by_ids(ids) + self.ranking.invalidate_by_ids(ids)
        logger.debug("Invalidated %d cached results for %d updated directives", removed, len(ids))
        return removed

    def invalidate_all_results(self) -> int:
        return self.directives.invalidate() + self.ranking.invalidate()

    def warm_cache(
        self,
        common_tasks: Iterable[str] = (),
        common_contexts: Iterable[str] = (),
        generate_directives: Optional[Callable[[str], Any]] = None,
        generate_context: Optional[Callable[[str], Any]] = None,
    ) -> Dict[str, int]:
        """Precompute results for frequent tasks and texts with default options.

        ``generate_directives`` returns ``(result, source_ids)`` so warmed
        queries are dropped when one of their directives changes.
        """
        warmed = {"directives": 0, "context": 0}
        if generate_directives is not None:
            warmed["directives"] = self.directives.warm(
                (
                    (self._directive_params(task, None, None), lambda task=task: generate_directives(task))
                    for task in common_tasks
                ),
                with_source_ids=True,
            )
        if generate_context is not None:
            warmed["context"] = self.context.warm(
                (self._context_params(text, None), lambda text=text: generate_context(text))
                for text in common_contexts
            )
        logger.info(
            "Cache warmed: %d directive queries, %d context detections",
            warmed["directives"],
            warmed["context"],
        )
        return warmed

    def get_stats(self) -> Dict[str, CacheStats]:
        per_cache = {
            "directives": self.directives.get_stats(),
            "context": self.context.get_stats(),
            "ranking": self.ranking.get_stats(),
        }
        hits = sum(s.hits for s in per_cache.values())
        misses = sum(s.misses for s in per_cache.values())
        total = hits + misses
        per_cache["overall"] = CacheStats(
            hits=hits,
            misses=misses,
            size=sum(s.size for s in per_cache.values()),
            hit_rate=(hits / total) if total else 0.0,
        )
        return per_cache

    def clear_all(self) -> None:
        self.directives.clear()
        self.context.clear()
        self.ranking.clear()

    def destroy(self) -> None:
        self.directives.destroy()
        self.context.destroy()
        self.ranking.destroy()
