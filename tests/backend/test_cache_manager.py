"""
Unit tests for the CacheManager module.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from cache_manager import CacheManager
from config import RankerConfig
from models import Directive, ScoringContext


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def directive(directive_id):
    return Directive(id=directive_id, text="Use parameterized queries", severity="MUST")


@pytest.mark.unit
class TestCacheManager:
    """Test suite for the CacheManager class."""

    def setup_method(self):
        self.clock = FakeClock()
        self.manager = CacheManager(cleanup_interval=None, clock=self.clock)
        self.context = ScoringContext(detected_layer="2-Application", topics=("security",))

    def teardown_method(self):
        self.manager.destroy()

    def test_directive_query_roundtrip(self):
        self.manager.cache_directive_query("add login", "code", {"max_items": 3}, "result")
        assert self.manager.get_cached_directive_query("add login", "code", {"max_items": 3}) == "result"
        assert self.manager.get_cached_directive_query("add login", "code", {"max_items": 4}) is None

    def test_missing_mode_maps_to_default(self):
        self.manager.cache_directive_query("add login", None, None, "result")
        assert self.manager.get_cached_directive_query("add login", "default", {}) == "result"

    def test_cache_specific_ttls(self):
        self.manager.cache_directive_query("task", None, None, "directives")
        self.manager.cache_context_detection("task", None, "context")
        self.manager.cache_ranking_result(self.context, [directive("r1")], None, "ranking")

        self.clock.now = 301
        assert self.manager.get_cached_ranking_result(self.context, [directive("r1")], None) is None
        assert self.manager.get_cached_directive_query("task", None, None) == "directives"

        self.clock.now = 601
        assert self.manager.get_cached_directive_query("task", None, None) is None
        assert self.manager.get_cached_context_detection("task", None) == "context"

        self.clock.now = 1801
        assert self.manager.get_cached_context_detection("task", None) is None

    def test_ranking_key_ignores_candidate_order(self):
        candidates = [directive("r1"), directive("r2")]
        self.manager.cache_ranking_result(self.context, candidates, {"max_items": 2}, "ranked")

        reordered = [directive("r2"), directive("r1")]
        assert self.manager.get_cached_ranking_result(self.context, reordered, {"max_items": 2}) == "ranked"

    def test_ranking_key_depends_on_candidate_set(self):
        self.manager.cache_ranking_result(self.context, [directive("r1")], None, "ranked")
        assert self.manager.get_cached_ranking_result(self.context, [directive("r1"), directive("r2")], None) is None
        other_context = ScoringContext(detected_layer="3-Domain")
        assert self.manager.get_cached_ranking_result(other_context, [directive("r1")], None) is None

    def test_rule_update_leaves_context_cache_alone(self):
        self.manager.cache_directive_query("task", None, None, "directives", source_ids=["r1"])
        self.manager.cache_ranking_result(self.context, [directive("r1")], None, "ranking")
        self.manager.cache_context_detection("task", None, "context")

        removed = self.manager.invalidate_on_rule_update(["r1"])

        assert removed == 2
        assert self.manager.get_cached_directive_query("task", None, None) is None
        assert self.manager.get_cached_ranking_result(self.context, [directive("r1")], None) is None
        assert self.manager.get_cached_context_detection("task", None) == "context"

    def test_rule_update_only_touches_matching_entries(self):
        self.manager.cache_directive_query("one", None, None, "a", source_ids=["r1"])
        self.manager.cache_directive_query("two", None, None, "b", source_ids=["r2"])

        self.manager.invalidate_on_rule_update(["r2"])

        assert self.manager.get_cached_directive_query("one", None, None) == "a"
        assert self.manager.get_cached_directive_query("two", None, None) is None

    def test_invalidate_all_results(self):
        self.manager.cache_directive_query("task", None, None, "directives")
        self.manager.cache_context_detection("task", None, "context")

        self.manager.invalidate_all_results()

        assert self.manager.get_cached_directive_query("task", None, None) is None
        assert self.manager.get_cached_context_detection("task", None) == "context"

    def test_warm_cache(self):
        def generate_directives(task):
            if task == "broken":
                raise RuntimeError("store offline")
            return f"directives for {task}", [f"{task}-rule"]

        warmed = self.manager.warm_cache(
            common_tasks=["login", "broken", "signup"],
            common_contexts=["build a form"],
            generate_directives=generate_directives,
            generate_context=lambda text: f"context for {text}",
        )

        assert warmed == {"directives": 2, "context": 1}
        assert self.manager.get_cached_directive_query("login", None, None) == "directives for login"
        assert self.manager.get_cached_directive_query("signup", "default", {}) == "directives for signup"
        assert self.manager.get_cached_context_detection("build a form", None) == "context for build a form"

    def test_warmed_queries_are_invalidated_by_source_id(self):
        self.manager.warm_cache(
            common_tasks=["login", "signup"],
            generate_directives=lambda task: (f"directives for {task}", [f"{task}-rule", "shared"]),
        )

        assert self.manager.invalidate_on_rule_update(["login-rule"]) == 1
        assert self.manager.get_cached_directive_query("login", None, None) is None
        assert self.manager.get_cached_directive_query("signup", None, None) == "directives for signup"

        assert self.manager.invalidate_on_rule_update(["shared"]) == 1
        assert self.manager.get_cached_directive_query("signup", None, None) is None

    def test_warm_cache_without_generators(self):
        assert self.manager.warm_cache(common_tasks=["login"]) == {"directives": 0, "context": 0}

    def test_overall_stats(self):
        self.manager.cache_directive_query("task", None, None, "directives")
        self.manager.get_cached_directive_query("task", None, None)
        self.manager.get_cached_context_detection("missing", None)
        self.manager.get_cached_ranking_result(self.context, [], None)

        stats = self.manager.get_stats()

        assert stats["directives"].hits == 1
        assert stats["context"].misses == 1
        assert stats["ranking"].misses == 1
        assert stats["overall"].hits == 1
        assert stats["overall"].misses == 2
        assert stats["overall"].size == 1
        assert stats["overall"].hit_rate == pytest.approx(1 / 3)

    def test_clear_all(self):
        self.manager.cache_directive_query("task", None, None, "directives")
        self.manager.cache_context_detection("task", None, "context")
        self.manager.clear_all()
        assert self.manager.get_stats()["overall"].size == 0

    def test_from_config(self):
        config = RankerConfig(cache_max_size=10, cache_cleanup_interval=None, ranking_ttl=42)
        manager = CacheManager.from_config(config)
        try:
            assert manager.ranking.default_ttl == 42
            assert manager.directives.max_size == 10
            assert manager.context.default_ttl == 1800
        finally:
            manager.destroy()
