"""
Tests for the DirectiveService orchestration layer.
"""

import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from cache_manager import CacheManager
from config import RankerConfig
from directive_store import DirectiveStore
from models import ContextPayload, Directive, QueryDirectivesRequest
from services import DirectiveService

SECURITY_CONTEXT = ContextPayload(detected_layer="2-Application", topics=["security"])


def seed_directives():
    return [
        Directive(id="jwt", text="Validate JWT signatures on every request", severity="MUST",
                  topics={"security"}, layers={"2-Application"}),
        Directive(id="rate", text="Rate limit authentication endpoints", severity="SHOULD",
                  topics={"security", "api"}, layers={"2-Application"}),
        Directive(id="ui", text="Show a spinner while forms submit", severity="MAY",
                  topics={"ui"}, layers={"1-Presentation"}),
    ]


class TestDirectiveService:
    """Test suite for DirectiveService."""

    def setup_method(self):
        self.store = DirectiveStore()
        self.store.upsert(seed_directives())
        self.cache = CacheManager(cleanup_interval=None)
        self.service = DirectiveService(store=self.store, cache=self.cache)

    def teardown_method(self):
        self.service.shutdown()

    def test_query_with_explicit_context(self):
        request = QueryDirectivesRequest(task_description="secure the login api", context=SECURITY_CONTEXT)
        response = self.service.query_directives(request)

        assert [d.id for d in response.directives] == ["jwt", "rate"]
        assert response.directives[0].severity.value == "MUST"
        assert response.stats.selected == 2
        assert response.context.detected_layer == "2-Application"
        assert response.cached is False

    def test_query_detects_context_when_missing(self):
        request = QueryDirectivesRequest(task_description="Implement JWT authentication for the REST API endpoint")
        response = self.service.query_directives(request)

        assert response.context.detected_layer == "2-Application"
        assert "security" in response.context.topics
        assert response.directives[0].id == "jwt"

    def test_repeated_query_is_served_from_cache(self):
        request = QueryDirectivesRequest(task_description="secure the login api", context=SECURITY_CONTEXT)
        self.service.query_directives(request)
        second = self.service.query_directives(request)

        assert second.cached is True
        assert self.cache.get_stats()["directives"].hits == 1

    def test_different_options_are_cached_separately(self):
        base = QueryDirectivesRequest(task_description="secure the login api", context=SECURITY_CONTEXT)
        limited = QueryDirectivesRequest(
            task_description="secure the login api", context=SECURITY_CONTEXT, max_items=1
        )
        self.service.query_directives(base)
        response = self.service.query_directives(limited)

        assert response.cached is False
        assert [d.id for d in response.directives] == ["jwt"]

    def test_request_defaults_come_from_config(self):
        service = DirectiveService(
            store=self.store,
            cache=CacheManager(cleanup_interval=None),
            config=RankerConfig(default_max_items=1, cache_cleanup_interval=None),
        )
        try:
            request = QueryDirectivesRequest(task_description="secure the login api", context=SECURITY_CONTEXT)
            assert len(service.query_directives(request).directives) == 1
        finally:
            service.shutdown()

    def test_new_directive_clears_cached_results(self):
        request = QueryDirectivesRequest(task_description="secure the login api", context=SECURITY_CONTEXT)
        self.service.query_directives(request)

        result = self.service.upsert_directives(
            [Directive(id="csrf", text="Require CSRF tokens", severity="MUST", topics={"security"},
                       layers={"2-Application"})]
        )
        response = self.service.query_directives(request)

        assert result == {"created": ["csrf"], "updated": []}
        assert response.cached is False
        assert "csrf" in [d.id for d in response.directives]

    def test_updated_directive_invalidates_cached_results(self):
        request = QueryDirectivesRequest(task_description="secure the login api", context=SECURITY_CONTEXT)
        self.service.query_directives(request)

        self.service.upsert_directives(
            [Directive(id="rate", text="Throttle login attempts", severity="SHOULD", topics={"security"},
                       layers={"2-Application"})]
        )
        response = self.service.query_directives(request)

        assert response.cached is False
        assert "Throttle login attempts" in [d.text for d in response.directives]

    def test_delete_directives(self):
        request = QueryDirectivesRequest(task_description="secure the login api", context=SECURITY_CONTEXT)
        self.service.query_directives(request)

        assert self.service.delete_directives(["jwt", "missing"]) == ["jwt"]
        response = self.service.query_directives(request)

        assert response.cached is False
        assert "jwt" not in [d.id for d in response.directives]

    def test_detect_context_is_cached(self):
        first = self.service.detect_context("Add a database migration for the orders table")
        second = self.service.detect_context("Add a database migration for the orders table")

        assert first.layer == "4-Persistence"
        assert second is first
        assert self.cache.get_stats()["context"].hits == 1

    def test_detect_context_without_keywords(self):
        context = self.service.detect_context("Add a database migration", return_keywords=False)
        assert context.keywords == []

    def test_failing_provider_falls_back_to_rules(self):
        provider = MagicMock()
        provider.name = "ollama"
        provider.detect_context.side_effect = RuntimeError("model crashed")
        service = DirectiveService(store=self.store, cache=CacheManager(cleanup_interval=None), provider=provider)
        try:
            context = service.detect_context("Implement JWT authentication for the REST API endpoint")
            assert context.provider == "rule-based"
            assert context.layer == "2-Application"
        finally:
            service.shutdown()

    def test_warm_cache_prefills_queries(self):
        warmed = self.service.warm_cache(
            tasks=["Implement JWT authentication for the REST API endpoint"],
            contexts=["Render the login form component"],
        )
        assert warmed == {"directives": 1, "context": 1}

        response = self.service.query_directives(
            QueryDirectivesRequest(task_description="Implement JWT authentication for the REST API endpoint")
        )
        assert response.cached is True

    def test_delete_invalidates_warmed_queries(self):
        task = "Implement JWT authentication for the REST API endpoint"
        self.service.warm_cache(tasks=[task])

        self.service.delete_directives(["jwt"])
        response = self.service.query_directives(QueryDirectivesRequest(task_description=task))

        assert response.cached is False
        assert "jwt" not in [d.id for d in response.directives]
        assert [d.id for d in response.directives] == ["rate"]

    def test_update_invalidates_warmed_queries(self):
        task = "Implement JWT authentication for the REST API endpoint"
        self.service.warm_cache(tasks=[task])

        reworded = Directive(id="rate", text="Throttle login attempts per account", severity="SHOULD",
                             topics={"security", "api"}, layers={"2-Application"})
        self.service.upsert_directives([reworded])
        response = self.service.query_directives(QueryDirectivesRequest(task_description=task))

        assert response.cached is False
        assert response.directives[1].text == "Throttle login attempts per account"

    def test_cached_context_is_not_shared_with_callers(self):
        first = self.service.detect_context("Implement JWT authentication for the REST API endpoint")
        first.topics.clear()
        first.keywords.append("tampered")

        second = self.service.detect_context("Implement JWT authentication for the REST API endpoint")
        assert "security" in second.topics
        assert "tampered" not in second.keywords

    def test_cached_response_is_not_shared_with_callers(self):
        request = QueryDirectivesRequest(task_description="secure the login api", context=SECURITY_CONTEXT)
        first = self.service.query_directives(request)
        first.directives.clear()

        second = self.service.query_directives(request)
        assert second.cached is True
        assert [d.id for d in second.directives] == ["jwt", "rate"]
        second.directives.pop()

        third = self.service.query_directives(request)
        assert [d.id for d in third.directives] == ["jwt", "rate"]

    def test_cache_stats_payload(self):
        self.service.detect_context("hello there")
        stats = self.service.cache_stats()

        assert stats.context.misses == 1
        assert stats.context.size == 1
        assert stats.overall.size == 1

    def test_clear_caches(self):
        self.service.detect_context("hello there")
        self.service.clear_caches()
        assert self.service.cache_stats().overall.size == 0
