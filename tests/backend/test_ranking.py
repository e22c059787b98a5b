"""
Unit tests for the RankingEngine module.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from cache_manager import CacheManager
from models import Directive, ScoringContext, Severity
from ranking import QueryCriteria, RankingEngine, RankingOptions
from token_counter import TokenCounter

MUST_TEXT = "Validate JWT signatures on every request"
SHOULD_TEXT = "Rate limit authentication endpoints"
MAY_TEXT = "Show a spinner while the login form submits"


def candidates():
    return [
        Directive(id="must", text=MUST_TEXT, severity="MUST", topics={"security"}, layers={"2-Application"}),
        Directive(id="should", text=SHOULD_TEXT, severity="SHOULD", topics={"security"}, layers={"2-Application"}),
        Directive(id="may", text=MAY_TEXT, severity="MAY", topics={"ui"}, layers={"1-Presentation"}),
    ]


class FakeSource:
    def __init__(self, directives):
        self.directives = directives
        self.criteria = None

    def query(self, criteria):
        self.criteria = criteria
        return list(self.directives)


class BrokenSource:
    def query(self, criteria):
        raise RuntimeError("database unavailable")


@pytest.mark.unit
class TestRankingEngine:
    """Test suite for the RankingEngine class."""

    def setup_method(self):
        self.engine = RankingEngine()
        self.context = ScoringContext(detected_layer="2-Application", topics=("security",))
        self.counter = TokenCounter()

    def test_end_to_end_selection(self):
        source = FakeSource(candidates())
        options = RankingOptions(max_items=2, token_budget=1000)

        result = self.engine.query_and_rank(source, self.context, options)

        assert [d.id for d in result.directives] == ["must", "should"]
        assert result.directives[0].severity is Severity.MUST
        assert result.stats.searched == 3
        assert result.stats.considered == 3
        assert result.stats.selected == 2
        expected_tokens = 195 + self.counter.estimate_tokens(MUST_TEXT) + self.counter.estimate_tokens(SHOULD_TEXT)
        assert result.stats.total_tokens == expected_tokens
        assert result.stats.budget_remaining == 1000 - expected_tokens
        assert result.candidate_ids == ["must", "should", "may"]

    def test_default_options(self):
        result = self.engine.query_and_rank(FakeSource(candidates()), self.context)
        assert result.stats.selected == 3
        assert [d.id for d in result.directives] == ["must", "should", "may"]

    def test_criteria_passed_to_source(self):
        source = FakeSource([])
        options = RankingOptions(severity_filter=[Severity.MUST], strict_layer=True, candidate_limit=25)

        self.engine.query_and_rank(source, self.context, options)

        assert source.criteria == QueryCriteria(
            layers=("2-Application",),
            topics=("security",),
            technologies=(),
            severities=(Severity.MUST,),
            strict_layer=True,
            limit=25,
        )

    def test_wildcard_layer_is_not_a_criterion(self):
        criteria = self.engine.build_criteria(ScoringContext(detected_layer="*"), RankingOptions())
        assert criteria.layers == ()
        assert criteria.severities == (Severity.MUST, Severity.SHOULD, Severity.MAY)
        assert criteria.limit == 100

    def test_failing_source_returns_empty_result(self):
        result = self.engine.query_and_rank(BrokenSource(), self.context, RankingOptions(token_budget=500))

        assert result.directives == []
        assert result.stats.searched == 0
        assert result.stats.selected == 0
        assert result.stats.budget_remaining == 500

    def test_max_items_cap_recomputes_tokens(self):
        result = self.engine.rank(candidates(), self.context, RankingOptions(max_items=1))

        assert [d.id for d in result.directives] == ["must"]
        assert result.stats.total_tokens == 195 + self.counter.estimate_tokens(MUST_TEXT)

    def test_budget_smaller_than_overhead(self):
        result = self.engine.rank(candidates(), self.context, RankingOptions(token_budget=100))

        assert result.directives == []
        assert result.stats.total_tokens == 100
        assert result.stats.budget_remaining == 0

    def test_severity_filter_applies_to_in_memory_candidates(self):
        options = RankingOptions(severity_filter=[Severity.MUST, Severity.SHOULD])
        result = self.engine.rank(candidates(), self.context, options)

        assert [d.id for d in result.directives] == ["must", "should"]
        assert result.stats.considered == 2

    def test_must_minimum_reported(self):
        result = self.engine.rank(candidates(), self.context, RankingOptions(min_must_items=2))
        assert result.stats.must_minimum_met is False
        assert result.stats.to_payload().must_minimum_met is False

    def test_output_stays_in_severity_order(self):
        directives = [
            Directive(id="may-top", text="Document the design", severity="MAY", topics={"security"},
                      layers={"2-Application"}, authoritative=True),
            Directive(id="must-low", text="Encrypt data at rest", severity="MUST"),
        ]
        result = self.engine.rank(directives, self.context)
        assert [d.id for d in result.directives] == ["must-low", "may-top"]

    def test_ranking_results_are_cached(self):
        cache = CacheManager(cleanup_interval=None)
        engine = RankingEngine(cache=cache)
        try:
            first = engine.rank(candidates(), self.context, RankingOptions(max_items=2))
            second = engine.rank(candidates(), self.context, RankingOptions(max_items=2))
            third = engine.rank(candidates(), self.context, RankingOptions(max_items=1))

            assert second == first
            assert second is not first
            assert [d.id for d in third.directives] == ["must"]
            assert cache.get_stats()["ranking"].hits == 1
        finally:
            cache.destroy()

    def test_mutating_a_result_leaves_the_cache_intact(self):
        cache = CacheManager(cleanup_interval=None)
        engine = RankingEngine(cache=cache)
        try:
            first = engine.rank(candidates(), self.context)
            first.directives.clear()
            first.candidate_ids.append("intruder")
            first.stats.selected = 0

            second = engine.rank(candidates(), self.context)
            assert [d.id for d in second.directives] == ["must", "should", "may"]
            assert second.candidate_ids == ["must", "should", "may"]
            assert second.stats.selected == 3

            second.directives.pop()
            third = engine.rank(candidates(), self.context)
            assert len(third.directives) == 3
        finally:
            cache.destroy()


@pytest.mark.unit
class TestRankingHelpers:
    """Post-processing helpers."""

    def setup_method(self):
        engine = RankingEngine()
        context = ScoringContext(detected_layer="2-Application", topics=("security",))
        self.scored = engine.scoring_engine.score_directives(candidates(), context)

    def test_filter_by_score_threshold(self):
        kept = RankingEngine.filter_by_score_threshold(self.scored, 0.4)
        assert [d.id for d in kept] == ["must", "should"]

    def test_top_n(self):
        assert [d.id for d in RankingEngine.top_n(self.scored, 1)] == ["must"]
        assert RankingEngine.top_n(self.scored, 0) == []

    def test_group_by_severity(self):
        groups = RankingEngine.group_by_severity(self.scored)
        assert [d.id for d in groups[Severity.MUST]] == ["must"]
        assert [d.id for d in groups[Severity.SHOULD]] == ["should"]
        assert [d.id for d in groups[Severity.MAY]] == ["may"]
