"""Severity-aware selection of scored items under a token budget."""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Tuple

from models import BudgetSelection, Severity
from token_counter import TokenCounter

logger = logging.getLogger(__name__)


class BudgetAllocator:
    """Greedy, tiered budget filling.

    Items are anything exposing ``text`` (and ``severity`` for tiering). The
    caller is expected to pass them already sorted by score.
    """

    def __init__(self, token_counter: TokenCounter | None = None):
        self.token_counter = token_counter or TokenCounter()

    def allocate_budget_by_severity(
        self,
        items: Sequence[Any],
        budget: int,
        reserve_tokens: int = 0,
        min_must_items: Optional[int] = None,
    ) -> BudgetSelection:
        """Fill the budget with MUST items, then SHOULD, then MAY.

        Each tier keeps its input order and stops at the first item that would
        overflow. When ``min_must_items`` is not met after the MUST tier the
        selection is returned early with ``must_minimum_met`` set to False.
        """
        buckets = {severity: [] for severity in Severity}
        for item in items:
            buckets[Severity(item.severity)].append(item)

        total = self._initial_total(budget, reserve_tokens)
        included: List[Any] = []

        total = self._fill(buckets[Severity.MUST], budget, total, included)
        if min_must_items and len(included) < min_must_items:
            logger.info(
                "Only %d of %d required MUST directives fit in a %d token budget",
                len(included),
                min_must_items,
                budget,
            )
            return self._selection(
                included, total, budget, len(items), min_must_items, must_minimum_met=False
            )

        for severity in (Severity.SHOULD, Severity.MAY):
            total = self._fill(buckets[severity], budget, total, included)

        return self._selection(included, total, budget, len(items), min_must_items)

    def filter_by_budget(
        self,
        items: Sequence[Any],
        budget: int,
        reserve_tokens: int = 0,
    ) -> BudgetSelection:
        """Single greedy pass in input order, without severity tiers."""
        total = self._initial_total(budget, reserve_tokens)
        included: List[Any] = []
        total = self._fill(items, budget, total, included)
        return self._selection(included, total, budget, len(items), None)

    def _fill(self, items: Sequence[Any], budget: int, total: int, included: List[Any]) -> int:
        for item in items:
            tokens = self.token_counter.estimate_tokens(item.text)
            if total + tokens > budget:
                break
            included.append(item)
            total += tokens
        return total

    def _initial_total(self, budget: int, reserve_tokens: int) -> int:
        reserve = max(0, int(reserve_tokens or 0))
        budget = max(0, int(budget))
        if reserve > budget:
            logger.warning(
                "Reserved formatting overhead (%d tokens) exceeds the budget (%d); clamping",
                reserve,
                budget,
            )
            return budget
        return reserve

    @staticmethod
    def _selection(
        included: List[Any],
        total: int,
        budget: int,
        considered: int,
        min_must_items: Optional[int],
        must_minimum_met: bool = True,
    ) -> BudgetSelection:
        budget = max(0, int(budget))
        return BudgetSelection(
            items=included,
            total_tokens=total,
            budget_remaining=budget - total,
            items_considered=considered,
            items_included=len(included),
            must_items_required=min_must_items,
            must_minimum_met=must_minimum_met,
        )


def split_by_severity(items: Sequence[Any]) -> Tuple[List[Any], List[Any], List[Any]]:
    must = [i for i in items if Severity(i.severity) is Severity.MUST]
    should = [i for i in items if Severity(i.severity) is Severity.SHOULD]
    may = [i for i in items if Severity(i.severity) is Severity.MAY]
    return must, should, may
