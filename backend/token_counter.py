"""
Token estimation for budget management.

Approximates how many model tokens a piece of directive text will consume and
how much room the formatted context block needs around it.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import numpy as np

_WORD_SPLIT_RE = re.compile(r"\s+")

HEADER_TOKENS = 10
METADATA_TOKENS = 50
CITATION_TOKENS_PER_SECTION = 20
SECTION_HEADER_TOKENS = 15
FOOTER_TOKENS = 30
DEFAULT_SECTIONS = 3


@dataclass(frozen=True)
class TokenEstimate:
    text: str
    estimated_tokens: int


class TokenCounter:
    """Estimates and tracks token usage for directive text."""

    def estimate_tokens(self, text: Optional[str]) -> int:
        """
        Estimate tokens for a single text string.

        Takes the larger of a character-based estimate (~4 characters per
        token) and a word-based one (~1.2 tokens per word), so the budget is
        overestimated rather than underestimated.

        Args:
            text: Text to measure

        Returns:
            Estimated token count, 0 for empty text
        """
        if not text:
            return 0
        char_estimate = math.ceil(len(text) / 4)
        word_count = len([w for w in _WORD_SPLIT_RE.split(text) if w])
        word_estimate = math.ceil(word_count * 1.2)
        return max(char_estimate, word_estimate)

    def estimate_tokens_for_multiple(self, texts: Iterable[str]) -> List[TokenEstimate]:
        return [TokenEstimate(text=t, estimated_tokens=self.estimate_tokens(t)) for t in texts]

    def calculate_format_overhead(
        self,
        include_header: bool = False,
        include_metadata: bool = False,
        include_citations: bool = False,
        num_sections: Optional[int] = None,
    ) -> int:
        """
        Tokens to reserve for the rendered context block around the directives.

        Args:
            include_header: Reserve room for the block title
            include_metadata: Reserve room for the detected-context summary
            include_citations: Reserve a source footer per section
            num_sections: Severity sections rendered (defaults to one citation
                footer and three section headers)

        Returns:
            Overhead in tokens
        """
        overhead = 0
        if include_header:
            overhead += HEADER_TOKENS
        if include_metadata:
            overhead += METADATA_TOKENS
        if include_citations:
            overhead += CITATION_TOKENS_PER_SECTION * (num_sections or 1)
        overhead += SECTION_HEADER_TOKENS * (num_sections or DEFAULT_SECTIONS)
        overhead += FOOTER_TOKENS
        return overhead

    def estimate_context_block(
        self,
        texts: Iterable[str],
        include_header: bool = False,
        include_metadata: bool = False,
        include_citations: bool = False,
    ) -> int:
        overhead = self.calculate_format_overhead(
            include_header=include_header,
            include_metadata=include_metadata,
            include_citations=include_citations,
            num_sections=DEFAULT_SECTIONS,
        )
        return overhead + sum(self.estimate_tokens(t) for t in texts)

    def get_token_stats(self, texts: Iterable[str]) -> Dict[str, float]:
        estimates = np.asarray([self.estimate_tokens(t) for t in texts], dtype=np.int64)
        if estimates.size == 0:
            return {"total": 0, "average": 0.0, "min": 0, "max": 0, "median": 0}
        ordered = np.sort(estimates)
        return {
            "total": int(ordered.sum()),
            "average": float(ordered.mean()),
            "min": int(ordered[0]),
            "max": int(ordered[-1]),
            # Upper median, always an observed estimate.
            "median": int(ordered[ordered.size // 2]),
        }
