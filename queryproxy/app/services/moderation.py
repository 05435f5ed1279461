"""Pattern-based offensive content screen for queries and model output."""

import re
from dataclasses import dataclass
from typing import Optional

QUERY_REFUSAL = (
    "I apologize, but I cannot assist with that type of request. "
    "Please ask me something else, and I'll be happy to help."
)

OUTPUT_REFUSAL = (
    "I apologize, but I cannot provide content that may be inappropriate or offensive. "
    "Please ask me something else, and I'll be happy to help."
)


@dataclass(frozen=True)
class ScreenResult:
    is_offensive: bool
    matched_pattern: Optional[str] = None


@dataclass(frozen=True)
class FilterResult:
    filtered: str
    was_filtered: bool


class ContentModerator:
    """Screens text against a fixed set of offensive-content patterns.

    Matching is case-insensitive over the whole text; the first hit wins.
    """

    OFFENSIVE_PATTERNS = [
        # Hate speech
        r"\b(n[il1]+g[ae]r|f[ae]g[go]t|k[i1]ke|sp[i1]c|ch[i1]nk|t[o0]wel[ie]|r[ea]tard)\b",
        # Self-harm
        r"\b(k[i1]ll\s+(yourself|urself)|kys|su[i1]c[il1]de)\b",
        # Violence
        r"\b(bomb|terror|assassinate|murder|rape)\b",
        # Explicit content
        r"\b(porn|xxx|sex\s+toy|nude|naked|penis|vagina)\b",
        # Illegal activities
        r"\b(drug\s+deal|illegal\s+weapon|hack\s+into|steal\s+credit)\b",
    ]

    _COMPILED = [re.compile(p, re.IGNORECASE) for p in OFFENSIVE_PATTERNS]

    @classmethod
    def screen(cls, text: Optional[str]) -> ScreenResult:
        """Check whether text contains offensive content."""
        if not text:
            return ScreenResult(is_offensive=False)

        normalized = text.strip()
        for pattern in cls._COMPILED:
            if pattern.search(normalized):
                return ScreenResult(is_offensive=True, matched_pattern=pattern.pattern)
        return ScreenResult(is_offensive=False)

    @classmethod
    def filter_output(cls, text: Optional[str]) -> FilterResult:
        """Replace offensive model output with the canned refusal."""
        if cls.screen(text).is_offensive:
            return FilterResult(filtered=OUTPUT_REFUSAL, was_filtered=True)
        return FilterResult(filtered=text or "", was_filtered=False)
