"""Quote highlighting for extraction evidence.

Locates a quoted excerpt inside the source document even when line wraps,
indentation, doubled spaces or punctuation at a line break differ between the
quote and the source. Every occurrence is highlighted.
"""

import re

from models import HighlightResult, HighlightSegment

# Whitespace in a quote matches any run of whitespace/punctuation in the source.
_FLEXIBLE_SEPARATOR = r"\W+"


def loose_pattern(quote: str) -> re.Pattern[str]:
    """Compile a case-insensitive, whitespace-tolerant pattern for ``quote``."""
    words = quote.split()
    body = _FLEXIBLE_SEPARATOR.join(re.escape(word) for word in words)
    return re.compile(f"({body})", re.IGNORECASE)


def highlight(source_text: str, quote: str) -> HighlightResult:
    """Split ``source_text`` into alternating matched / unmatched segments.

    ``matched`` is False (with the whole text as one unmatched segment) when
    the quote is empty or not found; callers show the full text with a
    "quote not found" notice in that case.
    """
    quote = quote.strip()
    if not quote:
        return _unmatched(source_text)

    parts = loose_pattern(quote).split(source_text)
    if len(parts) == 1:
        return _unmatched(source_text)

    # A capturing split puts matches at odd indexes.
    segments = [
        HighlightSegment(text=part, is_match=index % 2 == 1)
        for index, part in enumerate(parts)
        if part
    ]
    match_count = len(parts) // 2
    return HighlightResult(matched=True, segments=segments, match_count=match_count)


def quote_in_source(source_text: str, quote: str) -> bool:
    quote = quote.strip()
    if not quote:
        return False
    return loose_pattern(quote).search(source_text) is not None


def _unmatched(source_text: str) -> HighlightResult:
    return HighlightResult(
        matched=False,
        segments=[HighlightSegment(text=source_text, is_match=False)],
        match_count=0,
    )
