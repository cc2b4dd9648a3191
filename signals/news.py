from __future__ import annotations

import datetime as dt
import math
import re
from typing import Iterable, Optional, Sequence

from data.chain import SearchResult

BULLISH_RE = re.compile(
    r"\b(bullish|upgraded?|beats?|strong|growth|rally|surge|soar|outperform|record high|positive|gains?|raises? guidance)\b",
    re.IGNORECASE,
)
BEARISH_RE = re.compile(
    r"\b(bearish|downgraded?|miss(?:es|ed)?|weak|decline|plunge|crash|concern|lawsuit|investigation|negative|cuts? guidance|losses)\b",
    re.IGNORECASE,
)

EARNINGS_TERMS = ("earnings",)
MACRO_EVENT_TERMS = (
    "fomc",
    "fed meeting",
    "rate decision",
    "cpi",
    "inflation report",
    "nonfarm",
    "payrolls",
    "nfp",
)


def keyword_counts(results: Sequence[SearchResult]) -> tuple[int, int]:
    bullish = 0
    bearish = 0
    for result in results:
        text = result.text
        bullish += len(BULLISH_RE.findall(text))
        bearish += len(BEARISH_RE.findall(text))
    return bullish, bearish


def sentiment_score(results: Sequence[SearchResult]) -> Optional[float]:
    """Bullish share of keyword hits in [0, 1]; 0.5 when articles carry no hits, None with no articles."""
    if not results:
        return None
    bullish, bearish = keyword_counts(results)
    total = bullish + bearish
    if total == 0:
        return 0.5
    return bullish / total


def sentiment_label(score: Optional[float]) -> str:
    if score is None:
        return "unknown"
    if score > 0.6:
        return "positive"
    if score < 0.4:
        return "negative"
    return "neutral"


def mentions_any(results: Iterable[SearchResult], terms: Sequence[str]) -> bool:
    for result in results:
        text = result.text.lower()
        if any(term in text for term in terms):
            return True
    return False


def count_published_since(results: Sequence[SearchResult], reference: dt.datetime, days: int) -> Optional[int]:
    """Counts results dated within `days` of `reference`; None when no result carries a date."""
    dated = [r.published_at for r in results if r.published_at is not None]
    if not dated:
        return None
    cutoff = reference - dt.timedelta(days=days)
    return sum(1 for ts in dated if cutoff <= ts <= reference)


def news_z_score(count_7d: Optional[int], count_90d: Optional[int]) -> Optional[float]:
    """Poisson z-score of the 7-day daily rate against the 90-day baseline rate."""
    if count_7d is None or count_90d is None or count_90d <= 0:
        return None
    baseline = count_90d / 90.0
    recent = count_7d / 7.0
    return (recent - baseline) / math.sqrt(baseline)
