from __future__ import annotations

from typing import Optional, Sequence

from data.chain import SearchResult
from signals.news import sentiment_label, sentiment_score
from strategies.models import Candidate


def main_risk(candidate: Candidate) -> str:
    flags = candidate.guardrail_flags
    if flags.get("earnings_risk"):
        return "an upcoming earnings release"
    if flags.get("macro_event"):
        return "a scheduled macro event"
    if flags.get("news_spike"):
        return "a spike in news volume"
    return "general market volatility"


def short_summary(candidate: Candidate, iv_rank: Optional[float], news: Sequence[SearchResult]) -> str:
    iv_phrase = "high IV rank" if iv_rank is not None and iv_rank > 50 else "balanced IV"
    tone = sentiment_label(sentiment_score(news))
    news_phrase = "unavailable" if tone == "unknown" else tone
    return (
        f"This trade is {candidate.fit_score:.0f}% aligned with your policy and benefits from {iv_phrase}. "
        f"Recent news is {news_phrase}. The main risk is {main_risk(candidate)}."
    )


def headline_digest(news: Sequence[SearchResult], limit: int = 3) -> list[str]:
    return [r.title for r in news[:limit] if r.title]
