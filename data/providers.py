from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

from data.chain import ChainSnapshot, CompanyOverview, MacroObservation, Quote, SearchResult


@dataclass(frozen=True)
class TradeOutcome:
    symbol: str
    pnl: float
    status: str
    opened: Optional[dt.date] = None
    closed: Optional[dt.date] = None


class OptionChainProvider(Protocol):
    def fetch_chain(self, symbol: str) -> ChainSnapshot: ...


class QuoteProvider(Protocol):
    def fetch_quote(self, symbol: str) -> Quote: ...


class FundamentalsProvider(Protocol):
    def fetch_overview(self, symbol: str) -> CompanyOverview: ...


class MacroSeriesProvider(Protocol):
    def fetch_series(self, series_ids: Sequence[str]) -> dict[str, list[MacroObservation]]: ...


class SearchProvider(Protocol):
    def search(
        self,
        query: str,
        recency_days: int = 7,
        depth: str = "basic",
        max_results: int = 5,
    ) -> list[SearchResult]: ...


class OutcomesStore(Protocol):
    def query_closed_trades(self, symbol: str, limit: int = 50) -> list[TradeOutcome]: ...


class RunPersistence(Protocol):
    def open_run(self, run_id: str, mode: str, symbols: Sequence[str], as_of: dt.datetime) -> None: ...

    def persist_contracts(self, run_id: str, symbol: str, rows: list[dict[str, Any]]) -> None: ...

    def persist_features(self, run_id: str, symbol: str, features: dict[str, Any]) -> None: ...

    def persist_score(self, run_id: str, candidate_id: str, score: dict[str, Any]) -> None: ...

    def persist_candidate(self, run_id: str, candidate: dict[str, Any]) -> None: ...

    def close_run(self, run_id: str, summary: dict[str, Any]) -> None: ...
