from __future__ import annotations

import datetime as dt
import json
from pathlib import Path
from typing import Any, Optional, Sequence

from data.chain import (
    UTC,
    ChainSnapshot,
    CompanyOverview,
    MacroObservation,
    Quote,
    SearchResult,
    chain_from_dict,
    parse_date,
    parse_datetime,
    to_float,
)

DEFAULT_SNAPSHOT_DIR = "storage/snapshots"


class SnapshotDirectory:
    """
    File-backed market data used for backtest runs.

    Layout:
      <root>/<SYMBOL>/chain.json     {"as_of": "...", "contracts": [...]}
      <root>/<SYMBOL>/quote.json     {"price": 101.2, "closes": [...]}
      <root>/<SYMBOL>/overview.json  {"market_cap": ..., "ma_50": ...}
      <root>/<SYMBOL>/news.json      {"results": [{"title": ..., "published_at": ...}]}
      <root>/macro.json              {"DFF": [{"date": "...", "value": 5.3}], ...}
      <root>/macro_news.json         {"results": [...]}
    """

    def __init__(self, root: str = DEFAULT_SNAPSHOT_DIR, as_of: Optional[dt.datetime] = None) -> None:
        self.root = Path(root)
        self.as_of = as_of

    def pinned(self, as_of: dt.datetime) -> "SnapshotDirectory":
        return SnapshotDirectory(str(self.root), as_of=as_of)

    def fetch_chain(self, symbol: str) -> ChainSnapshot:
        return chain_from_dict(symbol, self._read(symbol, "chain.json"))

    def fetch_quote(self, symbol: str) -> Quote:
        raw = self._read(symbol, "quote.json")
        price = to_float(raw.get("price"))
        if price is None or price <= 0:
            raise ValueError(f"{symbol}: quote snapshot has no usable price")
        closes = [v for v in (to_float(c) for c in raw.get("closes", [])) if v is not None]
        return Quote(symbol=symbol.upper(), price=price, as_of=parse_datetime(raw.get("as_of")), closes=closes)

    def fetch_overview(self, symbol: str) -> CompanyOverview:
        raw = self._read(symbol, "overview.json")
        return CompanyOverview(
            symbol=symbol.upper(),
            name=raw.get("name"),
            sector=raw.get("sector"),
            market_cap=to_float(raw.get("market_cap")),
            pe_ratio=to_float(raw.get("pe_ratio")),
            beta=to_float(raw.get("beta")),
            analyst_target=to_float(raw.get("analyst_target")),
            ma_50=to_float(raw.get("ma_50")),
            ma_200=to_float(raw.get("ma_200")),
            high_52w=to_float(raw.get("high_52w")),
            low_52w=to_float(raw.get("low_52w")),
        )

    def fetch_series(self, series_ids: Sequence[str]) -> dict[str, list[MacroObservation]]:
        raw = _load_json(self.root / "macro.json")
        out: dict[str, list[MacroObservation]] = {}
        for series_id in series_ids:
            rows = raw.get(series_id, []) if isinstance(raw, dict) else []
            observations = []
            for row in rows:
                day = parse_date(row.get("date")) if isinstance(row, dict) else None
                value = to_float(row.get("value")) if isinstance(row, dict) else None
                if day is not None and value is not None:
                    observations.append(MacroObservation(date=day, value=value))
            out[series_id] = sorted(observations, key=lambda o: o.date)
        return out

    def search(
        self,
        query: str,
        recency_days: int = 7,
        depth: str = "basic",
        max_results: int = 5,
    ) -> list[SearchResult]:
        token = query.split()[0].upper() if query.strip() else ""
        path = self.root / token / "news.json"
        if not token or not path.exists():
            path = self.root / "macro_news.json"
        if not path.exists():
            return []
        raw = _load_json(path)
        rows = raw.get("results", []) if isinstance(raw, dict) else raw
        reference = self.as_of or dt.datetime.now(UTC)
        cutoff = reference - dt.timedelta(days=recency_days)
        results: list[SearchResult] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            published = parse_datetime(row.get("published_at"))
            if published is not None and not cutoff <= published <= reference:
                continue
            results.append(
                SearchResult(
                    title=str(row.get("title", "")),
                    snippet=str(row.get("snippet", row.get("content", ""))),
                    url=str(row.get("url", "")),
                    published_at=published,
                    score=to_float(row.get("score")),
                )
            )
        return results[:max_results]

    def _read(self, symbol: str, name: str) -> dict[str, Any]:
        path = self.root / symbol.upper() / name
        if not path.exists():
            raise FileNotFoundError(f"missing snapshot {path}")
        raw = _load_json(path)
        if not isinstance(raw, dict):
            raise ValueError(f"snapshot {path} is not a JSON object")
        return raw


def _load_json(path: Path) -> Any:
    if not path.exists():
        return {}
    return json.loads(path.read_text())
