from __future__ import annotations

import json
from pathlib import Path

from data.chain import parse_date, to_float
from data.providers import TradeOutcome

DEFAULT_OUTCOMES_PATH = "storage/trade_outcomes.json"


class JsonOutcomesStore:
    """Closed-trade history kept as `{"trades": [{"symbol", "pnl", "status", "entry_date", "exit_date"}]}`."""

    def __init__(self, path: str = DEFAULT_OUTCOMES_PATH) -> None:
        self.path = Path(path)

    def query_closed_trades(self, symbol: str, limit: int = 50) -> list[TradeOutcome]:
        if not self.path.exists():
            return []
        raw = json.loads(self.path.read_text())
        rows = raw.get("trades", []) if isinstance(raw, dict) else raw

        out: list[TradeOutcome] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            if str(row.get("symbol", "")).upper() != symbol.upper():
                continue
            status = str(row.get("status", "")).lower()
            pnl = to_float(row.get("pnl", row.get("realized_pnl")))
            closed = parse_date(row.get("exit_date"))
            if status not in {"closed", "expired"} or pnl is None or closed is None:
                continue
            out.append(
                TradeOutcome(
                    symbol=symbol.upper(),
                    pnl=pnl,
                    status=status,
                    opened=parse_date(row.get("entry_date")),
                    closed=closed,
                )
            )
        out.sort(key=lambda o: o.closed, reverse=True)
        return out[:limit]
