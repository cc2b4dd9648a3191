from __future__ import annotations

import datetime as dt
import logging
from typing import Optional, Sequence

import requests

from data.chain import MacroObservation, parse_date, to_float

logger = logging.getLogger(__name__)

FRED_OBSERVATIONS_URL = "https://api.stlouisfed.org/fred/series/observations"
DEFAULT_MACRO_SERIES = ("DFF", "UNRATE", "T10Y3M", "CPIAUCSL")


class FredClient:
    """Macro series provider backed by the FRED observations endpoint."""

    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        base_url: str = FRED_OBSERVATIONS_URL,
        timeout_s: float = 10.0,
        lookback_days: int = 400,
    ) -> None:
        self.api_key = api_key
        self.session = session or requests.Session()
        self.base_url = base_url
        self.timeout_s = timeout_s
        self.lookback_days = lookback_days

    def fetch_series(self, series_ids: Sequence[str]) -> dict[str, list[MacroObservation]]:
        start = (dt.date.today() - dt.timedelta(days=self.lookback_days)).isoformat()
        out: dict[str, list[MacroObservation]] = {}
        failures: list[str] = []
        for series_id in series_ids:
            try:
                out[series_id] = self._fetch_one(series_id, start)
            except (requests.RequestException, ValueError) as exc:
                logger.warning("FRED series %s unavailable: %s", series_id, exc)
                failures.append(series_id)
                out[series_id] = []
        if series_ids and len(failures) == len(series_ids):
            raise RuntimeError(f"all FRED series failed: {', '.join(failures)}")
        return out

    def _fetch_one(self, series_id: str, start: str) -> list[MacroObservation]:
        resp = self.session.get(
            self.base_url,
            params={
                "series_id": series_id,
                "file_type": "json",
                "api_key": self.api_key,
                "observation_start": start,
            },
            timeout=self.timeout_s,
        )
        resp.raise_for_status()
        rows = resp.json().get("observations", [])
        observations: list[MacroObservation] = []
        for row in rows:
            day = parse_date(row.get("date"))
            # FRED marks missing observations with "."
            value = to_float(row.get("value"))
            if day is None or value is None:
                continue
            observations.append(MacroObservation(date=day, value=value))
        observations.sort(key=lambda o: o.date)
        return observations
