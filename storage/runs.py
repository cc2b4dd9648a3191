from __future__ import annotations

import datetime as dt
import json
from pathlib import Path
from typing import Any, Sequence

DEFAULT_RUNS_DIR = "storage/runs"


class JsonRunStore:
    """Persists each run as `<directory>/<run_id>.json`, rewritten on every write."""

    def __init__(self, directory: str = DEFAULT_RUNS_DIR) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def open_run(self, run_id: str, mode: str, symbols: Sequence[str], as_of: dt.datetime) -> None:
        self._save(
            run_id,
            {
                "run_id": run_id,
                "mode": mode,
                "symbols": list(symbols),
                "as_of": as_of.isoformat(),
                "status": "open",
                "contracts": {},
                "features": {},
                "scores": {},
                "candidates": [],
                "summary": None,
            },
        )

    def persist_contracts(self, run_id: str, symbol: str, rows: list[dict[str, Any]]) -> None:
        state = self.load(run_id)
        state["contracts"][symbol] = rows
        self._save(run_id, state)

    def persist_features(self, run_id: str, symbol: str, features: dict[str, Any]) -> None:
        state = self.load(run_id)
        state["features"][symbol] = features
        self._save(run_id, state)

    def persist_score(self, run_id: str, candidate_id: str, score: dict[str, Any]) -> None:
        state = self.load(run_id)
        state["scores"][candidate_id] = score
        self._save(run_id, state)

    def persist_candidate(self, run_id: str, candidate: dict[str, Any]) -> None:
        state = self.load(run_id)
        state["candidates"].append(candidate)
        self._save(run_id, state)

    def close_run(self, run_id: str, summary: dict[str, Any]) -> None:
        state = self.load(run_id)
        state["status"] = "closed"
        state["summary"] = summary
        state["closed_at"] = dt.datetime.now(dt.timezone.utc).isoformat()
        self._save(run_id, state)

    def load(self, run_id: str) -> dict[str, Any]:
        path = self._path(run_id)
        if not path.exists():
            raise KeyError(f"run {run_id} was never opened")
        return json.loads(path.read_text())

    def _path(self, run_id: str) -> Path:
        return self.directory / f"{run_id}.json"

    def _save(self, run_id: str, state: dict[str, Any]) -> None:
        path = self._path(run_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(state, indent=2, default=str))
        tmp.replace(path)
