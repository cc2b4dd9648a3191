from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, List, Optional

VALID_MODES = ("backtest", "paper", "live")


def _truthy(value: str | None) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        return int(raw) if raw not in (None, "") else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    try:
        return float(raw) if raw not in (None, "") else default
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    mode: str = "backtest"
    max_concurrent: int = 2
    calls_per_second: int = 2
    fetch_retries: int = 3
    backoff_s: float = 1.0
    expiration_lookahead: int = 3
    candidates_per_expiry: int = 3
    min_risk_reward: float = 0.15
    top_k: int = 10
    account_equity: float = 25_000.0
    snapshot_dir: str = "storage/snapshots"
    policy_dir: str = "storage/policies"
    outcomes_path: str = "storage/trade_outcomes.json"
    runs_dir: str = "storage/runs"
    macro_calendar_path: str = "storage/macro_events.json"
    persist_runs: bool = True
    fred_api_key: Optional[str] = None


def load_settings() -> Settings:
    mode = os.getenv("PIPELINE_MODE", "backtest").strip().lower()
    return Settings(
        mode=mode,
        max_concurrent=max(1, _env_int("FETCH_MAX_CONCURRENT", 2)),
        calls_per_second=max(1, _env_int("FETCH_CALLS_PER_SECOND", 2)),
        fetch_retries=max(0, _env_int("FETCH_RETRIES", 3)),
        backoff_s=max(0.0, _env_float("FETCH_BACKOFF_S", 1.0)),
        expiration_lookahead=max(1, _env_int("EXPIRATION_LOOKAHEAD", 3)),
        candidates_per_expiry=max(1, _env_int("CANDIDATES_PER_EXPIRY", 3)),
        min_risk_reward=_env_float("MIN_RISK_REWARD", 0.15),
        top_k=max(1, _env_int("SELECT_TOP_K", 10)),
        account_equity=max(1.0, _env_float("ACCOUNT_EQUITY", 25_000.0)),
        snapshot_dir=os.getenv("SNAPSHOT_DIR", "storage/snapshots"),
        policy_dir=os.getenv("POLICY_DIR", "storage/policies"),
        outcomes_path=os.getenv("OUTCOMES_PATH", "storage/trade_outcomes.json"),
        runs_dir=os.getenv("RUNS_DIR", "storage/runs"),
        macro_calendar_path=os.getenv("MACRO_CALENDAR_PATH", "storage/macro_events.json"),
        persist_runs=not _truthy(os.getenv("DISABLE_RUN_PERSISTENCE")),
        fred_api_key=os.getenv("FRED_API_KEY") or None,
    )


def required_env_issues(settings: Optional[Settings] = None) -> List[str]:
    settings = settings or load_settings()
    issues: List[str] = []
    if settings.mode not in VALID_MODES:
        issues.append(f"PIPELINE_MODE must be one of {', '.join(VALID_MODES)}; got {settings.mode!r}.")
    if settings.mode == "live" and not settings.fred_api_key:
        issues.append("Missing FRED_API_KEY; live runs need macro series.")
    return issues


def runtime_summary() -> Dict[str, object]:
    settings = load_settings()
    return {
        "mode": settings.mode,
        "fredConfigured": bool(settings.fred_api_key),
        "snapshotDir": settings.snapshot_dir,
        "policyDir": settings.policy_dir,
        "persistRuns": settings.persist_runs,
        "issues": required_env_issues(settings),
    }
