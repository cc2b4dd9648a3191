from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Optional, Protocol

from data.chain import to_float
from strategies.policy import Policy, PolicyFactor, PolicyNotFound, PolicyShapeError, normalize_direction

DEFAULT_POLICY_DIR = "storage/policies"
_POLICY_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class PolicyLoader(Protocol):
    def load(self, policy_id: str) -> Policy: ...


class JsonPolicyLoader:
    """
    Reads policies from `<directory>/<policy_id>.json`.

    File format:
    {
      "name": "Conservative PCS",
      "min_dte": 7, "max_dte": 45,
      "factors": [
        {"key": "delta", "display_name": "Short delta", "weight": 0.25,
         "threshold": 0.18, "direction": "lte", "enabled": true}
      ]
    }
    Weights on a 1-10 importance scale are rescaled to 0-1.
    """

    def __init__(self, directory: str = DEFAULT_POLICY_DIR) -> None:
        self.directory = Path(directory)

    def load(self, policy_id: str) -> Policy:
        if not policy_id or not _POLICY_ID_RE.match(policy_id):
            raise PolicyNotFound(f"invalid policy id {policy_id!r}")
        path = self.directory / f"{policy_id}.json"
        if not path.exists():
            raise PolicyNotFound(f"policy {policy_id!r} not found in {self.directory}")
        try:
            raw = json.loads(path.read_text())
        except ValueError as exc:
            raise PolicyShapeError(f"policy {policy_id!r} is not valid JSON: {exc}") from exc
        return policy_from_dict(policy_id, raw)


def policy_from_dict(policy_id: str, raw: Any) -> Policy:
    if not isinstance(raw, dict):
        raise PolicyShapeError(f"policy {policy_id!r} must be a JSON object")
    rows = raw.get("factors")
    if not isinstance(rows, list) or not rows:
        raise PolicyShapeError(f"policy {policy_id!r} has no factors")

    weights = [to_float(r.get("weight")) if isinstance(r, dict) else None for r in rows]
    rescale = any(w is not None and w > 1.0 for w in weights)

    factors = []
    for row, weight in zip(rows, weights):
        if not isinstance(row, dict) or not row.get("key"):
            raise PolicyShapeError(f"policy {policy_id!r}: every factor needs a key")
        if weight is None:
            raise PolicyShapeError(f"policy {policy_id!r}: factor {row['key']!r} has no numeric weight")
        factor = PolicyFactor(
            key=str(row["key"]),
            display_name=str(row.get("display_name") or row["key"]),
            weight=weight / 10.0 if rescale else weight,
            direction=normalize_direction(row.get("direction", "gte")),
            threshold=to_float(row.get("threshold")),
            threshold_max=to_float(row.get("threshold_max")),
            enabled=bool(row.get("enabled", True)),
        )
        factor.validate()
        factors.append(factor)

    return Policy(
        id=policy_id,
        name=str(raw.get("name") or policy_id),
        factors=tuple(factors),
        min_dte=_opt_int(raw.get("min_dte")),
        max_dte=_opt_int(raw.get("max_dte")),
    )


def _opt_int(value: Any) -> Optional[int]:
    out = to_float(value)
    return None if out is None else int(out)
