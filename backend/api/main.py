from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backend.pipeline import CandidatePipeline, PipelineError, build_providers
from backend.services.env import load_settings, runtime_summary
from backend.services.logging_config import configure_logging

load_dotenv()
configure_logging()

app = FastAPI(title="Credit Spread Candidate Pipeline", version="1.0.0")


class RunRequest(BaseModel):
    symbols: List[str] = Field(min_length=1)
    mode: str = "backtest"
    policy_id: Optional[str] = None


def get_pipeline() -> CandidatePipeline:
    settings = load_settings()
    return CandidatePipeline(build_providers(settings), settings=settings)


@app.get("/health")
def health() -> JSONResponse:
    summary = runtime_summary()
    issues = summary.get("issues", [])
    status = "ok" if not issues else "error"
    payload = {
        "status": status,
        "mode": summary["mode"],
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "fredConfigured": summary["fredConfigured"],
        "issues": issues,
    }
    return JSONResponse(payload, status_code=200 if status == "ok" else 503)


@app.post("/runs")
async def create_run(request: RunRequest, pipeline: CandidatePipeline = Depends(get_pipeline)) -> dict:
    try:
        result = await pipeline.run_async(request.symbols, mode=request.mode, policy_id=request.policy_id)
    except PipelineError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return result.as_dict()
