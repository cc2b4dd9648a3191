from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional, Sequence

from dotenv import load_dotenv

from backend.pipeline import CandidatePipeline, PipelineError, build_providers
from backend.services.env import VALID_MODES, load_settings, runtime_summary
from backend.services.logging_config import configure_logging

logger = logging.getLogger("backend.worker")


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the credit-spread candidate pipeline once.")
    parser.add_argument("--symbols", required=True, help="Comma-separated tickers, e.g. AAPL,MSFT")
    parser.add_argument("--mode", choices=VALID_MODES, default=None)
    parser.add_argument("--policy", default=None, help="Policy id to score against")
    parser.add_argument("--out", default=None, help="Write the JSON payload here instead of stdout")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    configure_logging()
    args = _parse_args(argv)

    settings = load_settings()
    summary = runtime_summary()
    mode = args.mode or settings.mode
    logger.info("start mode=%s", mode)
    if summary["issues"]:
        logger.warning("config issues: %s", summary["issues"])
        if mode == "live":
            logger.error("required env is missing in live mode; exiting")
            return 1

    pipeline = CandidatePipeline(build_providers(settings), settings=settings)
    symbols = [s for s in args.symbols.split(",") if s.strip()]
    try:
        result = pipeline.run(symbols, mode=mode, policy_id=args.policy)
    except PipelineError as exc:
        logger.error("run rejected: %s", exc)
        return 2

    payload = json.dumps(result.as_dict(), indent=2, default=str)
    if args.out:
        with open(args.out, "w", encoding="utf-8") as fh:
            fh.write(payload)
        logger.info("wrote %s", args.out)
    else:
        print(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
