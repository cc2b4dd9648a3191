from __future__ import annotations

import logging
import os
import sys


def configure_logging(level: int | str | None = None) -> None:
    """Send logs to stdout in one format; repeated calls are no-ops."""
    if getattr(configure_logging, "_configured", False):
        return

    logging.basicConfig(
        level=level or os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    configure_logging._configured = True
