from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    raw = (level or os.getenv("LOG_LEVEL", "INFO")).strip().upper()
    resolved = logging.getLevelName(raw)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    logging.getLogger("integration_outbox").setLevel(resolved)
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(max(resolved, logging.WARNING))
