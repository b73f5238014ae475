from __future__ import annotations

import logging

from newsletter_tracker.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Resolve the level from settings so operators can tune verbosity via env.
    resolved = (level or get_settings().log_level or "INFO").upper()
    numeric = logging.getLevelName(resolved)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=numeric, format=_LOG_FORMAT)
    root.setLevel(numeric)
    # httpx logs every request at INFO; keep tracker sends out of the default output.
    logging.getLogger("httpx").setLevel(max(numeric, logging.WARNING))
