from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging for the console.

    Session logs (`on_log` callbacks) are a separate, user-facing stream;
    this only sets up the developer console output.
    """

    effective_level = (level or os.environ.get("PEERLINK_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

    # aioice/aiortc are chatty at DEBUG; keep them one notch quieter than us
    if logging.getLevelName(effective_level) == logging.DEBUG:
        for name in ("aioice", "aiortc"):
            logging.getLogger(name).setLevel(logging.INFO)
