from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOGGER = logging.getLogger("snaprun.trace")


def configure_logging(verbose: bool = False, logger_name: Optional[str] = None) -> logging.Logger:
    """Configure process-wide logging and return a scoped logger."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    logger = logging.getLogger(logger_name or "snaprun")
    logger.debug("Logging configured with level %s", logging.getLevelName(level))
    return logger


def trace_event(path: Optional[Path], event: str, data: Optional[Dict[str, Any]] = None) -> None:
    """
    Append a single ``[timestamp] event {json}`` line to a per-run trace file.

    Tracing is best-effort: failures are logged and never raised to the caller.
    """
    if path is None:
        return
    stamp = datetime.now(timezone.utc).isoformat()
    line = f"[{stamp}] {event} {json.dumps(data or {}, default=str)}\n"
    try:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line)
    except OSError as exc:
        LOGGER.warning("Could not write trace line to %s: %s", path, exc)
