# pyright: reportMissingImports=false, reportMissingModuleSource=false
from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import orjson
import structlog


def resolve_logs_dir(logs_dir: str | Path | None = None) -> Path:
    """Directory for per-run event files; ``PBP_LOGS_DIR`` overrides the ``logs`` default."""
    return Path(logs_dir or os.getenv("PBP_LOGS_DIR") or "logs")


def _stderr_logger(*args) -> structlog.PrintLogger:
    return structlog.PrintLogger(file=sys.stderr)


def configure_logging(level: Optional[str] = None) -> None:
    """Render structlog events as JSON on stderr.

    Nothing is written to disk here; run event files are created on first use
    by :func:`log_run_event`. Query and bench output on stdout stays clean.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=log_level, stream=sys.stderr, format="%(message)s")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(serializer=lambda obj, **kw: orjson.dumps(obj, default=str).decode()),
        ],
        context_class=dict,
        logger_factory=_stderr_logger,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        # sys.stderr is looked up per call; test runners swap it
        cache_logger_on_first_use=False,
    )


def log_run_event(run_id: str, event: str, logs_dir: str | Path | None = None, **fields) -> Path:
    """Append one JSON line for ``event`` to ``<logs_dir>/<run_id>.jsonl`` and return the path."""
    path = resolve_logs_dir(logs_dir) / f"{run_id}.jsonl"
    path.parent.mkdir(parents=True, exist_ok=True)
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "run_id": run_id, "event": event, **fields}
    with path.open("ab") as f:
        f.write(orjson.dumps(rec, default=str) + b"\n")
    return path
