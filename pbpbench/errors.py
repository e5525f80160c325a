from __future__ import annotations

from typing import Any, Dict


class PipelineError(Exception):
    """Base error for every pipeline stage.

    Carries the stage name and whatever context (season, column, path) the
    raising stage knows about, so a failure can be diagnosed from the message alone.
    """

    def __init__(self, message: str, stage: str, **context: Any) -> None:
        self.message = message
        self.stage = stage
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        details = " ".join(f"{k}={v}" for k, v in self.context.items())
        if details:
            return f"[{self.stage}] {self.message} ({details})"
        return f"[{self.stage}] {self.message}"


class NetworkError(PipelineError):
    """Remote resource unreachable or malformed."""


class FetchCancelled(NetworkError):
    pass


class SchemaError(PipelineError):
    """Missing or incompatible column."""


class PipelineIOError(PipelineError):
    """Disk full, permission denied, invalid path or conflicting output."""


class QueryError(PipelineError):
    """Unknown column, operator or reducer in a query."""


class ConfigError(PipelineError):
    """Invalid run arguments, such as a season outside the published range."""
