# pyright: reportMissingImports=false, reportMissingModuleSource=false
from __future__ import annotations

from typing import List, Optional

import pandas as pd
import requests

from ..config import PipelineConfig
from ..schemas import TableSchema
from .nflverse import (
    CancelToken,
    fetch_season,
    fetch_seasons,
    parse_seasons,
    resolve_seasons,
    validate_seasons,
)


def fetch_dataset(
    cfg: PipelineConfig,
    seasons: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
    session: Optional[requests.Session] = None,
) -> pd.DataFrame:
    season_list: List[int] = resolve_seasons(seasons or cfg.source.seasons)
    schema = TableSchema.from_mapping(cfg.columns) if cfg.columns else None
    return fetch_seasons(
        cfg.source,
        season_list,
        max_workers=cfg.source.max_workers,
        timeout=cfg.source.timeout_seconds,
        cancel=cancel,
        session=session,
        schema=schema,
    )


__all__ = [
    "CancelToken",
    "fetch_dataset",
    "fetch_season",
    "fetch_seasons",
    "parse_seasons",
    "resolve_seasons",
    "validate_seasons",
]
