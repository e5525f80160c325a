# pyright: reportMissingImports=false, reportMissingModuleSource=false
from __future__ import annotations

import concurrent.futures
import io
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
import requests
import structlog

from ..config import SourceConfig
from ..errors import ConfigError, FetchCancelled, NetworkError, SchemaError
from ..schemas import TableSchema

# nflverse play-by-play releases start with the 1999 season
FIRST_SEASON = 1999


class CancelToken:
    """Cancellation flag with an optional overall deadline.

    A token made with ``parent`` is also cancelled whenever the parent is, while
    cancelling the child leaves the parent untouched.
    """

    def __init__(self, deadline_seconds: Optional[float] = None, parent: Optional["CancelToken"] = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + deadline_seconds if deadline_seconds is not None else None
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._parent is not None and self._parent.cancelled:
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline


def parse_seasons(seasons: str) -> list[int]:
    seasons = seasons.strip()
    if "-" in seasons:
        start, end = seasons.split("-")
        return list(range(int(start), int(end) + 1))
    return [int(x) for x in seasons.split(",") if x.strip()]


def validate_seasons(seasons: Iterable[Any], last: Optional[int] = None) -> List[int]:
    last = last if last is not None else datetime.now(timezone.utc).year
    out: List[int] = []
    for s in seasons:
        if isinstance(s, bool) or not isinstance(s, int):
            raise ValueError(f"season must be an int year, got {s!r}")
        if s < FIRST_SEASON or s > last:
            raise ValueError(f"season {s} outside published range {FIRST_SEASON}-{last}")
        if s not in out:
            out.append(s)
    if not out:
        raise ValueError("no seasons requested")
    return out


def resolve_seasons(seasons: str | Iterable[Any]) -> List[int]:
    """Parse (when given text) and validate seasons, failing as a fetch-stage error."""
    try:
        parsed = parse_seasons(seasons) if isinstance(seasons, str) else list(seasons)
        return validate_seasons(parsed)
    except ValueError as exc:
        raise ConfigError(str(exc), stage="fetch", seasons=str(seasons)) from exc


def _read_delimited(content: bytes, ext: str) -> pd.DataFrame:
    sep = "\t" if ext.startswith("tsv") else ","
    compression = "gzip" if ext.endswith(".gz") else None
    return pd.read_csv(io.BytesIO(content), sep=sep, compression=compression, low_memory=False)


def fetch_season(
    source: SourceConfig,
    season: int,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
) -> pd.DataFrame:
    logger = structlog.get_logger(__name__)
    url = source.url_for(season)
    if cancel is not None and cancel.cancelled:
        raise FetchCancelled("fetch cancelled before request", stage="fetch", season=season, url=url)
    http = session or requests
    started = time.perf_counter()
    try:
        resp = http.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise NetworkError("failed to download season resource", stage="fetch", season=season, url=url) from exc
    if cancel is not None and cancel.cancelled:
        raise FetchCancelled("fetch cancelled after download", stage="fetch", season=season, url=url)
    try:
        df = _read_delimited(resp.content, source.ext)
    except (ValueError, OSError, EOFError) as exc:
        # pandas parser errors subclass ValueError, bad gzip streams surface as OSError/EOFError
        raise NetworkError("malformed season resource", stage="fetch", season=season, url=url) from exc
    logger.info(
        "season_fetched",
        season=season,
        rows=len(df),
        columns=len(df.columns),
        bytes=len(resp.content),
        elapsed_s=round(time.perf_counter() - started, 3),
    )
    return df


def _with_const_col(df: pd.DataFrame, col: str, val: Any) -> pd.DataFrame:
    """Add a constant column without causing pandas frame fragmentation."""
    if col in df.columns:
        mask = df[col].isna()
        if mask.any():
            df = df.copy()
            df.loc[mask, col] = val
        return df
    return pd.concat([df, pd.DataFrame({col: [val] * len(df)}, index=df.index)], axis=1)


def normalize_season_frame(df: pd.DataFrame, season: int) -> pd.DataFrame:
    return _with_const_col(df, "season", season)


def _upcast_null_columns(df: pd.DataFrame) -> pd.DataFrame:
    # Entirely-missing columns get a stable string dtype instead of float64/object guesses
    null_cols = [c for c in df.columns if len(df) and df[c].isna().all()]
    if null_cols:
        df = df.astype({c: "string" for c in null_cols})
    return df


def _check_same_columns(frames: Dict[int, pd.DataFrame], order: List[int]) -> None:
    first = order[0]
    expected = list(frames[first].columns)
    for season in order[1:]:
        cols = list(frames[season].columns)
        if set(cols) != set(expected):
            missing = sorted(set(expected) - set(cols))
            extra = sorted(set(cols) - set(expected))
            raise SchemaError(
                "season column set differs from first season",
                stage="fetch",
                season=season,
                missing=",".join(missing) or None,
                extra=",".join(extra) or None,
            )


def fetch_seasons(
    source: SourceConfig,
    seasons: Iterable[int],
    max_workers: int = 1,
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
    session: Optional[requests.Session] = None,
    schema: Optional[TableSchema] = None,
) -> pd.DataFrame:
    """Download every season and return them as one table.

    Any single season failing aborts the whole fetch. With ``max_workers > 1``
    seasons are downloaded concurrently, but the result keeps the requested
    season order.
    """
    logger = structlog.get_logger(__name__)
    season_list = resolve_seasons(seasons)
    frames: Dict[int, pd.DataFrame] = {}
    if max_workers <= 1:
        for season in season_list:
            frames[season] = fetch_season(source, season, session=session, timeout=timeout, cancel=cancel)
    else:
        # One failed season stops the seasons still queued or downloading
        pool_token = CancelToken(parent=cancel)
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = {
                pool.submit(fetch_season, source, season, session, timeout, pool_token): season
                for season in season_list
            }
            try:
                for fut in concurrent.futures.as_completed(futures):
                    frames[futures[fut]] = fut.result()
            except Exception:
                pool_token.cancel()
                for fut in futures:
                    fut.cancel()
                raise

    for season in season_list:
        frames[season] = normalize_season_frame(frames[season], season)
    _check_same_columns(frames, season_list)

    columns = list(frames[season_list[0]].columns)
    unified = pd.concat([frames[s][columns] for s in season_list], ignore_index=True)
    unified = _upcast_null_columns(unified)
    if schema is not None:
        unified = schema.validate_frame(unified, stage="fetch")
    logger.info("fetch_completed", seasons=season_list, rows=len(unified), columns=len(columns))
    return unified
