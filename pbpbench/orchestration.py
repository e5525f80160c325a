# pyright: reportMissingImports=false, reportMissingModuleSource=false
from __future__ import annotations

import operator
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import duckdb
import pandas as pd
import polars as pl
import pyarrow as pa
import requests
import structlog
from filelock import FileLock, BaseFileLock

from . import importers
from .bench import BenchmarkReport, run_benchmark
from .config import PipelineConfig
from .errors import PipelineError, QueryError
from .importers import CancelToken
from .io import MaterializedFile, materialize, open_materialized, read_materialized
from .lineage import load_lineage, save_lineage, update_dataset_lineage
from .logging_setup import log_run_event
from .partition import PartitionedDataset, partition_dataset
from .query import REDUCERS, Aggregate, Predicate, coerce_predicate, open_dataset, parse_predicate, run_query
from .schemas import TableSchema


logger = structlog.get_logger(__name__)

_OPS: Dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}
_SQL_OPS = {"==": "=", "!=": "<>", "<": "<", "<=": "<=", ">": ">", ">=": ">="}
_SQL_REDUCERS = {"mean": "avg", "sum": "sum", "min": "min", "max": "max"}


@dataclass
class PipelineRun:
    run_id: str
    seasons: List[int]
    rows: int
    materialized: MaterializedFile
    dataset: PartitionedDataset


def _now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_run_id() -> str:
    return f"run_{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')}"


def _lock_guard(root: str) -> BaseFileLock:
    root_p = Path(root).resolve()
    root_p.parent.mkdir(parents=True, exist_ok=True)
    return FileLock(str(root_p.parent / f".{root_p.name}.lock"))


def _schema_of(cfg: PipelineConfig) -> Optional[TableSchema]:
    return TableSchema.from_mapping(cfg.columns) if cfg.columns else None


def run_pipeline(
    cfg: PipelineConfig,
    seasons: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
    session: Optional[requests.Session] = None,
    lineage_path: str | Path = "catalog/lineage.json",
    fingerprint: bool = False,
) -> PipelineRun:
    """Fetch -> materialize -> partition, each stage finishing before the next starts."""
    run_id = _new_run_id()
    with _lock_guard(cfg.root):
        try:
            season_list = importers.resolve_seasons(seasons or cfg.source.seasons)
            log_run_event(run_id, "fetch_started", seasons=season_list)
            df = importers.fetch_dataset(cfg, ",".join(str(s) for s in season_list), cancel=cancel, session=session)
            rows = len(df)
            log_run_event(run_id, "fetched", rows=rows)

            mat = materialize(df, cfg.materialized_path)
            del df
            log_run_event(run_id, "materialized", path=str(mat.path), rows=mat.num_rows)

            dataset = partition_dataset(
                mat,
                cfg.dataset.partitions,
                cfg.dataset_root,
                policy=cfg.dataset.conflict,
                file_format=cfg.dataset.format,
                compression=cfg.dataset.compression,
                max_rows_per_file=cfg.dataset.max_rows_per_file,
                fingerprint=fingerprint,
            )
            log_run_event(run_id, "partitioned", root=str(dataset.root), partitions=len(dataset.partitions))
        except PipelineError as exc:
            logger.error("pipeline_failed", run_id=run_id, stage=exc.stage, error=str(exc))
            log_run_event(run_id, "failed", stage=exc.stage, error=str(exc))
            raise

        lineage = load_lineage(lineage_path)
        lineage = update_dataset_lineage(
            lineage,
            dataset=cfg.dataset.name,
            last_ingest_utc=_now_utc_iso(),
            rows_last_batch=rows,
            seasons=season_list,
            partition_stats=dataset.partitions,
            materialized_path=str(mat.path),
        )
        save_lineage(lineage, lineage_path)

    logger.info("pipeline_completed", run_id=run_id, rows=rows, partitions=len(dataset.partitions))
    return PipelineRun(run_id=run_id, seasons=season_list, rows=rows, materialized=mat, dataset=dataset)


def _pandas_query(df: pd.DataFrame, preds: Sequence[Predicate], group_by: str, aggregate: Aggregate) -> pd.DataFrame:
    mask = pd.Series(True, index=df.index)
    for p in preds:
        col = df[p.column]
        if p.op == "in":
            mask &= col.isin(list(p.value))
        else:
            mask &= _OPS[p.op](col, p.value).fillna(False).astype(bool)
    grouped = df.loc[mask].groupby(group_by, dropna=False)[aggregate.column]
    # min_count=1 keeps all-missing groups null rather than 0
    values = grouped.sum(min_count=1) if aggregate.function == "sum" else grouped.agg(aggregate.function)
    return values.rename(aggregate.output_name).reset_index()


def _polars_expr(p: Predicate) -> pl.Expr:
    col = pl.col(p.column)
    if p.op == "in":
        return col.is_in(list(p.value))
    return _OPS[p.op](col, p.value)


def _polars_query(path: Path, preds: Sequence[Predicate], group_by: str, aggregate: Aggregate) -> pl.DataFrame:
    lf = pl.scan_ipc(str(path), memory_map=True)
    for p in preds:
        lf = lf.filter(_polars_expr(p))
    col = pl.col(aggregate.column)
    agg_expr = pl.when(col.count() > 0).then(getattr(col, aggregate.function)()).alias(aggregate.output_name)
    return lf.group_by(group_by).agg(agg_expr).collect()


def _duckdb_query(root: Path, preds: Sequence[Predicate], group_by: str, aggregate: Aggregate) -> pd.DataFrame:
    where: List[str] = []
    params: List[Any] = []
    for p in preds:
        if p.op == "in":
            where.append(f'"{p.column}" IN ({", ".join("?" for _ in p.value)})')
            params.extend(p.value)
        else:
            where.append(f'"{p.column}" {_SQL_OPS[p.op]} ?')
            params.append(p.value)
    glob = (root / "**" / "*.parquet").as_posix()
    sql = (
        f'SELECT "{group_by}", {_SQL_REDUCERS[aggregate.function]}("{aggregate.column}") AS "{aggregate.output_name}" '
        f"FROM read_parquet('{glob}', hive_partitioning = true) "
        + (f"WHERE {' AND '.join(where)} " if where else "")
        + f'GROUP BY "{group_by}"'
    )
    con = duckdb.connect()
    try:
        return con.execute(sql, params).df()
    finally:
        con.close()


def _coerce_all(schema: pa.Schema, filters: Sequence[Predicate]) -> List[Predicate]:
    out = []
    for p in filters:
        if p.column not in schema.names:
            raise QueryError("unknown column", stage="bench", column=p.column)
        out.append(coerce_predicate(p, schema.field(p.column).type))
    return out


def build_variants(
    materialized_path: str | Path,
    dataset_root: str | Path,
    filters: Sequence[Predicate],
    group_by: str,
    aggregate: Aggregate,
    schema: Optional[TableSchema] = None,
    file_format: str = "parquet",
) -> Dict[str, Callable[[], Any]]:
    """Named loading strategies answering the same filter/group/aggregate query."""
    if aggregate.reducer not in REDUCERS:
        raise QueryError("unknown reducer", stage="bench", reducer=aggregate.reducer)
    mat_path = Path(materialized_path)
    mat_schema = open_materialized(mat_path).schema
    mat_preds = _coerce_all(mat_schema, filters)
    handle = open_dataset(dataset_root, schema)
    ds_preds = _coerce_all(handle.schema, filters)

    variants: Dict[str, Callable[[], Any]] = {
        "materialized-pandas": lambda: _pandas_query(
            read_materialized(mat_path).to_pandas(), mat_preds, group_by, aggregate
        ),
        "materialized-polars": lambda: _polars_query(mat_path, mat_preds, group_by, aggregate),
        "partitioned-pyarrow": lambda: run_query(handle, filters, group_by, aggregate),
    }
    # DuckDB reads the parquet layout only
    if file_format == "parquet":
        variants["partitioned-duckdb"] = lambda: _duckdb_query(Path(dataset_root), ds_preds, group_by, aggregate)
    return variants


def run_benchmark_suite(
    cfg: PipelineConfig,
    repetitions: Optional[int] = None,
    variants: Optional[List[str]] = None,
) -> BenchmarkReport:
    if cfg.benchmark is None:
        raise QueryError("no benchmark query configured", stage="bench")
    bench = cfg.benchmark
    filters = [parse_predicate(f) for f in bench.filters]
    aggregate = Aggregate(bench.aggregate_column, bench.reducer)
    all_variants = build_variants(
        cfg.materialized_path,
        cfg.dataset_root,
        filters,
        bench.group_by,
        aggregate,
        schema=_schema_of(cfg),
        file_format=cfg.dataset.format,
    )
    wanted = variants or bench.variants
    if wanted:
        unknown = [v for v in wanted if v not in all_variants]
        if unknown:
            raise QueryError("unknown benchmark variant", stage="bench", variant=",".join(unknown))
        all_variants = {name: all_variants[name] for name in wanted}
    return run_benchmark(all_variants, repetitions or bench.repetitions)
