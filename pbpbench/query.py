# pyright: reportMissingImports=false, reportMissingModuleSource=false
from __future__ import annotations

import operator
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd
import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.dataset as ds
import structlog

from .errors import QueryError, SchemaError
from .io import to_arrow
from .partition import PartitionDir, list_partitions, read_dataset_metadata
from .schemas import TableSchema


logger = structlog.get_logger(__name__)

_PY_OPS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda a, b: a in b,
}

# Reducer name -> pyarrow hash aggregate function
REDUCERS: Dict[str, str] = {
    "mean": "mean",
    "mean-skip-missing": "mean",
    "sum": "sum",
    "min": "min",
    "max": "max",
}

_PREDICATE_RE = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*(==|!=|<=|>=|=|<|>|\s+in\s+)\s*(.+?)\s*$")


@dataclass(frozen=True)
class Predicate:
    column: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _PY_OPS:
            raise QueryError("unknown filter operator", stage="query", column=self.column, op=self.op)

    def expression(self) -> ds.Expression:
        col = ds.field(self.column)
        if self.op == "in":
            return col.isin(list(self.value))
        return _PY_OPS[self.op](col, self.value)


@dataclass(frozen=True)
class Aggregate:
    column: str
    reducer: str = "mean"

    @property
    def function(self) -> str:
        return REDUCERS[self.reducer]

    @property
    def output_name(self) -> str:
        return f"{self.column}_{self.function}"


@dataclass
class QueryResult:
    table: pa.Table
    partitions_read: List[str] = field(default_factory=list)
    files_read: List[str] = field(default_factory=list)

    @property
    def num_rows(self) -> int:
        return self.table.num_rows

    def to_pandas(self) -> pd.DataFrame:
        return self.table.to_pandas()


@dataclass
class DatasetHandle:
    root: Path
    keys: List[str]
    schema: pa.Schema
    file_format: str
    leaves: List[PartitionDir]

    def partitioning(self) -> ds.Partitioning:
        return ds.partitioning(pa.schema([self.schema.field(k) for k in self.keys]), flavor="hive")


def parse_predicate(text: str) -> Predicate:
    """Parse ``season=2019``, ``epa>=0`` or ``play_type in pass,run``.

    Values stay strings here; they are coerced to the column type when the
    query runs against a dataset.
    """
    m = _PREDICATE_RE.match(text)
    if not m:
        raise QueryError("cannot parse filter", stage="query", filter=text)
    column, op, raw = m.group(1), m.group(2).strip(), m.group(3)
    if op == "=":
        op = "=="
    if op == "in":
        return Predicate(column, "in", tuple(v.strip() for v in raw.split(",") if v.strip()))
    return Predicate(column, op, raw)


def _coerce_scalar(value: Any, arrow_type: pa.DataType) -> Any:
    if value is None:
        return None
    if pa.types.is_dictionary(arrow_type):
        arrow_type = arrow_type.value_type
    if pa.types.is_integer(arrow_type):
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, float):
            return value
        return int(value)
    if pa.types.is_floating(arrow_type):
        return float(value)
    if pa.types.is_boolean(arrow_type):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("true", "1", "yes")
    if pa.types.is_string(arrow_type) or pa.types.is_large_string(arrow_type):
        return str(value)
    # Dates, timestamps and anything else go through an Arrow cast so a filter
    # value and a directory value compare as the same Python type
    if isinstance(value, str):
        scalar = pa.scalar(value.strip())
        if pa.types.is_date(arrow_type):
            scalar = pc.cast(scalar, pa.timestamp("s"))
        return pc.cast(scalar, arrow_type).as_py()
    return pa.scalar(value).cast(arrow_type).as_py()


def coerce_predicate(pred: Predicate, arrow_type: pa.DataType) -> Predicate:
    try:
        if pred.op == "in":
            value: Any = tuple(_coerce_scalar(v, arrow_type) for v in pred.value)
        else:
            value = _coerce_scalar(pred.value, arrow_type)
    except (TypeError, ValueError, pa.ArrowException) as exc:
        raise QueryError(
            "filter value does not match column type",
            stage="query",
            column=pred.column,
            value=pred.value,
            type=str(arrow_type),
        ) from exc
    return Predicate(pred.column, pred.op, value)


def _check_query(
    schema: pa.Schema,
    filters: Sequence[Predicate],
    group_by: str,
    aggregate: Aggregate,
) -> List[Predicate]:
    names = set(schema.names)
    for col in [group_by, aggregate.column, *(p.column for p in filters)]:
        if col not in names:
            raise QueryError("unknown column", stage="query", column=col)
    if aggregate.reducer not in REDUCERS:
        raise QueryError("unknown reducer", stage="query", reducer=aggregate.reducer)
    return [coerce_predicate(p, schema.field(p.column).type) for p in filters]


def _partition_matches(pred: Predicate, raw: Optional[str], arrow_type: pa.DataType) -> bool:
    # Nulls never satisfy a comparison, same as the row-level filter
    if raw is None:
        return False
    try:
        value = _coerce_scalar(raw, arrow_type)
    except (TypeError, ValueError, pa.ArrowException):
        return True
    return bool(_PY_OPS[pred.op](value, pred.value))


def _combine(preds: Iterable[Predicate]) -> Optional[ds.Expression]:
    expr: Optional[ds.Expression] = None
    for p in preds:
        expr = p.expression() if expr is None else expr & p.expression()
    return expr


def _aggregate(table: pa.Table, group_by: str, aggregate: Aggregate, sort: bool) -> pa.Table:
    # min_count=1: a group without any non-missing value yields null instead of 0/NaN
    opts = pc.ScalarAggregateOptions(skip_nulls=True, min_count=1)
    grouped = table.group_by(group_by).aggregate([(aggregate.column, aggregate.function, opts)])
    out = grouped.select([group_by, f"{aggregate.column}_{aggregate.function}"])
    out = out.rename_columns([group_by, aggregate.output_name])
    if sort:
        out = out.sort_by([(group_by, "ascending")])
    return out


def _format_of(path: Path) -> str:
    return "parquet" if path.suffix == ".parquet" else "ipc"


def _data_files(leaf: PartitionDir) -> List[Path]:
    return [p for p in sorted(leaf.path.iterdir()) if p.is_file() and not p.name.startswith((".", "_"))]


def open_dataset(root: str | Path, schema: Optional[TableSchema] = None) -> DatasetHandle:
    """Discover partitions and the column schema of a partitioned dataset.

    The schema comes from the ``_common_metadata`` file written by the
    partitioner, so no data file is opened here. It is checked against the
    declared ``schema`` when one is given. A dataset written from zero rows
    has no leaves and opens with its recorded keys.
    """
    root_p = Path(root)
    leaves = list_partitions(root_p)
    recorded = read_dataset_metadata(root_p)
    if not leaves and recorded is None:
        raise SchemaError("dataset has no partitions", stage="open", path=str(root_p))

    if leaves:
        keys = list(leaves[0].values)
        for leaf in leaves:
            if list(leaf.values) != keys:
                raise SchemaError("inconsistent partition layout", stage="open", path=leaf.relpath)
    else:
        keys = recorded[1]

    if recorded is not None:
        full, _, recorded_format = recorded
        file_format = "parquet" if recorded_format == "parquet" else "ipc"
        if leaves and recorded[1] and recorded[1] != keys:
            raise SchemaError("partition layout does not match recorded keys", stage="open", path=str(root_p))
    else:
        first_file = _data_files(leaves[0])[0]
        file_format = _format_of(first_file)
        data_schema = ds.dataset(str(first_file), format=file_format).schema
        key_fields = [pa.field(k, pa.string()) for k in keys if k not in data_schema.names]
        full = pa.schema(list(data_schema) + key_fields)
    full = pa.schema(
        [pa.field(f.name, f.type.value_type if pa.types.is_dictionary(f.type) else f.type) for f in full]
    )
    for k in keys:
        if k not in full.names:
            raise SchemaError("partition key missing from dataset schema", stage="open", column=k)
    if schema is not None:
        schema.check_arrow_schema(full, stage="open")
    return DatasetHandle(root=root_p, keys=keys, schema=full, file_format=file_format, leaves=leaves)


def run_query(
    dataset: Union[str, Path, DatasetHandle],
    filters: Sequence[Predicate],
    group_by: str,
    aggregate: Aggregate,
    schema: Optional[TableSchema] = None,
    sort: bool = False,
) -> QueryResult:
    handle = dataset if isinstance(dataset, DatasetHandle) else open_dataset(dataset, schema)
    preds = _check_query(handle.schema, filters, group_by, aggregate)

    key_preds = [p for p in preds if p.column in handle.keys]
    survivors = [
        leaf
        for leaf in handle.leaves
        if all(_partition_matches(p, leaf.values[p.column], handle.schema.field(p.column).type) for p in key_preds)
    ]
    files = [str(f) for leaf in survivors for f in _data_files(leaf)]
    logger.debug(
        "partitions_pruned",
        root=str(handle.root),
        total=len(handle.leaves),
        kept=len(survivors),
    )

    columns = list(dict.fromkeys([group_by, aggregate.column]))
    if files:
        scan = ds.dataset(
            files,
            schema=handle.schema,
            format=handle.file_format,
            partitioning=handle.partitioning(),
            partition_base_dir=str(handle.root),
        )
        table = scan.to_table(columns=columns, filter=_combine(preds))
    else:
        table = pa.schema([handle.schema.field(c) for c in columns]).empty_table()

    return QueryResult(
        table=_aggregate(table, group_by, aggregate, sort),
        partitions_read=[leaf.relpath for leaf in survivors],
        files_read=files,
    )


def query_table(
    data: Union[pa.Table, pd.DataFrame],
    filters: Sequence[Predicate],
    group_by: str,
    aggregate: Aggregate,
    sort: bool = False,
) -> QueryResult:
    """Same filter/group/aggregate semantics as :func:`run_query` over an in-memory table."""
    table = to_arrow(data, stage="query")
    preds = _check_query(table.schema, filters, group_by, aggregate)
    expr = _combine(preds)
    if expr is not None:
        table = table.filter(expr)
    return QueryResult(table=_aggregate(table, group_by, aggregate, sort))
