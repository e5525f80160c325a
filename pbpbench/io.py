# pyright: reportMissingImports=false, reportMissingModuleSource=false
from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import pandas as pd
import pyarrow as pa
import pyarrow.dataset as ds
import pyarrow.feather as feather
import structlog

from .errors import PipelineIOError, SchemaError
from .schemas import require_columns


logger = structlog.get_logger(__name__)

TableLike = Union[pd.DataFrame, pa.Table]


@dataclass(frozen=True)
class MaterializedFile:
    path: Path
    compression: str
    schema: pa.Schema
    num_rows: int


def ensure_dir(path: str | Path) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def remove_dir(path: str | Path) -> None:
    p = Path(path)
    if p.exists() and p.is_dir():
        shutil.rmtree(p)


def _safe_unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return


def to_arrow(data: TableLike, stage: str) -> pa.Table:
    if isinstance(data, pa.Table):
        return data
    try:
        return pa.Table.from_pandas(data, preserve_index=False)
    except (pa.ArrowInvalid, pa.ArrowTypeError) as exc:
        raise SchemaError("table has columns with unsupported or mixed types", stage=stage, detail=str(exc)) from exc


def _check_supported(schema: pa.Schema, stage: str) -> None:
    for fld in schema:
        if pa.types.is_nested(fld.type) or pa.types.is_union(fld.type):
            raise SchemaError("unsupported column type", stage=stage, column=fld.name, type=str(fld.type))


def materialize(data: TableLike, dest: str | Path) -> MaterializedFile:
    """Write ``data`` as an uncompressed Feather v2 (Arrow IPC) file.

    The file is written to a temporary sibling first and renamed into place, so
    a failed write never leaves a readable partial file at ``dest``.
    """
    dest_p = Path(dest)
    table = to_arrow(data, stage="materialize")
    _check_supported(table.schema, stage="materialize")
    try:
        ensure_dir(dest_p.parent)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{dest_p.name}.", suffix=".tmp", dir=dest_p.parent)
        os.close(fd)
    except OSError as exc:
        raise PipelineIOError("cannot prepare destination", stage="materialize", path=str(dest_p)) from exc
    tmp = Path(tmp_name)
    try:
        feather.write_feather(table, str(tmp), compression="uncompressed")
        os.replace(tmp, dest_p)
    except (OSError, pa.ArrowException) as exc:
        _safe_unlink(tmp)
        raise PipelineIOError("failed to write materialized file", stage="materialize", path=str(dest_p)) from exc
    logger.info("materialized", path=str(dest_p), rows=table.num_rows, columns=table.num_columns)
    return MaterializedFile(path=dest_p, compression="uncompressed", schema=table.schema, num_rows=table.num_rows)


def open_materialized(path: str | Path) -> MaterializedFile:
    p = Path(path)
    if not p.is_file():
        raise PipelineIOError("materialized file not found", stage="read", path=str(p))
    dataset = ds.dataset(str(p), format="ipc")
    return MaterializedFile(path=p, compression="uncompressed", schema=dataset.schema, num_rows=dataset.count_rows())


def read_materialized(
    path: str | Path,
    columns: Optional[List[str]] = None,
    memory_map: bool = True,
) -> pa.Table:
    p = Path(path)
    if not p.is_file():
        raise PipelineIOError("materialized file not found", stage="read", path=str(p))
    if columns:
        require_columns(open_materialized(p).schema.names, columns, stage="read")
    return feather.read_table(str(p), columns=columns, memory_map=memory_map)


def _file_format(file_format: str, compression: str) -> tuple[ds.FileFormat, ds.FileWriteOptions]:
    codec = None if compression in ("none", "uncompressed", "") else compression
    if file_format == "parquet":
        fmt = ds.ParquetFileFormat()
        return fmt, fmt.make_write_options(compression=codec or "none")
    if file_format == "feather":
        fmt = ds.IpcFileFormat()
        return fmt, fmt.make_write_options(compression=codec)
    raise ValueError(f"unsupported dataset format: {file_format}")


def write_partitioned(
    table: pa.Table,
    base_dir: str | Path,
    partitions: List[str],
    file_format: str = "parquet",
    compression: str = "none",
    max_rows_per_file: Optional[int] = None,
    existing_data_behavior: str = "overwrite_or_ignore",
    basename_template: Optional[str] = None,
) -> None:
    fmt, file_options = _file_format(file_format, compression)
    ext = "parquet" if file_format == "parquet" else "feather"
    ds.write_dataset(
        table,
        base_dir=str(base_dir),
        basename_template=basename_template or f"part-{{i}}.{ext}",
        format=fmt,
        file_options=file_options,
        partitioning=partitions,
        partitioning_flavor="hive",
        existing_data_behavior=existing_data_behavior,
        max_rows_per_file=max_rows_per_file or 0,
        # Row groups may not exceed the file size limit
        max_rows_per_group=max_rows_per_file or 1024 * 1024,
    )


def move_replace(src: str | Path, dest: str | Path) -> None:
    src_p = Path(src)
    dest_p = Path(dest)
    dest_p.parent.mkdir(parents=True, exist_ok=True)
    if dest_p.exists():
        if dest_p.is_dir():
            shutil.rmtree(dest_p)
        else:
            dest_p.unlink()
    os.replace(src_p, dest_p)
