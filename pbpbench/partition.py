# pyright: reportMissingImports=false, reportMissingModuleSource=false
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import unquote

import pandas as pd
import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.dataset as ds
import pyarrow.parquet as pq
import structlog

from .config import ConflictPolicy
from .errors import PipelineIOError, SchemaError
from .io import (
    MaterializedFile,
    ensure_dir,
    move_replace,
    open_materialized,
    read_materialized,
    remove_dir,
    to_arrow,
    write_partitioned,
)
from .lineage import PartitionStats, compute_row_fingerprint
from .schemas import require_columns


logger = structlog.get_logger(__name__)

HIVE_NULL = "__HIVE_DEFAULT_PARTITION__"
# Parquet metadata-only file holding the full table schema, partition keys included
SCHEMA_FILE = "_common_metadata"
_KEYS_META = b"pbpbench.partition_keys"
_FORMAT_META = b"pbpbench.file_format"

PartitionSource = Union[MaterializedFile, str, Path, pa.Table, pd.DataFrame]


@dataclass(frozen=True)
class PartitionDir:
    path: Path
    relpath: str
    values: Dict[str, Optional[str]]


@dataclass
class PartitionedDataset:
    root: Path
    keys: List[str]
    file_format: str
    partitions: Dict[str, PartitionStats] = field(default_factory=dict)

    @property
    def num_rows(self) -> int:
        return sum(st.row_count for st in self.partitions.values())


def dataset_metadata_schema(schema: pa.Schema, keys: List[str], file_format: str) -> pa.Schema:
    """Schema for ``_common_metadata``, tagged with the partition keys and file format.

    The tags let a dataset with no rows (and so no leaf directories) be opened.
    """
    return schema.remove_metadata().with_metadata(
        {_KEYS_META: ",".join(keys).encode("utf-8"), _FORMAT_META: file_format.encode("utf-8")}
    )


def read_dataset_metadata(root: str | Path) -> Optional[Tuple[pa.Schema, List[str], str]]:
    meta = Path(root) / SCHEMA_FILE
    if not meta.exists():
        return None
    schema = pq.read_schema(str(meta))
    raw = schema.metadata or {}
    keys = [k for k in raw.get(_KEYS_META, b"").decode("utf-8").split(",") if k]
    file_format = raw.get(_FORMAT_META, b"parquet").decode("utf-8")
    return schema.remove_metadata(), keys, file_format


def _format_value(val: object) -> str:
    if val is None:
        return HIVE_NULL
    return str(val)


def discover_partitions(table: pa.Table, keys: List[str]) -> List[str]:
    require_columns(table.column_names, keys, stage="partition")
    distinct = table.select(keys).group_by(keys).aggregate([])
    parts = []
    for row in distinct.to_pylist():
        parts.append("/".join(f"{k}={_format_value(row[k])}" for k in keys))
    return sorted(parts)


def normalize_partition_columns(table: pa.Table, keys: List[str]) -> pa.Table:
    """Cast integral float keys to int64 so directories never read ``season=2019.0``."""
    for key in keys:
        idx = table.schema.get_field_index(key)
        col = table.column(idx)
        if not pa.types.is_floating(col.type):
            continue
        non_null = pc.drop_null(col)
        if len(non_null) and not pc.all(pc.equal(pc.floor(non_null), non_null)).as_py():
            continue
        table = table.set_column(idx, key, col.cast(pa.int64()))
    return table


def _load_source(source: PartitionSource) -> pa.Table:
    if isinstance(source, (pa.Table, pd.DataFrame)):
        return to_arrow(source, stage="partition")
    path = source.path if isinstance(source, MaterializedFile) else Path(source)
    return read_materialized(path)


def _source_columns(source: PartitionSource) -> List[str]:
    if isinstance(source, pa.Table):
        return source.column_names
    if isinstance(source, pd.DataFrame):
        return [str(c) for c in source.columns]
    if isinstance(source, MaterializedFile):
        return source.schema.names
    return open_materialized(source).schema.names


def _is_data_file(p: Path) -> bool:
    return p.is_file() and not p.name.startswith((".", "_"))


def list_partitions(root: str | Path, keys: Optional[List[str]] = None) -> List[PartitionDir]:
    """Return the leaf directories of a hive-partitioned dataset with their key values."""
    root_p = Path(root)
    if not root_p.is_dir():
        raise PipelineIOError("dataset directory not found", stage="open", path=str(root_p))
    leaves: List[PartitionDir] = []

    def walk(path: Path, values: Dict[str, Optional[str]]) -> None:
        children = sorted(path.iterdir())
        subdirs = [c for c in children if c.is_dir() and "=" in c.name and not c.name.startswith((".", "_"))]
        if any(_is_data_file(c) for c in children) and values:
            relpath = path.relative_to(root_p).as_posix()
            leaves.append(PartitionDir(path=path, relpath=relpath, values=dict(values)))
        for sub in subdirs:
            k, v = sub.name.split("=", 1)
            decoded = unquote(v)
            walk(sub, {**values, k: None if decoded == HIVE_NULL else decoded})

    walk(root_p, {})
    if keys is not None:
        for leaf in leaves:
            if list(leaf.values) != list(keys):
                raise SchemaError(
                    "partition directory does not match partition keys",
                    stage="partition",
                    path=leaf.relpath,
                    keys=",".join(keys),
                )
    return leaves


def collect_partition_stats(
    root: str | Path,
    keys: List[str],
    file_format: str = "parquet",
    fingerprint: bool = False,
) -> Dict[str, PartitionStats]:
    fmt = "parquet" if file_format == "parquet" else "ipc"
    stats: Dict[str, PartitionStats] = {}
    for leaf in list_partitions(root, keys):
        files = [str(p) for p in sorted(leaf.path.iterdir()) if _is_data_file(p)]
        leaf_ds = ds.dataset(files, format=fmt)
        fp = compute_row_fingerprint(leaf_ds.to_table().to_pandas()) if fingerprint else ""
        stats[leaf.relpath] = PartitionStats(row_count=leaf_ds.count_rows(), sha256_fingerprint=fp)
    return stats


def partition_dataset(
    source: PartitionSource,
    keys: List[str],
    dest: str | Path,
    policy: ConflictPolicy = ConflictPolicy.OVERWRITE,
    file_format: str = "parquet",
    compression: str = "none",
    max_rows_per_file: Optional[int] = None,
    fingerprint: bool = False,
) -> PartitionedDataset:
    """Rewrite ``source`` as a hive-partitioned dataset under ``dest``.

    Conflict policy for an existing ``dest``:

    - ``overwrite``: the new dataset is staged beside ``dest`` and swapped in,
      so re-running yields the same rows per partition.
    - ``error``: refuse to write into a non-empty ``dest``.
    - ``append``: add uniquely named files next to existing ones.
    """
    if not keys:
        raise SchemaError("at least one partition key is required", stage="partition")
    require_columns(_source_columns(source), keys, stage="partition")

    dest_p = Path(dest)
    if dest_p.exists() and not dest_p.is_dir():
        raise PipelineIOError("destination exists and is not a directory", stage="partition", path=str(dest_p))
    if policy == ConflictPolicy.ERROR and dest_p.exists() and any(dest_p.iterdir()):
        raise PipelineIOError("destination dataset already exists", stage="partition", path=str(dest_p))

    table = normalize_partition_columns(_load_source(source), keys)
    logger.info("partition_started", dest=str(dest_p), keys=keys, rows=table.num_rows, policy=policy.value)

    staging = dest_p.parent / f".{dest_p.name}.staging"
    meta_schema = dataset_metadata_schema(table.schema, keys, file_format)
    try:
        if policy == ConflictPolicy.OVERWRITE:
            remove_dir(staging)
            write_partitioned(
                table,
                staging,
                keys,
                file_format=file_format,
                compression=compression,
                max_rows_per_file=max_rows_per_file,
                existing_data_behavior="error",
            )
            # A zero-row input writes no files, so the directory may not exist yet
            ensure_dir(staging)
            pq.write_metadata(meta_schema, str(staging / SCHEMA_FILE))
            move_replace(staging, dest_p)
        else:
            ensure_dir(dest_p)
            ext = "parquet" if file_format == "parquet" else "feather"
            write_partitioned(
                table,
                dest_p,
                keys,
                file_format=file_format,
                compression=compression,
                max_rows_per_file=max_rows_per_file,
                existing_data_behavior="overwrite_or_ignore",
                basename_template=f"part-{uuid.uuid4().hex[:12]}-{{i}}.{ext}",
            )
            pq.write_metadata(meta_schema, str(dest_p / SCHEMA_FILE))
    except (OSError, pa.ArrowException) as exc:
        if policy == ConflictPolicy.OVERWRITE:
            remove_dir(staging)
        raise PipelineIOError("failed to write partitioned dataset", stage="partition", path=str(dest_p)) from exc

    stats = collect_partition_stats(dest_p, keys, file_format=file_format, fingerprint=fingerprint)
    written = sum(st.row_count for st in stats.values())
    if policy != ConflictPolicy.APPEND and written != table.num_rows:
        raise PipelineIOError(
            "partitioned row count does not match input",
            stage="partition",
            path=str(dest_p),
            expected=table.num_rows,
            written=written,
        )
    logger.info("partition_completed", dest=str(dest_p), partitions=len(stats), rows=written)
    return PartitionedDataset(root=dest_p, keys=list(keys), file_format=file_format, partitions=stats)
