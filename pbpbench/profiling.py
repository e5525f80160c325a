# pyright: reportMissingImports=false, reportMissingModuleSource=false
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import json
import polars as pl

from .partition import PartitionDir, list_partitions


def _read_partition_as_polars(leaf: PartitionDir) -> pl.DataFrame:
    files = [str(p) for p in sorted(leaf.path.iterdir()) if p.is_file() and not p.name.startswith((".", "_"))]
    if files and files[0].endswith(".parquet"):
        lf = pl.scan_parquet(files)
    else:
        lf = pl.concat([pl.scan_ipc(f) for f in files])
    schema = lf.collect_schema()
    null_cols = [name for name, dtype in schema.items() if dtype == pl.Null]
    if null_cols:
        lf = lf.with_columns([pl.col(c).cast(pl.Utf8) for c in null_cols])
    return lf.collect()


def _compute_metrics(df: pl.DataFrame, leaf: PartitionDir) -> Dict[str, object]:
    rows = df.height
    metrics: Dict[str, object] = {
        "rows": rows,
        "num_columns": len(df.columns),
        "columns": list(df.columns),
        "dtypes": {name: str(dtype) for name, dtype in df.schema.items()},
        "keys": dict(leaf.values),
    }
    null_counts = df.null_count().row(0, named=True) if rows else {c: 0 for c in df.columns}
    metrics["null_counts"] = {k: int(v) for k, v in null_counts.items()}
    metrics["fully_null_columns"] = sorted(c for c, n in metrics["null_counts"].items() if rows and n == rows)
    return metrics


def profile_dataset(
    root: str | Path,
    keys: Optional[List[str]] = None,
    limit_values: Optional[List[str]] = None,
    output_dir: str | Path = "catalog/quality",
) -> List[Tuple[str, int]]:
    """Write one JSON metrics file per partition; returns (partition, rows) pairs.

    ``limit_values`` keeps only partitions whose first key value is listed.
    """
    root_p = Path(root)
    out = Path(output_dir) / root_p.name
    out.mkdir(parents=True, exist_ok=True)

    written: List[Tuple[str, int]] = []
    for leaf in list_partitions(root_p, keys):
        first_value = next(iter(leaf.values.values()))
        if limit_values and first_value not in limit_values:
            continue
        df = _read_partition_as_polars(leaf)
        metrics = _compute_metrics(df, leaf)
        rec = {"dataset": root_p.name, "partition": leaf.relpath, "metrics": metrics}
        fpath = out / f"{leaf.relpath.replace('/', '_')}.json"
        fpath.write_text(json.dumps(rec, indent=2))
        written.append((leaf.relpath, df.height))
    return written
