# pyright: reportMissingImports=false, reportMissingModuleSource=false
from __future__ import annotations

from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, List, Any, Optional
import hashlib

import orjson
import pandas as pd


@dataclass
class PartitionStats:
    row_count: int
    sha256_fingerprint: str = ""


def compute_row_fingerprint(df: pd.DataFrame) -> str:
    """Order-independent sha256 over the rows of ``df``.

    Two frames holding the same rows in any order share a fingerprint, so a
    re-partitioned dataset can be compared partition by partition.
    """
    row_hashes = pd.util.hash_pandas_object(df[sorted(df.columns)], index=False)
    h = hashlib.sha256()
    for value in sorted(row_hashes.tolist()):
        h.update(int(value).to_bytes(8, "little"))
    return h.hexdigest()


def load_lineage(path: str | Path = "catalog/lineage.json") -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}
    return orjson.loads(p.read_bytes())


def save_lineage(data: Dict[str, Any], path: str | Path = "catalog/lineage.json") -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(orjson.dumps(data, option=orjson.OPT_INDENT_2))


def update_dataset_lineage(
    lineage: Dict[str, Any],
    dataset: str,
    last_ingest_utc: str,
    rows_last_batch: int,
    seasons: List[int],
    partition_stats: Optional[Dict[str, PartitionStats]] = None,
    materialized_path: Optional[str] = None,
) -> Dict[str, Any]:
    ds = lineage.get(dataset, {})
    ds.update(
        {
            "last_ingest_utc": last_ingest_utc,
            "rows_last_batch": rows_last_batch,
            "seasons": list(seasons),
            "materialized_path": materialized_path,
        }
    )
    # Partitions are rewritten as a whole on every run
    if partition_stats is not None:
        ds["partitions"] = {part: asdict(st) for part, st in partition_stats.items()}
    lineage[dataset] = ds
    return lineage
