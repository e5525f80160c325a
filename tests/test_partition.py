from pathlib import Path

import pandas as pd
import pyarrow as pa
import pyarrow.dataset as ds
import pytest

from pbpbench import partition as partition_mod
from pbpbench.config import ConflictPolicy
from pbpbench.errors import PipelineIOError, SchemaError
from pbpbench.io import materialize
from pbpbench.partition import (
    discover_partitions,
    list_partitions,
    normalize_partition_columns,
    partition_dataset,
)


@pytest.fixture
def materialized(tmp_path: Path, unified_frame: pd.DataFrame):
    return materialize(unified_frame, tmp_path / "pbp.feather")


def _read_leaf(path: Path) -> pd.DataFrame:
    return ds.dataset(str(path), format="parquet").to_table().to_pandas()


def test_discover_partitions_returns_partition_strings():
    table = pa.table({"season": [2024, 2024, 2024], "week": [1, 2, 2]})

    parts = discover_partitions(table, ["season", "week"])

    assert parts == ["season=2024/week=1", "season=2024/week=2"]


def test_partition_dataset_conserves_rows(tmp_path: Path, materialized, unified_frame):
    dataset = partition_dataset(materialized, ["season", "play_type"], tmp_path / "pbp")

    assert dataset.num_rows == len(unified_frame)
    assert sorted(dataset.partitions) == [
        "season=2018/play_type=pass",
        "season=2018/play_type=punt",
        "season=2018/play_type=run",
        "season=2019/play_type=pass",
        "season=2019/play_type=punt",
        "season=2019/play_type=run",
    ]
    assert dataset.partitions["season=2019/play_type=pass"].row_count == 6


def test_partition_dataset_keeps_partitions_pure(tmp_path: Path, materialized, unified_frame):
    partition_dataset(materialized, ["season", "play_type"], tmp_path / "pbp")

    for leaf in list_partitions(tmp_path / "pbp", ["season", "play_type"]):
        rows = _read_leaf(leaf.path)
        expected = unified_frame[
            (unified_frame["season"] == int(leaf.values["season"]))
            & (unified_frame["play_type"] == leaf.values["play_type"])
        ]
        # key columns live in the directory names, not in the files
        assert "season" not in rows.columns
        assert sorted(rows["posteam"]) == sorted(expected["posteam"])
        assert len(rows) == len(expected)


def test_partition_dataset_is_idempotent(tmp_path: Path, materialized):
    first = partition_dataset(materialized, ["season", "play_type"], tmp_path / "pbp", fingerprint=True)
    second = partition_dataset(materialized, ["season", "play_type"], tmp_path / "pbp", fingerprint=True)

    assert first.partitions == second.partitions
    assert all(st.sha256_fingerprint for st in second.partitions.values())
    assert not (tmp_path / ".pbp.staging").exists()


def test_partition_dataset_missing_key_fails_before_io(tmp_path: Path, materialized):
    dest = tmp_path / "pbp"

    with pytest.raises(SchemaError) as excinfo:
        partition_dataset(materialized, ["season", "down"], dest)

    assert excinfo.value.context["column"] == "down"
    assert excinfo.value.stage == "partition"
    assert not dest.exists()


def test_partition_dataset_requires_keys(tmp_path: Path, materialized):
    with pytest.raises(SchemaError):
        partition_dataset(materialized, [], tmp_path / "pbp")


def test_error_policy_refuses_existing_dataset(tmp_path: Path, materialized):
    partition_dataset(materialized, ["season"], tmp_path / "pbp")

    with pytest.raises(PipelineIOError):
        partition_dataset(materialized, ["season"], tmp_path / "pbp", policy=ConflictPolicy.ERROR)


def test_append_policy_adds_files_beside_existing(tmp_path: Path, materialized, unified_frame):
    partition_dataset(materialized, ["season"], tmp_path / "pbp")

    appended = partition_dataset(materialized, ["season"], tmp_path / "pbp", policy=ConflictPolicy.APPEND)

    assert appended.num_rows == 2 * len(unified_frame)
    leaf_files = sorted(p.name for p in (tmp_path / "pbp" / "season=2018").iterdir())
    assert len(leaf_files) == 2


def test_overwrite_policy_drops_stale_partitions(tmp_path: Path, materialized, unified_frame):
    dest = tmp_path / "pbp"
    stale = dest / "season=1999"
    stale.mkdir(parents=True)
    (stale / "part-0.parquet").write_bytes(b"stale")

    dataset = partition_dataset(materialized, ["season"], dest)

    assert not stale.exists()
    assert dataset.num_rows == len(unified_frame)


def test_null_key_values_land_in_default_partition(tmp_path: Path):
    df = pd.DataFrame({"play_type": ["pass", None, "run"], "epa": [0.1, 0.2, 0.3]})

    dataset = partition_dataset(df, ["play_type"], tmp_path / "pbp")

    assert dataset.num_rows == 3
    assert "play_type=__HIVE_DEFAULT_PARTITION__" in dataset.partitions
    leaves = {leaf.relpath: leaf for leaf in list_partitions(tmp_path / "pbp")}
    assert leaves["play_type=__HIVE_DEFAULT_PARTITION__"].values == {"play_type": None}


def test_normalize_partition_columns_casts_integral_floats():
    table = pa.table({"season": [2019.0, None, 2020.0], "rate": [0.5, 1.5, 2.0]})

    result = normalize_partition_columns(table, ["season", "rate"])

    assert result.schema.field("season").type == pa.int64()
    assert result.schema.field("rate").type == pa.float64()
    assert result.column("season").to_pylist() == [2019, None, 2020]


def test_partition_dataset_accepts_zero_row_input(tmp_path: Path):
    schema = pa.schema(
        [("season", pa.int64()), ("play_type", pa.string()), ("posteam", pa.string()), ("epa", pa.float64())]
    )
    mat = materialize(schema.empty_table(), tmp_path / "pbp.feather")

    dataset = partition_dataset(mat, ["season", "play_type"], tmp_path / "pbp")

    assert dataset.num_rows == 0
    assert dataset.partitions == {}
    assert (tmp_path / "pbp" / "_common_metadata").is_file()
    assert not (tmp_path / ".pbp.staging").exists()
    assert list_partitions(tmp_path / "pbp") == []


def test_append_policy_accepts_zero_row_input(tmp_path: Path, unified_frame: pd.DataFrame):
    partition_dataset(unified_frame, ["season"], tmp_path / "pbp")

    empty = pa.Table.from_pandas(unified_frame, preserve_index=False).slice(0, 0)

    appended = partition_dataset(empty, ["season"], tmp_path / "pbp", policy=ConflictPolicy.APPEND)

    assert appended.num_rows == len(unified_frame)


def test_failed_overwrite_removes_staging_and_keeps_previous_dataset(tmp_path: Path, materialized, monkeypatch):
    partition_dataset(materialized, ["season"], tmp_path / "pbp")

    def boom(table, base_dir, *args, **kwargs):
        (Path(base_dir) / "season=2018").mkdir(parents=True)
        raise OSError("disk full")

    monkeypatch.setattr(partition_mod, "write_partitioned", boom)

    with pytest.raises(PipelineIOError) as excinfo:
        partition_dataset(materialized, ["season"], tmp_path / "pbp")

    assert excinfo.value.stage == "partition"
    assert not (tmp_path / ".pbp.staging").exists()
    assert [leaf.relpath for leaf in list_partitions(tmp_path / "pbp")] == ["season=2018", "season=2019"]
