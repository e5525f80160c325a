from pathlib import Path

import pandas as pd
import pyarrow as pa
import pytest

from pbpbench import io
from pbpbench.errors import PipelineIOError, SchemaError


def test_materialize_writes_uncompressed_feather(tmp_path: Path, unified_frame: pd.DataFrame):
    dest = tmp_path / "out" / "pbp.feather"

    mat = io.materialize(unified_frame, dest)

    assert mat.path == dest
    assert mat.num_rows == len(unified_frame)
    assert mat.compression == "uncompressed"
    assert mat.schema.names == ["season", "play_type", "posteam", "epa"]
    # no temporary siblings survive a successful write
    assert [p.name for p in dest.parent.iterdir()] == ["pbp.feather"]


def test_read_materialized_prunes_columns(tmp_path: Path, unified_frame: pd.DataFrame):
    dest = tmp_path / "pbp.feather"
    io.materialize(unified_frame, dest)

    table = io.read_materialized(dest, columns=["posteam", "epa"])

    assert table.column_names == ["posteam", "epa"]
    assert table.num_rows == len(unified_frame)


def test_read_materialized_unknown_column_raises_schema_error(tmp_path: Path, unified_frame: pd.DataFrame):
    dest = tmp_path / "pbp.feather"
    io.materialize(unified_frame, dest)

    with pytest.raises(SchemaError) as excinfo:
        io.read_materialized(dest, columns=["air_yards"])

    assert excinfo.value.context["column"] == "air_yards"


def test_open_materialized_missing_file(tmp_path: Path):
    with pytest.raises(PipelineIOError):
        io.open_materialized(tmp_path / "nope.feather")


def test_materialize_rejects_nested_columns_before_writing(tmp_path: Path):
    table = pa.table({"season": [2019], "tags": [[1, 2]]})
    dest = tmp_path / "pbp.feather"

    with pytest.raises(SchemaError) as excinfo:
        io.materialize(table, dest)

    assert excinfo.value.context["column"] == "tags"
    assert list(tmp_path.iterdir()) == []


def test_materialize_rejects_mixed_object_columns(tmp_path: Path):
    df = pd.DataFrame({"mixed": [1, "a", 2.5]})

    with pytest.raises(SchemaError):
        io.materialize(df, tmp_path / "pbp.feather")


def test_materialize_failure_leaves_previous_file_and_no_temp(
    tmp_path: Path, unified_frame: pd.DataFrame, monkeypatch
):
    dest = tmp_path / "pbp.feather"
    io.materialize(unified_frame.head(3), dest)

    def boom(table, path, compression=None):
        Path(path).write_bytes(b"partial")
        raise OSError("disk full")

    monkeypatch.setattr(io.feather, "write_feather", boom)

    with pytest.raises(PipelineIOError) as excinfo:
        io.materialize(unified_frame, dest)

    assert excinfo.value.stage == "materialize"
    assert [p.name for p in tmp_path.iterdir()] == ["pbp.feather"]
    assert io.read_materialized(dest).num_rows == 3


def test_move_replace_overwrites_existing_directory(tmp_path: Path):
    src = tmp_path / "staging"
    src.mkdir()
    (src / "a.txt").write_text("new")
    dest = tmp_path / "dest"
    dest.mkdir()
    (dest / "old.txt").write_text("old")

    io.move_replace(src, dest)

    assert [p.name for p in dest.iterdir()] == ["a.txt"]
    assert not src.exists()
