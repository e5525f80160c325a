import json
from pathlib import Path

import pandas as pd

from pbpbench.io import materialize
from pbpbench.partition import partition_dataset
from pbpbench.profiling import profile_dataset


def test_profile_dataset_writes_metrics_per_partition(tmp_path: Path, unified_frame: pd.DataFrame):
    mat = materialize(unified_frame, tmp_path / "pbp.feather")
    partition_dataset(mat, ["season", "play_type"], tmp_path / "pbp")

    written = profile_dataset(tmp_path / "pbp", ["season", "play_type"], output_dir=tmp_path / "quality")

    assert len(written) == 6
    assert dict(written)["season=2019/play_type=pass"] == 6
    rec = json.loads((tmp_path / "quality" / "pbp" / "season=2019_play_type=pass.json").read_text())
    assert rec["partition"] == "season=2019/play_type=pass"
    assert rec["metrics"]["keys"] == {"season": "2019", "play_type": "pass"}
    assert rec["metrics"]["null_counts"]["epa"] == 3
    assert rec["metrics"]["fully_null_columns"] == []


def test_profile_dataset_limits_to_first_key_values(tmp_path: Path, unified_frame: pd.DataFrame):
    partition_dataset(unified_frame, ["season", "play_type"], tmp_path / "pbp")

    written = profile_dataset(tmp_path / "pbp", limit_values=["2018"], output_dir=tmp_path / "quality")

    assert sorted(part for part, _ in written) == [
        "season=2018/play_type=pass",
        "season=2018/play_type=punt",
        "season=2018/play_type=run",
    ]
