import gzip
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from pbpbench.config import SourceConfig


class FakeResponse:
    def __init__(self, content: bytes, status_code: int = 200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        import requests

        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, payloads: dict):
        self.payloads = payloads
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append((url, timeout))
        if url not in self.payloads:
            return FakeResponse(b"", status_code=404)
        return FakeResponse(self.payloads[url])


def make_season_frame(season: int) -> pd.DataFrame:
    rows = [
        ("pass", "BUF", 0.5),
        ("pass", "BUF", -0.1),
        ("pass", "KC", 1.2),
        ("pass", "KC", np.nan),
        ("run", "BUF", 0.3),
        ("run", "KC", -0.4),
        ("pass", "NYJ", np.nan),
        ("pass", "NYJ", np.nan),
        ("punt", "NYJ", -1.0),
    ]
    df = pd.DataFrame(rows, columns=["play_type", "posteam", "epa"])
    df.insert(0, "season", season)
    # Distinguish seasons so a wrong partition would change the answer
    df["epa"] = df["epa"] + (season - 2018) * 0.25
    return df


@pytest.fixture
def source() -> SourceConfig:
    return SourceConfig(
        base_url="https://example.test/pbp",
        resource="play_by_play",
        ext="csv.gz",
        seasons="2018-2019",
        timeout_seconds=5.0,
    )


@pytest.fixture
def season_payloads(source: SourceConfig) -> dict:
    return {
        source.url_for(season): gzip.compress(make_season_frame(season).to_csv(index=False).encode("utf-8"))
        for season in (2018, 2019)
    }


@pytest.fixture
def fake_session(season_payloads: dict) -> FakeSession:
    return FakeSession(season_payloads)


@pytest.fixture
def unified_frame() -> pd.DataFrame:
    return pd.concat([make_season_frame(2018), make_season_frame(2019)], ignore_index=True)


@pytest.fixture
def data_root(tmp_path: Path) -> Path:
    root = tmp_path / "data"
    root.mkdir()
    return root
