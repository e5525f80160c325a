from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, validator


SUPPORTED_EXTENSIONS = ("csv", "csv.gz", "tsv", "tsv.gz")
SUPPORTED_TYPES = ("int", "float", "str", "bool")


class ConflictPolicy(str, Enum):
    OVERWRITE = "overwrite"
    ERROR = "error"
    APPEND = "append"


class SourceConfigModel(BaseModel):
    base_url: str
    resource: str = "play_by_play"
    ext: str = "csv.gz"
    seasons: str = "2018-2019"
    timeout_seconds: Optional[float] = 60.0
    max_workers: int = Field(1, ge=1)

    @validator("ext")
    def supported_ext(cls, v: str) -> str:
        v = v.lstrip(".")
        if v not in SUPPORTED_EXTENSIONS:
            raise ValueError(f"ext must be one of {', '.join(SUPPORTED_EXTENSIONS)}")
        return v


class DatasetConfigModel(BaseModel):
    name: str = "pbp"
    partitions: List[str]
    format: str = Field("parquet")
    compression: str = Field("none")
    conflict: ConflictPolicy = ConflictPolicy.OVERWRITE
    max_rows_per_file: Optional[int] = None

    @validator("partitions")
    def non_empty_partitions(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("partitions must not be empty")
        return v

    @validator("format")
    def supported_format(cls, v: str) -> str:
        if v not in ("parquet", "feather"):
            raise ValueError("format must be parquet or feather")
        return v


class AggregateModel(BaseModel):
    column: str
    reducer: str = "mean"


class BenchmarkConfigModel(BaseModel):
    repetitions: int = Field(5, ge=1)
    filters: List[str] = Field(default_factory=list)
    group_by: str
    aggregate: AggregateModel
    variants: Optional[List[str]] = None


class PipelineModel(BaseModel):
    root: str = "data"
    materialized: str = "pbp.feather"
    source: SourceConfigModel
    dataset: DatasetConfigModel
    columns: Dict[str, str] = Field(default_factory=dict)
    benchmark: Optional[BenchmarkConfigModel] = None

    @validator("columns")
    def known_types(cls, v: Dict[str, str]) -> Dict[str, str]:
        bad = {k: t for k, t in v.items() if t not in SUPPORTED_TYPES}
        if bad:
            raise ValueError(f"unsupported column types: {bad}")
        return v


@dataclass
class SourceConfig:
    base_url: str
    resource: str
    ext: str
    seasons: str
    timeout_seconds: Optional[float] = None
    max_workers: int = 1

    def url_for(self, season: int) -> str:
        return f"{self.base_url.rstrip('/')}/{self.resource}_{season}.{self.ext}"


@dataclass
class PartitionConfig:
    name: str
    partitions: List[str]
    format: str = "parquet"
    compression: str = "none"
    conflict: ConflictPolicy = ConflictPolicy.OVERWRITE
    max_rows_per_file: Optional[int] = None


@dataclass
class BenchmarkConfig:
    repetitions: int
    filters: List[str]
    group_by: str
    aggregate_column: str
    reducer: str
    variants: Optional[List[str]] = None


@dataclass
class PipelineConfig:
    root: str
    materialized: str
    source: SourceConfig
    dataset: PartitionConfig
    columns: Dict[str, str] = field(default_factory=dict)
    benchmark: Optional[BenchmarkConfig] = None

    @property
    def materialized_path(self) -> Path:
        return Path(self.root) / self.materialized

    @property
    def dataset_root(self) -> Path:
        return Path(self.root) / self.dataset.name


def _resolve_root_from_env(default_root: str) -> str:
    return os.getenv("PBP_ROOT") or default_root


def load_pipeline_config(path: Optional[str] = None) -> PipelineConfig:
    yaml_path = Path(path or "catalog/pipeline.yml")
    data = yaml.safe_load(yaml_path.read_text())
    parsed = PipelineModel.parse_obj(data)

    bench = None
    if parsed.benchmark is not None:
        bench = BenchmarkConfig(
            repetitions=parsed.benchmark.repetitions,
            filters=parsed.benchmark.filters,
            group_by=parsed.benchmark.group_by,
            aggregate_column=parsed.benchmark.aggregate.column,
            reducer=parsed.benchmark.aggregate.reducer,
            variants=parsed.benchmark.variants,
        )

    return PipelineConfig(
        root=_resolve_root_from_env(parsed.root),
        materialized=parsed.materialized,
        source=SourceConfig(
            base_url=parsed.source.base_url,
            resource=parsed.source.resource,
            ext=parsed.source.ext,
            seasons=parsed.source.seasons,
            timeout_seconds=parsed.source.timeout_seconds,
            max_workers=parsed.source.max_workers,
        ),
        dataset=PartitionConfig(
            name=parsed.dataset.name,
            partitions=parsed.dataset.partitions,
            format=parsed.dataset.format,
            compression=parsed.dataset.compression,
            conflict=parsed.dataset.conflict,
            max_rows_per_file=parsed.dataset.max_rows_per_file,
        ),
        columns=dict(parsed.columns),
        benchmark=bench,
    )
