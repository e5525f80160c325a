# pyright: reportMissingImports=false, reportMissingModuleSource=false
from typing import List, Optional

import orjson
import typer
from dotenv import load_dotenv

from .config import ConflictPolicy, load_pipeline_config
from .errors import PipelineError
from .logging_setup import configure_logging

app = typer.Typer(no_args_is_help=True, add_completion=False)


def _split_csv(value: Optional[str]) -> Optional[List[str]]:
    return [v.strip() for v in value.split(",") if v.strip()] if value else None


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Log level (default LOG_LEVEL or INFO)"),
) -> None:
    load_dotenv()
    configure_logging(log_level)


@app.command()
def run(
    config: Optional[str] = typer.Option(None, help="Pipeline YAML (default catalog/pipeline.yml)"),
    seasons: Optional[str] = typer.Option(None, help="Season range, e.g. 2018-2019 or comma list"),
    timeout: Optional[float] = typer.Option(None, help="Overall fetch deadline in seconds"),
    fingerprint: bool = typer.Option(False, help="Record per-partition row fingerprints"),
) -> None:
    """Fetch seasons, materialize them and write the partitioned dataset."""
    cfg = load_pipeline_config(config)
    # Lazy import to avoid heavy deps during --help
    from .importers import CancelToken
    from .orchestration import run_pipeline

    try:
        result = run_pipeline(cfg, seasons=seasons, cancel=CancelToken(timeout), fingerprint=fingerprint)
    except PipelineError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"materialized: {result.materialized.path} rows={result.rows}")
    for part, st in sorted(result.dataset.partitions.items()):
        typer.echo(f"partition: {part} rows={st.row_count}")


@app.command()
def partition(
    config: Optional[str] = typer.Option(None, help="Pipeline YAML (default catalog/pipeline.yml)"),
    keys: Optional[str] = typer.Option(None, help="Comma-separated partition keys (default from config)"),
    conflict: Optional[ConflictPolicy] = typer.Option(None, help="overwrite, error or append"),
) -> None:
    """Re-partition the existing materialized file without re-fetching."""
    cfg = load_pipeline_config(config)
    from .partition import partition_dataset

    try:
        dataset = partition_dataset(
            cfg.materialized_path,
            _split_csv(keys) or cfg.dataset.partitions,
            cfg.dataset_root,
            policy=conflict or cfg.dataset.conflict,
            file_format=cfg.dataset.format,
            compression=cfg.dataset.compression,
            max_rows_per_file=cfg.dataset.max_rows_per_file,
        )
    except PipelineError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"partitioned: {dataset.root} partitions={len(dataset.partitions)} rows={dataset.num_rows}")


@app.command()
def query(
    group_by: str = typer.Option(..., help="Grouping column"),
    column: str = typer.Option(..., help="Aggregated column"),
    reducer: str = typer.Option("mean", help="mean, mean-skip-missing, sum, min or max"),
    where: Optional[List[str]] = typer.Option(None, help="Filter such as season=2019; repeatable"),
    sort: bool = typer.Option(True, help="Sort by group key"),
    config: Optional[str] = typer.Option(None, help="Pipeline YAML (default catalog/pipeline.yml)"),
) -> None:
    """Filter, group and aggregate the partitioned dataset."""
    cfg = load_pipeline_config(config)
    from .query import Aggregate, parse_predicate, run_query
    from .schemas import TableSchema

    try:
        filters = [parse_predicate(w) for w in where or []]
        result = run_query(
            cfg.dataset_root,
            filters,
            group_by,
            Aggregate(column, reducer),
            schema=TableSchema.from_mapping(cfg.columns) if cfg.columns else None,
            sort=sort,
        )
    except PipelineError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(result.to_pandas().to_string(index=False))
    typer.echo(f"partitions read: {len(result.partitions_read)}")


@app.command()
def bench(
    config: Optional[str] = typer.Option(None, help="Pipeline YAML (default catalog/pipeline.yml)"),
    repetitions: Optional[int] = typer.Option(None, help="Repetitions per variant"),
    variants: Optional[str] = typer.Option(None, help="Comma-separated variant filter"),
    json_out: Optional[str] = typer.Option(None, help="Also write the report as JSON to this path"),
) -> None:
    """Time the configured query across loading strategies."""
    cfg = load_pipeline_config(config)
    from .orchestration import run_benchmark_suite

    try:
        report = run_benchmark_suite(cfg, repetitions=repetitions, variants=_split_csv(variants))
    except PipelineError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(report.to_frame().to_string(index=False))
    if json_out:
        with open(json_out, "wb") as f:
            f.write(orjson.dumps(report.to_records(), option=orjson.OPT_INDENT_2))


@app.command()
def profile(
    config: Optional[str] = typer.Option(None, help="Pipeline YAML (default catalog/pipeline.yml)"),
    values: Optional[str] = typer.Option(None, help="Limit to first-key values (comma-separated), e.g. 2018,2019"),
) -> None:
    cfg = load_pipeline_config(config)
    from .profiling import profile_dataset

    try:
        written = profile_dataset(cfg.dataset_root, cfg.dataset.partitions, _split_csv(values))
    except PipelineError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)
    for part, rows in written:
        typer.echo(f"profiled: {part} rows={rows}")


if __name__ == "__main__":
    app()
