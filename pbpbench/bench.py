# pyright: reportMissingImports=false, reportMissingModuleSource=false
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping

import pandas as pd
import structlog


logger = structlog.get_logger(__name__)


def timing_samples(fn: Callable[[], Any], repetitions: int) -> Iterator[float]:
    """Yield the wall-clock seconds of ``repetitions`` calls to ``fn``, one per call.

    The generator is finite; call again for a fresh run of the same variant.
    """
    if repetitions < 1:
        raise ValueError("repetitions must be >= 1")
    for _ in range(repetitions):
        started = time.perf_counter()
        fn()
        yield time.perf_counter() - started


@dataclass
class VariantTiming:
    variant: str
    samples: List[float] = field(default_factory=list)

    @property
    def repetitions(self) -> int:
        return len(self.samples)

    def summary(self) -> Dict[str, Any]:
        s = pd.Series(self.samples, dtype="float64")
        return {
            "variant": self.variant,
            "repetitions": self.repetitions,
            "min_s": float(s.min()),
            "median_s": float(s.median()),
            "max_s": float(s.max()),
        }


@dataclass
class BenchmarkReport:
    timings: List[VariantTiming] = field(default_factory=list)

    def to_records(self) -> List[Dict[str, Any]]:
        return [t.summary() for t in self.timings]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.to_records(),
            columns=["variant", "repetitions", "min_s", "median_s", "max_s"],
        )


def run_benchmark(variants: Mapping[str, Callable[[], Any]], repetitions: int) -> BenchmarkReport:
    report = BenchmarkReport()
    for name, fn in variants.items():
        timing = VariantTiming(variant=name, samples=list(timing_samples(fn, repetitions)))
        summary = timing.summary()
        logger.info("variant_timed", **summary)
        report.timings.append(timing)
    return report
