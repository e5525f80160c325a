# pyright: reportMissingImports=false, reportMissingModuleSource=false
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping

import pandas as pd
import pandera.pandas as pandera
import pyarrow as pa
from pandera.errors import SchemaError as PanderaSchemaError, SchemaErrors

from ..errors import SchemaError


_PANDERA_DTYPES: Dict[str, object] = {
    "int": "Int64",
    "float": "float64",
    "str": str,
    "bool": "boolean",
}


def _is_string(t: pa.DataType) -> bool:
    if pa.types.is_dictionary(t):
        return _is_string(t.value_type)
    return pa.types.is_string(t) or pa.types.is_large_string(t)


# Null-typed columns (entirely missing in the source) are compatible with every declared type
_ARROW_CHECKS: Dict[str, Callable[[pa.DataType], bool]] = {
    "int": lambda t: pa.types.is_integer(t) or pa.types.is_null(t),
    "float": lambda t: pa.types.is_floating(t) or pa.types.is_integer(t) or pa.types.is_null(t),
    "str": lambda t: _is_string(t) or pa.types.is_null(t),
    "bool": lambda t: pa.types.is_boolean(t) or pa.types.is_null(t),
}


@dataclass(frozen=True)
class TableSchema:
    """Explicit column name -> declared type mapping, checked when data is opened."""

    columns: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "TableSchema":
        unknown = {k: v for k, v in mapping.items() if v not in _ARROW_CHECKS}
        if unknown:
            raise ValueError(f"unsupported declared types: {unknown}")
        return cls(columns=dict(mapping))

    @property
    def names(self) -> List[str]:
        return list(self.columns)

    def to_pandera(self) -> pandera.DataFrameSchema:
        return pandera.DataFrameSchema(
            {name: pandera.Column(_PANDERA_DTYPES[kind], nullable=True) for name, kind in self.columns.items()},
            coerce=True,
            strict=False,
        )

    def validate_frame(self, df: pd.DataFrame, stage: str) -> pd.DataFrame:
        require_columns(df.columns, self.names, stage)
        try:
            return self.to_pandera().validate(df, lazy=True)
        except (PanderaSchemaError, SchemaErrors) as exc:
            raise SchemaError("frame does not match declared schema", stage=stage, detail=str(exc)) from exc

    def check_arrow_schema(self, schema: pa.Schema, stage: str) -> None:
        require_columns(schema.names, self.names, stage)
        for name, kind in self.columns.items():
            actual = schema.field(name).type
            if not _ARROW_CHECKS[kind](actual):
                raise SchemaError(
                    "column type incompatible with declared type",
                    stage=stage,
                    column=name,
                    declared=kind,
                    actual=str(actual),
                )


def require_columns(available: Iterable[str], required: Iterable[str], stage: str) -> None:
    have = set(available)
    for col in required:
        if col not in have:
            raise SchemaError("column missing from input schema", stage=stage, column=col)
