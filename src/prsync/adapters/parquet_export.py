from __future__ import annotations
import json, os
from datetime import datetime
from typing import Any, Sequence

import pyarrow as pa, pyarrow.parquet as pq

_TS = pa.timestamp("us", tz="UTC")

SCHEMAS: dict[str, pa.Schema] = {
    "pull_requests": pa.schema([
        ("id", pa.int64()),
        ("repository", pa.string()),
        ("number", pa.int64()),
        ("author", pa.string()),
        ("title", pa.string()),
        ("state", pa.string()),
        ("draft", pa.bool_()),
        ("head_branch", pa.string()),
        ("base_branch", pa.string()),
        ("created_at", _TS),
        ("updated_at", _TS),
        ("merged_at", _TS),
        ("closed_at", _TS),
        ("labels", pa.list_(pa.string())),
        ("requested_reviewers", pa.list_(pa.string())),
        ("synced_at", _TS),
    ]),
    "reviews": pa.schema([
        ("id", pa.int64()),
        ("pull_request_id", pa.int64()),
        ("pull_number", pa.int64()),
        ("repository", pa.string()),
        ("reviewer", pa.string()),
        ("state", pa.string()),
        ("submitted_at", _TS),
        ("body", pa.string()),
        ("synced_at", _TS),
    ]),
    "comments": pa.schema([
        ("kind", pa.string()),
        ("id", pa.int64()),
        ("pull_request_id", pa.int64()),
        ("pull_number", pa.int64()),
        ("repository", pa.string()),
        ("author", pa.string()),
        ("body", pa.string()),
        ("created_at", _TS),
        ("updated_at", _TS),
        ("review_id", pa.int64()),
        ("path", pa.string()),
        ("line", pa.int64()),
        ("synced_at", _TS),
    ]),
}


def _convert(value: Any, typ: pa.DataType) -> Any:
    if value is None: return None
    if pa.types.is_timestamp(typ): return datetime.fromisoformat(value)
    if pa.types.is_list(typ): return json.loads(value)
    if pa.types.is_boolean(typ): return bool(value)
    return value


def rows_to_table(table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> pa.Table:
    schema = SCHEMAS[table]
    if tuple(columns) != tuple(schema.names):
        raise ValueError(f"{table}: columns {list(columns)} do not match export schema {schema.names}")
    arrays = [
        pa.array([_convert(r[i], f.type) for r in rows], type=f.type)
        for i, f in enumerate(schema)
    ]
    return pa.Table.from_arrays(arrays, schema=schema)


class ParquetExporter:
    """Writes one ``<table>.parquet`` per entity table; each file is replaced atomically."""
    def __init__(self, out_dir: str, codec: str = "zstd") -> None:
        self.out_dir = out_dir
        self.codec = codec
        os.makedirs(self.out_dir, exist_ok=True)

    def path(self, table: str) -> str: return os.path.join(self.out_dir, f"{table}.parquet")

    def write(self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> str:
        path = self.path(table)
        tmp = path + ".tmp"
        pq.write_table(rows_to_table(table, columns, rows), tmp, compression=self.codec)
        os.replace(tmp, path)
        return path
