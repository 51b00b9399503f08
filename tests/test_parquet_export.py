import os

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from prsync.adapters.entity_sqlite import SqliteEntityStore
from prsync.adapters.parquet_export import rows_to_table
from prsync.adapters.sqlite_db import SqliteDatabase
from prsync.application.use_cases import export_parquet

from conftest import make_comment, make_pull, make_review


@pytest.mark.asyncio
async def test_export_writes_one_file_per_table(tmp_path):
    pr = make_pull(1, "2024-01-03T10:00:00", merged="2024-01-04T10:00:00")
    out = str(tmp_path / "export")
    async with SqliteDatabase(":memory:") as db:
        store = SqliteEntityStore(db)
        await store.upsert([pr, make_review(2, pr, "2024-01-03T12:00:00"), make_comment(3, pr, "2024-01-03T12:00:00")])
        paths = await export_parquet(store, out)

    assert sorted(os.path.basename(p) for p in paths) == ["comments.parquet", "pull_requests.parquet",
                                                          "reviews.parquet"]
    assert not any(name.endswith(".tmp") for name in os.listdir(out))

    pulls = pq.read_table(os.path.join(out, "pull_requests.parquet"))
    assert pulls.num_rows == 1
    assert pulls.schema.field("merged_at").type == pa.timestamp("us", tz="UTC")
    row = pulls.to_pylist()[0]
    assert row["state"] == "merged" and row["draft"] is False
    assert row["labels"] == [] and row["closed_at"] is None
    assert pq.read_table(os.path.join(out, "comments.parquet")).column("kind").to_pylist() == ["issue_comment"]


@pytest.mark.asyncio
async def test_export_of_empty_store(tmp_path):
    async with SqliteDatabase(":memory:") as db:
        paths = await export_parquet(SqliteEntityStore(db), str(tmp_path))
    assert all(pq.read_table(p).num_rows == 0 for p in paths)


def test_column_mismatch_rejected():
    with pytest.raises(ValueError):
        rows_to_table("reviews", ("id", "body"), [])
