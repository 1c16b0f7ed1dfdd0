from pathlib import Path

import allure
from sqlalchemy import inspect

from prompt_pipeline.batch.repository import BatchRepository

pytestmark = [
    allure.epic("Batch Execution"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = BatchRepository(tmp_path / "nested" / "migrations.db")
    repository.init_schema()

    assert repository.schema_revision() == "20261019_0001"

    inspector = inspect(repository.engine)
    columns = {column["name"] for column in inspector.get_columns("batch_jobs")}
    assert columns == {
        "id",
        "batch_id",
        "status",
        "input",
        "output",
        "error",
        "retry_count",
        "started_at",
        "completed_at",
    }
    indexes = {index["name"] for index in inspector.get_indexes("batch_jobs")}
    assert "idx_batch_jobs_batch_status" in indexes
    repository.close()


def test_schema_revision_is_none_before_migration(tmp_path: Path) -> None:
    repository = BatchRepository(tmp_path / "fresh.db")

    assert repository.schema_revision() is None
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = BatchRepository(tmp_path / "twice.db")
    repository.init_schema()
    repository.insert_jobs("b", [{"id": "kept"}])

    repository.init_schema()

    assert repository.get_job("kept") is not None
    repository.close()
