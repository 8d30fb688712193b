from pathlib import Path

import allure
from sqlalchemy import inspect, text

from transcribe_pipeline.pipeline.repository import JobRepository

pytestmark = [
    allure.epic("Job Store"),
    allure.feature("Schema & Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()
    try:
        with repository.engine.connect() as connection:
            version = connection.execute(
                text("SELECT version_num FROM alembic_version LIMIT 1"),
            ).scalar_one()
        assert version == "20261019_0002"

        tables = set(inspect(repository.engine).get_table_names())
        assert {
            "pipeline_jobs",
            "pipeline_job_events",
            "quota_ledger",
            "quota_commits",
        } <= tables
    finally:
        repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = JobRepository(db_path)
    first.init_schema()
    first.close()

    second = JobRepository(db_path)
    second.init_schema()
    try:
        assert second.count_by_status()
    finally:
        second.close()
