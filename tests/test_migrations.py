from __future__ import annotations

from pathlib import Path

import allure
from sqlalchemy import create_engine, inspect

from portable_content.storage.alembic_runner import current_revision, upgrade_head

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Migrations"),
]


def test_upgrade_head_creates_queue_tables(tmp_path: Path) -> None:
    db_path = tmp_path / "queue.db"
    assert current_revision(db_path) is None

    upgrade_head(db_path)
    upgrade_head(db_path)

    engine = create_engine(f"sqlite:///{db_path}")
    try:
        tables = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    assert {"transform_jobs", "transform_job_events"} <= tables
    assert current_revision(db_path) == "20261019_0001"
