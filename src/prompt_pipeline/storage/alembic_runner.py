"""Alembic migrations for the batch database, run without the alembic CLI."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Engine

# alembic.ini and alembic/ live at the repository root, next to src/.
PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def migrate(db_path: Path, revision: str = "head") -> None:
    """Upgrade the database at ``db_path`` to ``revision``."""

    command.upgrade(alembic_config(db_path), revision)


def schema_revision(engine: Engine) -> str | None:
    """Revision currently stamped in the database, ``None`` before any migration."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
