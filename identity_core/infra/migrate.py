from __future__ import annotations

import os
from pathlib import Path

from alembic import command
from alembic.config import Config

ALEMBIC_INI = os.getenv("ALEMBIC_INI", str(Path(__file__).resolve().parents[2] / "alembic.ini"))


def build_config(database_url: str | None = None) -> Config:
    config = Config(ALEMBIC_INI)
    url = database_url or os.getenv("DATABASE_URL")
    if url:
        config.set_main_option("sqlalchemy.url", url)
    return config


def run_upgrade_head(database_url: str | None = None) -> None:
    command.upgrade(build_config(database_url), "head")


if __name__ == "__main__":
    run_upgrade_head()
