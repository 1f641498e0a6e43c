"""Programmatic Alembic migration runner.

Lets ``famcal migrate`` and the runtime apply schema changes without
shelling out to the Alembic CLI.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CORE_CHAIN = "core"


def to_sqlalchemy_url(db_url: str) -> str:
    """Normalize a libpq-style ``postgres://`` URL for SQLAlchemy."""
    if db_url.startswith("postgres://"):
        return "postgresql://" + db_url.removeprefix("postgres://")
    return db_url


def build_alembic_config(db_url: str) -> Config:
    """Build an Alembic Config pointing at the core version chain.

    Args:
        db_url: SQLAlchemy-compatible database URL.

    Returns:
        A configured alembic.config.Config instance.
    """
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Alembic Config uses configparser interpolation; '%' must be escaped.
    config.set_main_option("sqlalchemy.url", to_sqlalchemy_url(db_url).replace("%", "%%"))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / CORE_CHAIN))
    return config


def upgrade_to_head(db_url: str) -> None:
    """Upgrade the core chain to head (blocking)."""
    config = build_alembic_config(db_url)
    logger.info("Running migration chain to head (chain=%s)", CORE_CHAIN)
    command.upgrade(config, f"{CORE_CHAIN}@head")


async def run_migrations(db_url: str) -> None:
    """Run Alembic migrations without blocking the event loop."""
    await asyncio.to_thread(upgrade_to_head, db_url)
