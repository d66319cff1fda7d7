from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from marketplace.core.config import DATABASE_URL, ENV_NORMALIZED
from marketplace.core.database import Base

logger = logging.getLogger(__name__)
MIGRATIONS_PREFIX = "[MIGRATIONS]"


def validate_database_environment(database_url: str = DATABASE_URL, env: str = ENV_NORMALIZED) -> None:
    if env in {"prod", "production"} and database_url.startswith("sqlite"):
        logger.critical("%s SQLite is forbidden in production", MIGRATIONS_PREFIX)
        raise RuntimeError("SQLite is forbidden in production environment")


async def create_sqlite_schema(engine: AsyncEngine) -> None:
    """Em SQLite de desenvolvimento cria as tabelas; nos demais bancos vale o Alembic."""
    if engine.url.get_backend_name() != "sqlite":
        logger.info("%s schema managed by alembic", MIGRATIONS_PREFIX)
        return
    import marketplace.models  # noqa: F401  registra os models no metadata

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    logger.info("%s sqlite schema ensured", MIGRATIONS_PREFIX)
