# casedispatch/infra/migrate.py
"""
Standalone migration runner.

Run migrations separately from application startup:
    python -m casedispatch.infra.migrate

Set RUN_MIGRATIONS_ON_STARTUP=false on the API when a CI step or an init
container runs this instead.
"""
import asyncio
import sys

from casedispatch.config import settings
from casedispatch.infra.db_async import close_pool, init_pool
from casedispatch.infra.logging_config import get_logger, setup_logging
from casedispatch.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    """Run pending migrations; returns the process exit code."""
    logger.info("=" * 60)
    logger.info("Case dispatch migration runner")
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Database: {settings.pghost}:{settings.pgport}/{settings.pgdatabase}")
    logger.info("=" * 60)

    try:
        await init_pool()
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result["applied"]:
        for name in result["applied"]:
            logger.info(f"Applied: {name}")
    else:
        logger.info("No new migrations to apply")

    return 0 if result["ok"] else 1


if __name__ == "__main__":
    setup_logging(level=settings.log_level, use_json=settings.is_production)
    sys.exit(asyncio.run(main()))
