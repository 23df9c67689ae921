"""
Create the membership and access tables on a fresh database.

Tables that already exist are left alone; schema changes go through the
alembic migrations.

Usage:
    python -m scripts.init_db
    python -m scripts.init_db --seed
    python -m scripts.init_db --database-url sqlite:///gymaccess.db

Environment variables:
    DATABASE_URL: PostgreSQL connection string (postgres:// is accepted)
"""

import logging

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from gymaccess.db_base import Base
import gymaccess.models  # noqa: F401 - registers all tables with Base.metadata
from gymaccess.database.session import (
    create_engine_for_url,
    database_url_from_env,
    normalize_database_url,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def init_database(database_url: str) -> list:
    """
    Create any missing tables.

    Returns:
        Names of the tables this run created (empty when all existed)
    """
    engine = create_engine_for_url(normalize_database_url(database_url))

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            existing = set(inspect(conn).get_table_names())
    except SQLAlchemyError as e:
        logger.error("Cannot reach membership store", extra={"error": str(e)})
        engine.dispose()
        raise

    missing = sorted(set(Base.metadata.tables) - existing)
    if not missing:
        logger.info("All membership tables already present")
        engine.dispose()
        return []

    logger.info("Creating membership tables", extra={"tables": missing})
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()

    return missing


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Create gym access tables")
    parser.add_argument("--seed", action="store_true", help="Also load the default membership plans")
    parser.add_argument("--database-url", help="Overrides DATABASE_URL")
    args = parser.parse_args()

    database_url = args.database_url or database_url_from_env()

    created = init_database(database_url)
    print(f"Created {len(created)} table(s): {', '.join(created) or '-'}")

    if args.seed:
        from scripts.seed_membership_plans import seed_plans
        seed_plans(database_url)


if __name__ == "__main__":
    main()
