"""
Database initialization script.

Creates all tables defined in the SQLAlchemy models and, on PostgreSQL,
applies the row-level tenancy policies.

Usage:
    python -m scripts.init_db [--skip-rls]

Environment variables:
    DATABASE_URL: PostgreSQL connection string
"""

import argparse
import logging
import os

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from coursecove.db_base import Base
import coursecove.models  # noqa: F401 - registers model metadata
import coursecove.platform.audit  # noqa: F401 - registers audit_logs

from scripts.apply_rls import apply_policies, get_database_url

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def init_database(database_url: str) -> None:
    """
    Create any missing tables.

    Existing tables are not modified.
    """
    engine = create_engine(
        database_url,
        pool_pre_ping=True,
        echo=os.getenv("SQL_ECHO", "false").lower() == "true",
    )

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connection successful")
    except SQLAlchemyError as e:
        logger.error("Failed to connect to database", extra={"error": str(e)})
        raise

    table_names = sorted(Base.metadata.tables.keys())
    logger.info("Tables to create/verify: %s", ", ".join(table_names))
    Base.metadata.create_all(bind=engine)
    logger.info("All tables created/verified successfully")
    engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Initialize database tables")
    parser.add_argument("--database-url", type=str, help="Overrides DATABASE_URL")
    parser.add_argument("--skip-rls", action="store_true", help="Do not apply RLS policies")
    args = parser.parse_args()

    database_url = args.database_url or get_database_url()
    init_database(database_url)

    if not args.skip_rls and database_url.startswith("postgresql"):
        apply_policies(database_url)

    logger.info("Database initialization complete")


if __name__ == "__main__":
    main()
