"""
Database schema initialization for vmkuper.

Creates missing tables without requiring Alembic.
"""

import logging
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from vmkuper import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Initialize database schema.

    Creates missing tables and leaves existing ones alone.
    Safe to call from several processes at once.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = set(inspector.get_table_names())
        expected_tables = set(db.metadata.tables.keys())

        missing = expected_tables - existing_tables
        if not missing:
            return

        logger.info(f"Creating missing tables: {', '.join(sorted(missing))}")
        try:
            db.create_all()
            logger.info("Database schema created successfully")
        except SQLAlchemyError as e:
            # If another worker beat us to it, that's okay
            logger.error(f"Failed to create database schema: {e}")
