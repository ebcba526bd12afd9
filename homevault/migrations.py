"""
Database schema management for homevault.

The run-history schema is small; tables are created on first start.
"""

import logging
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError
from homevault import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Initialize database schema.

    Creates any missing tables. Safe to call from several processes at once.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = set(inspector.get_table_names())
        expected_tables = set(db.metadata.tables)

        missing = expected_tables - existing_tables
        if not missing:
            return

        logger.info(f"Creating database tables: {', '.join(sorted(missing))}")
        try:
            db.create_all()
            logger.info("Database schema created successfully")
        except OperationalError as e:
            # Another process created the tables first
            logger.warning(f"Database schema creation raced: {e}")
