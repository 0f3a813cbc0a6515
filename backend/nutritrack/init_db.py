import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from nutritrack.models.database import Base, engine
import logging

logger = logging.getLogger(__name__)

# Partial index only; the plain composite indexes are declared on the models
PARTIAL_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_consumption_active_user_date "
    "ON consumption_entries(user_id, consumed_at) WHERE is_deleted = false;",
]


def init_database(bind=None):
    """Initialize database with all tables"""
    bind = bind or engine
    try:
        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=bind)
        logger.info("Database tables created successfully!")

        logger.info("Creating indexes...")
        with bind.begin() as conn:
            for index in PARTIAL_INDEXES:
                conn.execute(text(index))
                logger.info(f"Index created: {index[:50]}...")

        logger.info("Database initialization complete!")

    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_database()
