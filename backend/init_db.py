"""
Database initialisation script
"""
import logging

from therapai.database import engine
# Importing the models package registers every table on Base
from therapai.models import Base

logger = logging.getLogger(__name__)

def init_database():
    """Create all tables"""
    logger.info("Initialising database...")

    Base.metadata.create_all(bind=engine)

    logger.info("Database ready. Tables: %s", ", ".join(sorted(Base.metadata.tables)))

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_database()
