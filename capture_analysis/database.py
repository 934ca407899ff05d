from sqlmodel import SQLModel, create_engine
from capture_analysis.config import settings
from capture_analysis.core.logging_config import get_logger

logger = get_logger(__name__)

engine = create_engine(
    settings.database_url,
    echo=settings.log_level == "DEBUG",
    pool_pre_ping=True
)

def create_db_and_tables(bind=None):
    # Import models so they register with the metadata
    from capture_analysis import models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
    logger.info("Database tables created")
