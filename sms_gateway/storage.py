import logging
from typing import Generator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from sms_gateway.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to be shared across
# FastAPI's worker threads
connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False, "timeout": 30}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    pool_pre_ping=True,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("devices", "device_topics", "messages")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url!r}")
    try:
        # Import models to register them with Base.metadata
        from sms_gateway import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and all tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

            inspector = inspect(conn)
            missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
            if missing:
                logger.error(f"Database schema not applied, missing tables: {missing}")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
