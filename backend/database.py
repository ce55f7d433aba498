"""
Database setup for the anime catalog.
Uses SQLAlchemy; SQLite by default, PostgreSQL when DATABASE_URL points at one.
"""
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from config import CONFIG_DIR, get_environment

logger = logging.getLogger(__name__)

# Database file location (SQLite default)
CATALOG_DB_FILE = CONFIG_DIR / "catalog.db"

# SQLAlchemy Base for model declarations
Base = declarative_base()

# Engine and session factory (initialized on startup)
_engine = None
_SessionLocal = None


def get_database_url() -> str:
    """Get the database URL from the environment, falling back to the SQLite file."""
    env_url = get_environment().database_url
    if env_url:
        return env_url
    return f"sqlite:///{CATALOG_DB_FILE}"


def _create_engine(database_url: str):
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_engine(database_url, pool_pre_ping=True, echo=False)


def init_db(database_url: Optional[str] = None) -> None:
    """Initialize the database, creating tables if they don't exist."""
    global _engine, _SessionLocal

    try:
        database_url = database_url or get_database_url()
        if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
            CONFIG_DIR.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initializing catalog database ({_engine_label(database_url)})")
        _engine = _create_engine(database_url)
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

        # Import models to register them with Base
        from models import Source, CatalogEntry, Grouping, Episode, TaskExecution  # noqa: F401

        Base.metadata.create_all(bind=_engine)
        logger.info("Catalog database initialized successfully")
    except Exception as e:
        logger.exception(f"Failed to initialize database: {e}")
        raise


def _engine_label(database_url: str) -> str:
    """Database URL without credentials, for logging."""
    if "@" in database_url:
        scheme, _, rest = database_url.partition("://")
        return f"{scheme}://***@{rest.split('@', 1)[1]}"
    return database_url


def get_session():
    """Get a database session. Use as context manager or close manually."""
    if _SessionLocal is None:
        logger.error("Attempted to get database session before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()


def get_engine():
    """Get the database engine."""
    if _engine is None:
        logger.error("Attempted to get database engine before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine
