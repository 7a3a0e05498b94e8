import time

import structlog
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker

logger = structlog.get_logger(__name__)

# Module-level variables (initially None - lazy initialization)
engine = None
SessionLocal = None
_initialized = False

# Retry configuration
MAX_RETRIES = 5
INITIAL_RETRY_DELAY = 1.0  # seconds
MAX_RETRY_DELAY = 30.0  # seconds

SUPPORTED_SCHEMES = ("postgresql", "sqlite")

Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for a PostgreSQL (production) or SQLite (local/test) URL.

    Raises:
        ValueError: If database_url is empty or uses an unsupported scheme
    """
    if not database_url:
        raise ValueError("DATABASE_URL is required but was not provided")

    scheme = database_url.split(":", 1)[0].split("+", 1)[0]
    if scheme not in SUPPORTED_SCHEMES:
        raise ValueError(
            f"Invalid DATABASE_URL format. Expected postgresql:// or sqlite:// "
            f"but got: {database_url[:20]}..."
        )

    if scheme == "sqlite":
        # Import workers use their own threads; each takes its own pooled connection
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    # READ COMMITTED: concurrent jobs touching the same natural keys
    # serialize on the upsert's row locks
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        isolation_level="READ COMMITTED",
        connect_args={
            "connect_timeout": 10,
            "options": "-c timezone=utc"
        }
    )


def initialize_database(database_url: str) -> bool:
    """
    Initialize database connection with explicit DATABASE_URL.

    Args:
        database_url: PostgreSQL (or SQLite) connection string

    Returns:
        True if initialization successful

    Raises:
        ValueError: If database_url is invalid
        RuntimeError: If connection fails after all retries
    """
    global engine, SessionLocal, _initialized

    engine = build_engine(database_url)

    # Test connection with exponential backoff retry
    last_error = None
    retry_delay = INITIAL_RETRY_DELAY

    for attempt in range(1, MAX_RETRIES + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            SessionLocal = sessionmaker(
                autocommit=False,
                autoflush=False,
                bind=engine
            )
            _initialized = True

            logger.info("database_connected", attempts=attempt, dialect=engine.dialect.name)
            return True

        except OperationalError as e:
            last_error = e
            if attempt < MAX_RETRIES:
                logger.warning(
                    "database_connection_retry",
                    attempt=attempt,
                    max_retries=MAX_RETRIES,
                    retry_in_seconds=retry_delay,
                    error=str(e),
                )
                time.sleep(retry_delay)
                retry_delay = min(retry_delay * 2, MAX_RETRY_DELAY)
            else:
                logger.error("database_connection_failed", attempts=MAX_RETRIES, error=str(e))

    raise RuntimeError(
        f"Failed to connect to database after {MAX_RETRIES} attempts. "
        f"Last error: {str(last_error)}"
    )


def get_session_factory() -> sessionmaker:
    if not _initialized or SessionLocal is None:
        raise RuntimeError(
            "Database not initialized. "
            "Call initialize_database(database_url) first."
        )
    return SessionLocal


def get_engine() -> Engine:
    if not _initialized or engine is None:
        raise RuntimeError(
            "Database not initialized. "
            "Call initialize_database(database_url) first."
        )
    return engine
