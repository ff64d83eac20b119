"""
SQLite database setup for playlists, EPG lineups and ingestion jobs.

One engine is shared by the API, the chunk processor and the sweeper. Every
connection runs in WAL mode with a busy timeout so a reader polling job
status never blocks a batch write for long.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from config import CONFIG_DIR, get_settings

logger = logging.getLogger(__name__)

INGEST_DB_FILE = CONFIG_DIR / "ingest.db"

CONNECTION_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)

# Columns added after the first release: (table, column, DDL type)
_ADDED_COLUMNS = (
    ("ingest_jobs", "lease_owner", "VARCHAR(100)"),
    ("ingest_jobs", "lease_expires_at", "DATETIME"),
    ("ingest_jobs", "plan_data", "TEXT"),
    ("ingest_jobs", "retry_count", "INTEGER NOT NULL DEFAULT 0"),
)

Base = declarative_base()

# Initialized by init_db()
_engine = None
_SessionLocal = None


def get_database_url(path=None) -> str:
    return f"sqlite:///{path or INGEST_DB_FILE}"


def _apply_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        for pragma in CONNECTION_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def init_db(database_url: Optional[str] = None) -> None:
    """Create the engine and session factory, then bring the schema up to date."""
    global _engine, _SessionLocal

    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    database_url = database_url or get_database_url()
    logger.info("[DB] Initializing ingest database at %s", database_url)

    try:
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
        event.listen(engine, "connect", _apply_pragmas)

        from models import Playlist, Category, Channel, EpgFile, ChannelLineup, IngestJob  # noqa: F401

        Base.metadata.create_all(bind=engine)
        _add_missing_columns(engine)
        purge_expired_jobs(engine)
    except Exception as e:
        logger.exception("[DB] Failed to initialize database: %s", e)
        raise

    _engine = engine
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    logger.info("[DB] Ingest database ready")


def _add_missing_columns(engine) -> None:
    with engine.connect() as conn:
        for table, column, ddl in _ADDED_COLUMNS:
            existing = {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})"))}
            if column in existing:
                continue
            logger.info("[DB] Migrating: adding %s.%s", table, column)
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
        conn.commit()


def purge_expired_jobs(engine) -> int:
    """Delete terminal jobs past the retention window; returns the row count.

    Runs once at startup, before the sweeper takes over. Errors are logged,
    not raised.
    """
    retention_hours = get_settings().job_retention_hours
    cutoff = datetime.utcnow() - timedelta(hours=retention_hours)
    try:
        with engine.connect() as conn:
            result = conn.execute(
                text(
                    "DELETE FROM ingest_jobs WHERE status IN ('completed', 'failed') "
                    "AND updated_at < :cutoff"
                ),
                {"cutoff": cutoff},
            )
            conn.commit()
    except Exception as e:
        logger.error("[DB] Startup purge of expired jobs failed: %s", e)
        return 0

    if result.rowcount:
        logger.info("[DB] Purged %d ingest jobs older than %dh", result.rowcount, retention_hours)
    return result.rowcount


def get_session():
    """Get a database session. Callers close it when done."""
    if _SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()


def get_engine():
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine
