from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy import event
import logging

from crmsync.core.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL
IS_SQLITE = DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
    )
else:
    # Several workers share this database for budgets, circuit state and the task queue
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,
        pool_timeout=30,
        connect_args={"connect_timeout": 10},
    )


@event.listens_for(engine, "connect")
def set_connection_parameters(dbapi_connection, connection_record):
    """Bound statement time on Postgres; enable WAL on SQLite."""
    cursor = dbapi_connection.cursor()
    try:
        if IS_SQLITE:
            cursor.execute("PRAGMA journal_mode=WAL")
        else:
            cursor.execute("SET statement_timeout = '30s'")
    except Exception as e:
        logger.warning(f"Could not set connection parameters: {e}")
    finally:
        cursor.close()


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables():
    import crmsync.models  # noqa: F401  (register tables on the metadata)

    SQLModel.metadata.create_all(engine)
