import os
import logging
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_engine_from_url(database_url: str):
    """
    Creates a SQLAlchemy engine from a database URL.

    PostgreSQL gets pool_pre_ping=True to detect dropped connections.
    In-memory SQLite shares a single connection so every session sees
    the same database (used by tests).
    """
    is_postgres = "postgresql" in database_url.lower() or "postgres" in database_url.lower()

    if is_postgres:
        engine = create_engine(
            database_url,
            echo=False,
            pool_pre_ping=True,  # check connections before use
            pool_size=5,
            max_overflow=10,
        )
        logger.info("PostgreSQL engine created with pool_pre_ping=True")
    elif database_url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        logger.info("In-memory SQLite engine created")
    else:
        # FastAPI runs sync endpoints in a threadpool
        engine = create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )
        logger.info("SQLite engine created")

    return engine


def create_session_factory(database_url: str, create_tables: bool = False) -> sessionmaker:
    """
    Creates a SQLAlchemy session factory.

    Args:
        database_url: database connection URL
        create_tables: create tables automatically (dev/test only).
                       In production use Alembic migrations.
    """
    engine = create_engine_from_url(database_url)

    if create_tables:
        env = os.getenv("ENV", "dev").lower()
        if env == "prod":
            logger.warning(
                "create_tables=True in production! "
                "Use Alembic migrations instead of creating tables automatically."
            )
        else:
            # Register the mapped classes before create_all
            from . import models  # noqa: F401
            logger.info("Creating tables automatically (dev/test mode)")
            Base.metadata.create_all(bind=engine)

    return sessionmaker(bind=engine, expire_on_commit=False)
