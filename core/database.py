from typing import Generator
import logging

from sqlmodel import SQLModel, create_engine, Session

from core.config import settings

logger = logging.getLogger(__name__)

# ============================================================
# ✅ Engine setup (PostgreSQL in production, SQLite locally)
# ============================================================
DATABASE_URL = settings.DATABASE_URL


def build_engine(url: str, **kwargs):
    """
    Create a SQLModel engine. SQLite needs check_same_thread disabled because
    webhook processing runs in a worker thread.
    """
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        return create_engine(url, echo=False, connect_args=connect_args, **kwargs)
    # For PostgreSQL, pool_pre_ping avoids stale connections
    return create_engine(url, echo=False, pool_pre_ping=True, **kwargs)


engine = build_engine(DATABASE_URL)
logger.info(f"✅ Database engine ready ({engine.url.get_backend_name()})")


# ============================================================
# ✅ Create tables (called at startup)
# ============================================================
def create_db_and_tables() -> None:
    """
    Create all database tables based on SQLModel models.
    This runs automatically at app startup.
    """
    # Registers the table classes on SQLModel.metadata
    import models.models  # noqa: F401

    try:
        SQLModel.metadata.create_all(engine)
        logger.info("✅ All database tables created successfully.")
    except Exception as e:
        logger.error(f"❌ Failed to create tables: {e}")
        raise


# ============================================================
# ✅ Dependency: FastAPI session generator
# ============================================================
def get_session() -> Generator[Session, None, None]:
    """
    Provides a SQLModel Session to FastAPI dependencies.
    Closes automatically after request completes.
    """
    with Session(engine) as session:
        yield session
