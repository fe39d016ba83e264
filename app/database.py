"""ADSYNC — Database Engine & Session Factory."""

from sqlmodel import SQLModel, Session, create_engine
from sqlalchemy import text
from app.config import settings
from app.core.logging import get_logger

# Table registration for create_all
from app.models import ad_models, metrics_models  # noqa: F401

logger = get_logger("database")

db_url = settings.effective_database_url


def _mask_url(url: str) -> str:
    """Mask password in DB URL for safe logging."""
    if "@" in url:
        before_at, after_at = url.split("@", 1)
        if ":" in before_at.split("//", 1)[-1]:
            scheme_user = before_at.rsplit(":", 1)[0]
            return f"{scheme_user}:****@{after_at}"
    return url


def build_engine(url: str):
    """Engine with backend-appropriate connection settings."""
    engine_kwargs: dict = {"echo": False}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    else:
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 10
        engine_kwargs["pool_recycle"] = 300
    return create_engine(url, **engine_kwargs)


if db_url.startswith("sqlite"):
    logger.info(f"📦 Database backend: SQLite ({db_url})")
else:
    logger.info(f"🐘 Database backend: PostgreSQL ({_mask_url(db_url)})")

engine = build_engine(db_url)


def test_connection() -> bool:
    """Test the database connection with SELECT 1."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            conn.commit()
        logger.info("✅ Database connection test: SUCCESS")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test: FAILED — {e}")
        return False


def init_db() -> None:
    """Create all tables."""
    SQLModel.metadata.create_all(engine)
    logger.info("✅ Database tables ready")


def get_session():
    """Dependency — yields a DB session."""
    with Session(engine) as session:
        yield session
