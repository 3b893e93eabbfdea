from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from .config import settings
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def resolve_database_url(database_url: str) -> str:
    """Convert a relative SQLite URL to an absolute path under backend/."""
    if "sqlite:///" in database_url and not database_url.startswith("sqlite:////"):
        relative_path = database_url.replace("sqlite:///", "")
        if relative_path == ":memory:":
            return database_url
        backend_dir = Path(__file__).parent.parent  # backend/storymem -> backend/
        absolute_path = (backend_dir / relative_path).resolve()
        return f"sqlite:///{absolute_path}"
    return database_url


database_url = resolve_database_url(settings.database_url)

# Create SQLAlchemy engine
engine = create_engine(
    database_url,
    connect_args={"check_same_thread": False} if "sqlite" in database_url else {}
)

# Create SessionLocal class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create Base class for models
Base = declarative_base()


def init_db():
    """Create the data directory (SQLite) and all tables."""
    if database_url.startswith("sqlite:///"):
        db_path = database_url.replace("sqlite:///", "", 1)
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    from . import models  # noqa: F401  register tables on Base.metadata
    Base.metadata.create_all(bind=engine)
    logger.info(f"[DATABASE] Using {database_url}")


# Dependency to get database session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
