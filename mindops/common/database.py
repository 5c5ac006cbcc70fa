"""
Database engine and session factory.

SQLite by default; any SQLAlchemy URL works via ``database.url`` or
MINDOPS_DATABASE_URL.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig

logger = logging.getLogger("mindops.common.database")

Base = declarative_base()


def _make_engine(url: str, echo: bool = False) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection so every session sees the same in-memory db
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    db_path = url.split("sqlite:///", 1)[-1]
    if db_path:
        Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, echo=echo, connect_args={"check_same_thread": False})


class Database:
    """Owns the engine and hands out sessions."""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self.engine = _make_engine(self.config.url, echo=self.config.echo)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )

    def init_db(self) -> None:
        """Create all tables. Call once at startup."""
        from . import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.info("Database ready at %s", self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional scope: commit on success, roll back on error."""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()
