"""
db.py
=====
Handles database connection and session management for the consultation store.
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Session factory, bound to an engine by configure_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)

engine: Engine = None


def configure_engine(db_path: str) -> Engine:
    """
    Create the SQLite engine and bind SessionLocal to it.
    ":memory:" gives a single shared in-memory database (used by tests).
    """
    global engine

    if db_path == ":memory:":
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        db_dir = os.path.dirname(db_path)
        # Create directory if it doesn't exist
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
        # For SQLite, we must disable thread check
        engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})

    SessionLocal.configure(bind=engine)
    return engine


def init_db(Base, db_path: str = "data/medisync.db"):
    """
    Initializes the database: creates tables if missing.
    Called once on FastAPI startup; keeps an engine that was configured earlier.
    """
    if engine is None:
        configure_engine(db_path)
    Base.metadata.create_all(bind=engine)
