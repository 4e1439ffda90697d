"""
Database access for the OPD token engine.

- SQLAlchemy engine/session factory (PostgreSQL or SQLite)
"""

from .engine import (
    Base,
    create_store_engine,
    make_session_factory,
    init_db,
)

__all__ = [
    "Base",
    "create_store_engine",
    "make_session_factory",
    "init_db",
]
