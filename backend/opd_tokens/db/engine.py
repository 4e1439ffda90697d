"""
Database connection via SQLAlchemy.

PostgreSQL (psycopg3) is the system of record in deployment; SQLite is
used for local runs and tests. Both slot and token tables live in the
same database so a single transaction spans them.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

# SQLAlchemy base for model declarations
Base = declarative_base()


def create_store_engine(url: str, echo: bool = False, serialize_sqlite: bool = True):
    """
    Create an engine for the token store.

    For SQLite the pysqlite driver's implicit transaction handling is
    disabled and every transaction starts with BEGIN IMMEDIATE, so
    concurrent writers are serialized by the database instead of failing
    half way through. Pass serialize_sqlite=False to get deferred
    transactions (used to exercise optimistic version conflicts).
    """
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_conn, connection_record):
            # Let SQLAlchemy emit BEGIN itself
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            if serialize_sqlite:
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

        return engine

    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Recycle connections every 5 minutes
        pool_reset_on_return="rollback",
    )


def make_session_factory(engine) -> sessionmaker:
    """
    Session factory for engine transactions.

    expire_on_commit is off so committed slots and tokens can be handed
    back to callers after the transaction closes.
    """
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine):
    """Initialize database tables (for development/testing)."""
    # Import models so they register with Base.metadata
    from opd_tokens import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
