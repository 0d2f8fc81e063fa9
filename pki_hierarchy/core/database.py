"""
SQLAlchemy base and engine factory for the per-CA ledger databases.
"""

from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base for ledger models."""
    pass


def create_ledger_engine(database_path: Path, echo: bool = False) -> Engine:
    """
    Create an engine for a CA's ledger database.

    Args:
        database_path: Path of the SQLite file (created if missing)
        echo: Log SQL statements

    Returns:
        Engine: Engine bound to the SQLite file
    """
    engine = create_engine(f"sqlite:///{database_path}", echo=echo)

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        # Survive power loss between a commit and the next read
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=FULL")
        cursor.close()

    return engine
