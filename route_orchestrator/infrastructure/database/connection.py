"""
Database Connection Manager.

This module handles the low-level details of connecting to the SQL store.
It exposes the SQLModel engine which will be used by the Repositories.
"""

from sqlmodel import create_engine, SQLModel
from ...config import settings


def _connect_args(url: str) -> dict:
    # SQLite connections are shared across the event loop's worker threads
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


# echo=False in production to avoid leaking sensitive data in logs
engine = create_engine(settings.DATABASE_URL, echo=False, connect_args=_connect_args(settings.DATABASE_URL))


def init_db(db_engine=None):
    """
    Idempotent initialization.
    Creates tables if they do not exist.
    Useful for local dev or simple deployments.
    """
    from . import tables  # noqa: F401  (registers the table metadata)

    SQLModel.metadata.create_all(db_engine or engine)
