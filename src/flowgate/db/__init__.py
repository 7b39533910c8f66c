"""Database module for Flowgate.

Exports:
- Base: SQLAlchemy declarative base
- models: Connection, CreditAccount, CreditTransaction
- session: Async session management
"""

from flowgate.db.models import Base, Connection, CreditAccount, CreditKind, CreditTransaction, Platform
from flowgate.db.session import build_engine, build_sessionmaker, db_session, get_sessionmaker

__all__ = [
    "Base",
    "Connection",
    "CreditAccount",
    "CreditKind",
    "CreditTransaction",
    "Platform",
    "build_engine",
    "build_sessionmaker",
    "db_session",
    "get_sessionmaker",
]
