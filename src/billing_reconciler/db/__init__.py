"""
Database module for the billing reconciler
"""
from .base import Base
from .engine import engine, SessionLocal, get_db, init_db
from .ledger_store import LedgerStore

__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "get_db",
    "init_db",
    "LedgerStore",
]
