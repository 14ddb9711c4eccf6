"""
Declarative base shared by all ledger models
"""
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in dev/test)
JSONType = JSON().with_variant(JSONB(), "postgresql")
