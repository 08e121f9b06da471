"""
Dialect-aware column types shared by the ORM models.

Score breakdowns, role lists and publication snapshots are stored as JSON:
JSONB on PostgreSQL, plain JSON on SQLite (tests, local development).
"""
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.mutable import MutableDict, MutableList
from sqlalchemy.types import TypeDecorator


class UniversalJSON(TypeDecorator):
    """JSONB for PostgreSQL, JSON everywhere else."""
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())


# In-place mutation tracking (e.g. user.roles.append(...)) needs the mutable wrappers.
JSONList = MutableList.as_mutable(UniversalJSON)
JSONDict = MutableDict.as_mutable(UniversalJSON)
