"""Portable SQL types that work across PostgreSQL and SQLite.

Approval vote lists are stored as ``ARRAY(UUID)`` on PostgreSQL and as a
JSON list of strings elsewhere.
"""

import uuid as _uuid

from sqlalchemy import JSON, TypeDecorator


class UUIDArray(TypeDecorator):
    """Ordered, duplicate-free list of UUIDs.

    Binding keeps the first occurrence of each id, so a vote list can never
    hold the same guardian twice whatever the caller appends.
    """

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import ARRAY, UUID

            return dialect.type_descriptor(ARRAY(UUID(as_uuid=True)))
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        unique = list(dict.fromkeys(_uuid.UUID(str(v)) for v in value))
        if dialect.name == "postgresql":
            return unique
        return [str(v) for v in unique]

    def process_result_value(self, value, dialect):
        if not value:
            return []
        return [v if isinstance(v, _uuid.UUID) else _uuid.UUID(v) for v in value]
