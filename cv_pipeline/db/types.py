"""
Cross-database compatible column types.

Use these instead of PostgreSQL-specific imports:
- GUID instead of postgresql.UUID
- JSONB instead of postgresql.JSONB
- StringArray instead of ARRAY(String)

Native PostgreSQL types are used when available, with SQLite-compatible
fallbacks so the test suite runs against a file database.
"""
from sqlalchemy import TypeDecorator, String, Text, JSON
import uuid
import json
from typing import Any, List, Optional


class GUID(TypeDecorator):
    """
    Platform-independent UUID type.

    - PostgreSQL: native UUID
    - SQLite: String(36)

    Always returns Python uuid.UUID objects.
    """
    impl = String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            from sqlalchemy.dialects.postgresql import UUID as PGUUID
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class JSONB(TypeDecorator):
    """
    Cross-platform JSON.

    - PostgreSQL: JSONB
    - SQLite: JSON (JSON1 extension)
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            from sqlalchemy.dialects.postgresql import JSONB as PGJSONB
            return dialect.type_descriptor(PGJSONB)
        return dialect.type_descriptor(JSON)


class StringArray(TypeDecorator):
    """
    Array of strings type, used for dictionary synonyms.

    - PostgreSQL: ARRAY(VARCHAR)
    - SQLite: JSON-serialized list
    """
    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            from sqlalchemy import ARRAY, String as SAString
            return dialect.type_descriptor(ARRAY(SAString(255)))
        return dialect.type_descriptor(Text)

    def process_bind_param(self, value: Optional[List[str]], dialect) -> Optional[Any]:
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return value
        return json.dumps(value)

    def process_result_value(self, value: Optional[Any], dialect) -> Optional[List[str]]:
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return value
        if isinstance(value, str):
            return json.loads(value)
        return value
