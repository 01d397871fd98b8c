import uuid
from sqlalchemy.orm import declarative_base
from sqlalchemy import CHAR
from sqlalchemy.types import TypeDecorator

Base = declarative_base()

# UUID stored as CHAR(36) so SQLite and PostgreSQL behave the same
class UUIDChar(TypeDecorator):
    impl = CHAR(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        """Called when data is sent to the database."""
        if value is None:
            return value
        elif isinstance(value, uuid.UUID):
            return str(value)
        else:
            return value

    def process_result_value(self, value, dialect):
        """Called when data is read from the database."""
        if value is None:
            return value
        else:
            try:
                return uuid.UUID(value)
            except (TypeError, ValueError):
                return value
