"""Document collections stored in PostgreSQL JSONB tables, with filters translated to SQL."""

__version__ = "0.1.0"
__all__ = ["catalog", "documents", "sqlbuild", "store"]