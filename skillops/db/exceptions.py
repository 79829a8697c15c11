"""Database-related exceptions for SkillOps.

All exceptions avoid exposing sensitive data (e.g. passwords) in messages.
"""


class DatabaseError(Exception):
    """Base exception for database operations."""

    pass


class ConfigurationError(DatabaseError):
    """Raised when database configuration is invalid or missing."""

    pass
