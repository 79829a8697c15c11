"""SkillOps database layer: Base, engine, session, exceptions."""

from skillops.db.base import Base
from skillops.db.engine import create_engine, create_engine_from_config, dispose_engine, get_engine
from skillops.db.exceptions import (
    ConfigurationError,
    DatabaseError,
)
from skillops.db.session import create_session_factory, get_session, transaction

__all__ = [
    "Base",
    "create_engine",
    "create_engine_from_config",
    "get_engine",
    "dispose_engine",
    "create_session_factory",
    "get_session",
    "transaction",
    "DatabaseError",
    "ConfigurationError",
]
