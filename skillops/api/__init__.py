"""HTTP API for SkillOps."""

from skillops.api.auth import AuthProvider, AuthResult, BearerTokenAuthProvider
from skillops.api.server import SkillOpsAPI, create_app

__all__ = [
    "AuthProvider",
    "AuthResult",
    "BearerTokenAuthProvider",
    "SkillOpsAPI",
    "create_app",
]
