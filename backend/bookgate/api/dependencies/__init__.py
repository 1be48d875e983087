"""
Shared FastAPI dependencies.
"""

from bookgate.api.dependencies.identity import (
    get_current_identity,
    get_session_verifier,
    require_roles,
)

__all__ = [
    "get_current_identity",
    "get_session_verifier",
    "require_roles",
]
