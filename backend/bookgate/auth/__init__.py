"""Session token verification."""

from bookgate.auth.session_verifier import Principal, SessionVerifier

__all__ = ["Principal", "SessionVerifier"]
