"""Credential verification and scope-based authorization."""

from micromanager.auth.scopes import ScopeAuthority, denial_message, is_authorized
from micromanager.auth.verifier import CredentialVerifier, Principal, VerificationResult, build_verifier

__all__ = [
    "CredentialVerifier",
    "Principal",
    "ScopeAuthority",
    "VerificationResult",
    "build_verifier",
    "denial_message",
    "is_authorized",
]
