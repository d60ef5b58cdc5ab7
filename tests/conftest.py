"""Shared fixtures: settings and in-memory stores."""

import pytest

from micromanager.config import Settings
from micromanager.services.audit import AuditLog, InMemoryAuditStore
from micromanager.services.transcript import InMemoryTranscriptStore
from micromanager.services.user_context import InMemoryContextStore


@pytest.fixture
def settings() -> Settings:
    """Settings with a signing secret, a development key and the session bridge enabled."""
    return Settings(
        jwt_secret="test-secret-0123456789abcdef0123456789",
        dev_api_key="dev-key-123",
        dev_user_id="dev-user",
        session_token_marker="__TEST_VALUE__",
    )


@pytest.fixture
def transcript() -> InMemoryTranscriptStore:
    return InMemoryTranscriptStore()


@pytest.fixture
def context_store() -> InMemoryContextStore:
    return InMemoryContextStore()


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def audit_log(audit_store) -> AuditLog:
    return AuditLog(audit_store)
