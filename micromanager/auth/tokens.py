"""Signed access token issuance."""

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

import jwt

from micromanager.auth.scopes import SCOPE_SETS
from micromanager.config import Settings


def issue_access_token(
    settings: Settings,
    user_id: str,
    google_access_token: str | None = None,
    scopes: Iterable[str] | None = None,
    run_id: str | None = None,
) -> str:
    """Issue a short-lived bearer token for the tool-calling channel.

    Args:
        settings: Settings holding the signing secret and token lifetime
        user_id: Subject of the token
        google_access_token: Optional delegated Google credential for calendar tools
        scopes: Explicit scopes; when omitted the verifier derives them from the payload
        run_id: Optional run id correlating tool calls made with this token

    Returns:
        Encoded JWT
    """
    if not settings.jwt_secret:
        raise ValueError("JWT_SECRET is required to issue tokens")

    now = datetime.now(UTC)
    payload: dict[str, object] = {
        "sub": user_id,
        "userId": user_id,
        "iat": now,
        "exp": now + timedelta(seconds=settings.token_ttl_seconds),
    }
    if google_access_token:
        payload["googleAccessToken"] = google_access_token
    scope_list = sorted(set(scopes)) if scopes else []
    if scope_list:
        payload["scopes"] = scope_list
    if run_id:
        payload["workflowRunId"] = run_id

    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def issue_token_with_scope_set(
    settings: Settings, user_id: str, google_access_token: str | None, scope_set: str
) -> str:
    """Issue a token carrying one of the named scope sets (e.g. ``CALENDAR_READ_ONLY``)."""
    return issue_access_token(settings, user_id, google_access_token, SCOPE_SETS[scope_set])
