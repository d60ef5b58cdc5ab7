"""Bearer credential verification.

A presented credential is resolved by an ordered chain of strategies:

1. development override (exact match on the configured dev key)
2. delegated session token (marker prefix; identity comes from side-channel headers),
   active only when a marker is configured
3. signed token (HS256 JWT)

Each strategy either declines (returns ``None``, the credential is not its kind)
or produces a definitive ``VerificationResult``. The first definitive result
wins, so a malformed delegated session token is rejected instead of being retried
as a signed token.
"""

import hmac
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import jwt

from micromanager.auth.scopes import ALL_SCOPES, derive_scopes
from micromanager.config import Settings
from micromanager.utils.logging import get_logger

logger = get_logger(__name__)

GOOGLE_ACCESS_TOKEN = "google_access_token"
RUN_ID = "run_id"


@dataclass(frozen=True)
class Principal:
    """Authenticated identity for the lifetime of one request."""

    client_id: str
    scopes: frozenset[str]
    extra: Mapping[str, Any] = field(default_factory=dict)
    strategy: str = "signed"

    @property
    def google_access_token(self) -> str | None:
        return self.extra.get(GOOGLE_ACCESS_TOKEN)

    @property
    def run_id(self) -> str | None:
        return self.extra.get(RUN_ID)

    def __repr__(self) -> str:
        # extra holds delegated secrets
        return f"Principal(client_id={self.client_id!r}, scopes={sorted(self.scopes)}, strategy={self.strategy!r})"


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of credential verification."""

    principal: Principal | None = None
    error: str | None = None

    @property
    def authenticated(self) -> bool:
        return self.principal is not None

    @classmethod
    def accept(cls, principal: Principal) -> "VerificationResult":
        return cls(principal=principal)

    @classmethod
    def reject(cls, error: str) -> "VerificationResult":
        return cls(error=error)


class DelegatedSecretLookup(Protocol):
    """Resolves a user's third-party access token."""

    async def get_access_token(self, user_id: str) -> str | None:
        """Return a usable access token or None."""
        ...


class VerificationStrategy(Protocol):
    """One way of recognizing a bearer credential."""

    name: str

    async def verify(self, token: str, headers: Mapping[str, str]) -> VerificationResult | None:
        """Return None when the credential is not this strategy's kind."""
        ...


class DevOverrideStrategy:
    """Grants every scope to the fixed development identity."""

    name = "dev"

    def __init__(
        self,
        dev_api_key: str | None,
        dev_user_id: str,
        token_lookup: DelegatedSecretLookup | None = None,
        fallback_token: str | None = None,
    ):
        self.dev_api_key = dev_api_key
        self.dev_user_id = dev_user_id
        self.token_lookup = token_lookup
        self.fallback_token = fallback_token

    async def verify(self, token: str, headers: Mapping[str, str]) -> VerificationResult | None:
        if not self.dev_api_key or not hmac.compare_digest(token.encode(), self.dev_api_key.encode()):
            return None

        google_token = await self._lookup_google_token()
        extra: dict[str, Any] = {}
        if google_token:
            extra[GOOGLE_ACCESS_TOKEN] = google_token

        logger.info(f"Dev override credential accepted for {self.dev_user_id}")
        return VerificationResult.accept(
            Principal(client_id=self.dev_user_id, scopes=ALL_SCOPES, extra=extra, strategy=self.name)
        )

    async def _lookup_google_token(self) -> str | None:
        if self.token_lookup is not None:
            try:
                token = await self.token_lookup.get_access_token(self.dev_user_id)
                if token:
                    return token
            except Exception as e:
                logger.warning(f"Google token lookup for dev user failed: {e}")
        return self.fallback_token


class DelegatedSessionStrategy:
    """Front-end session bridge: identity travels in request headers."""

    name = "session"

    def __init__(self, marker: str | None, user_header: str, google_token_header: str):
        self.marker = marker
        self.user_header = user_header.lower()
        self.google_token_header = google_token_header.lower()

    async def verify(self, token: str, headers: Mapping[str, str]) -> VerificationResult | None:
        if not self.marker or not token.startswith(self.marker):
            return None

        user_id = headers.get(self.user_header)
        if not user_id:
            logger.warning("Session token presented without a user id header")
            return VerificationResult.reject(f"Missing {self.user_header} header for session token")

        google_token = headers.get(self.google_token_header) or None
        extra: dict[str, Any] = {}
        if google_token:
            extra[GOOGLE_ACCESS_TOKEN] = google_token

        return VerificationResult.accept(
            Principal(
                client_id=user_id,
                scopes=derive_scopes(google_token is not None),
                extra=extra,
                strategy=self.name,
            )
        )


class SignedTokenStrategy:
    """HS256 JWT carrying subject, optional scopes and delegated secret."""

    name = "signed"

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    async def verify(self, token: str, headers: Mapping[str, str]) -> VerificationResult | None:
        if not self.secret:
            return VerificationResult.reject("Signed tokens are not accepted by this server")

        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm], options={"require": ["exp"]})
        except jwt.ExpiredSignatureError:
            return VerificationResult.reject("Token expired")
        except jwt.InvalidTokenError as e:
            logger.info(f"Signed token rejected: {type(e).__name__}")
            return VerificationResult.reject("Invalid token")

        subject = payload.get("sub") or payload.get("userId")
        if not subject or not isinstance(subject, str):
            return VerificationResult.reject("Token has no subject")

        google_token = payload.get("googleAccessToken")
        if not isinstance(google_token, str) or not google_token:
            google_token = None

        raw_scopes = payload.get("scopes")
        if isinstance(raw_scopes, list) and raw_scopes:
            scopes = frozenset(str(scope) for scope in raw_scopes)
        else:
            scopes = derive_scopes(google_token is not None)

        extra: dict[str, Any] = {}
        if google_token:
            extra[GOOGLE_ACCESS_TOKEN] = google_token
        run_id = payload.get("workflowRunId")
        if isinstance(run_id, str) and run_id:
            extra[RUN_ID] = run_id

        return VerificationResult.accept(
            Principal(client_id=subject, scopes=scopes, extra=extra, strategy=self.name)
        )


class CredentialVerifier:
    """Tries each strategy in order and stops at the first definitive result."""

    def __init__(self, strategies: Sequence[VerificationStrategy]):
        self.strategies = tuple(strategies)

    async def verify(self, token: str | None, headers: Mapping[str, str] | None = None) -> VerificationResult:
        if not token:
            return VerificationResult.reject("Bearer token is required")

        normalized = {key.lower(): value for key, value in (headers or {}).items()}
        for strategy in self.strategies:
            result = await strategy.verify(token, normalized)
            if result is None:
                continue
            if not result.authenticated:
                logger.info(f"Credential rejected by {strategy.name} strategy: {result.error}")
            return result

        return VerificationResult.reject("Unrecognized credential")


def build_verifier(settings: Settings, token_lookup: DelegatedSecretLookup | None = None) -> CredentialVerifier:
    """Assemble the standard strategy chain from settings."""
    return CredentialVerifier(
        [
            DevOverrideStrategy(
                dev_api_key=settings.dev_api_key,
                dev_user_id=settings.dev_user_id,
                token_lookup=token_lookup,
                fallback_token=settings.fallback_google_token,
            ),
            DelegatedSessionStrategy(
                marker=settings.session_token_marker,
                user_header=settings.session_user_header,
                google_token_header=settings.session_google_token_header,
            ),
            SignedTokenStrategy(secret=settings.jwt_secret, algorithm=settings.jwt_algorithm),
        ]
    )


def parse_bearer(authorization: str | None) -> str | None:
    """Extract the credential from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    parts = authorization.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None
