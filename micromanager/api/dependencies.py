"""Runtime wiring and FastAPI dependencies."""

from dataclasses import dataclass

import httpx
from fastapi import Depends, Header, HTTPException, Request, status

from micromanager.auth.scopes import ScopeAuthority
from micromanager.auth.verifier import CredentialVerifier, Principal, VerificationResult, build_verifier, parse_bearer
from micromanager.clients.anthropic import AnthropicProvider, GenerationProvider
from micromanager.clients.google import GoogleApiClient
from micromanager.config import Settings
from micromanager.graphs.conversation import ToolLoopController
from micromanager.services.audit import AuditLog, AuditStore, InMemoryAuditStore
from micromanager.services.google_tokens import GoogleTokenStore
from micromanager.services.notifications import LoggingNotifier, Notifier, TelegramNotifier
from micromanager.services.transcript import InMemoryTranscriptStore, TranscriptStore
from micromanager.services.user_context import ContextStore, InMemoryContextStore
from micromanager.tools import build_default_registry
from micromanager.tools.calendar_tools import GoogleClientFactory
from micromanager.tools.dispatcher import ToolDispatcher
from micromanager.tools.registry import ToolsRegistry
from micromanager.utils.logging import get_logger
from micromanager.utils.tasks import DetachedTasks

logger = get_logger(__name__)


@dataclass
class Runtime:
    """Everything a request needs, constructed once at startup."""

    settings: Settings
    verifier: CredentialVerifier
    transcript: TranscriptStore
    context_store: ContextStore
    audit_store: AuditStore
    audit_log: AuditLog
    registry: ToolsRegistry
    authority: ScopeAuthority
    dispatcher: ToolDispatcher
    controller: ToolLoopController
    notifier: Notifier
    google_tokens: GoogleTokenStore
    tasks: DetachedTasks
    http_client: httpx.AsyncClient | None = None

    async def aclose(self) -> None:
        await self.tasks.drain()
        if self.http_client is not None:
            await self.http_client.aclose()


def build_runtime(
    settings: Settings,
    provider: GenerationProvider | None = None,
    transcript: TranscriptStore | None = None,
    context_store: ContextStore | None = None,
    audit_store: AuditStore | None = None,
    notifier: Notifier | None = None,
    google_client_factory: GoogleClientFactory = GoogleApiClient,
    http_client: httpx.AsyncClient | None = None,
) -> Runtime:
    """Assemble stores, registry, authorization and the loop controller.

    Args:
        settings: Service settings
        provider: Generation provider, defaults to the Anthropic provider
        transcript: Transcript store, defaults to in-memory
        context_store: Context store, defaults to in-memory
        audit_store: Audit store, defaults to in-memory
        notifier: Notification channel, Telegram when a bot token is configured
        google_client_factory: Builds Google API clients from an access token
        http_client: Shared HTTP client for outbound calls

    Returns:
        Wired runtime
    """
    transcript = transcript or InMemoryTranscriptStore()
    context_store = context_store or InMemoryContextStore()
    audit_store = audit_store or InMemoryAuditStore()
    tasks = DetachedTasks()

    if notifier is None:
        if settings.telegram_bot_token:
            notifier = TelegramNotifier(settings.telegram_bot_token, http_client=http_client)
        else:
            notifier = LoggingNotifier()

    google_tokens = GoogleTokenStore(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        http_client=http_client,
    )

    registry = build_default_registry(context_store, transcript, google_client_factory)
    authority = registry.scope_authority()
    audit_log = AuditLog(audit_store)
    dispatcher = ToolDispatcher(registry, authority, audit_log)

    controller = ToolLoopController(
        provider=provider or AnthropicProvider(),
        transcript=transcript,
        context_store=context_store,
        registry=registry,
        dispatcher=dispatcher,
        notifier=notifier,
        tasks=tasks,
        max_passes=settings.max_tool_iterations,
        history_limit=settings.history_limit,
        flush_interval=settings.flush_interval_seconds,
    )

    logger.info(f"Runtime ready with {len(registry.get_tool_names())} tools")
    return Runtime(
        settings=settings,
        verifier=build_verifier(settings, token_lookup=google_tokens),
        transcript=transcript,
        context_store=context_store,
        audit_store=audit_store,
        audit_log=audit_log,
        registry=registry,
        authority=authority,
        dispatcher=dispatcher,
        controller=controller,
        notifier=notifier,
        google_tokens=google_tokens,
        tasks=tasks,
        http_client=http_client,
    )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def verify_request(
    request: Request,
    authorization: str | None = Header(None, description="Bearer credential"),
    runtime: Runtime = Depends(get_runtime),
) -> VerificationResult:
    """Run the credential chain; never raises for a rejected credential."""
    return await runtime.verifier.verify(parse_bearer(authorization), dict(request.headers))


async def get_principal(verification: VerificationResult = Depends(verify_request)) -> Principal:
    """Authenticated principal, or 401 with a Bearer challenge."""
    if verification.principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=verification.error or "Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return verification.principal
