"""API endpoints for the micromanager agent service."""

import hmac
import time
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse

from micromanager import __version__
from micromanager.api.dependencies import Runtime, get_principal, get_runtime, verify_request
from micromanager.auth.scopes import ALL_SCOPES
from micromanager.auth.tokens import issue_access_token
from micromanager.auth.verifier import Principal, VerificationResult
from micromanager.models.audit import ToolCallLog
from micromanager.models.conversation import (
    ConversationHistoryResponse,
    ConversationRequest,
    ConversationResetResponse,
    ConversationResponse,
    GoogleLinkRequest,
    HealthResponse,
    LinkResponse,
    TelegramLinkRequest,
    TokenRequest,
    TokenResponse,
    ToolCallBody,
    ToolCallResponse,
    ToolDescription,
)
from micromanager.services.google_tokens import GoogleTokens
from micromanager.services.notifications import TelegramNotifier
from micromanager.utils.ids import new_id
from micromanager.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.post("/conversation", response_model=ConversationResponse, tags=["Conversation"])
async def handle_conversation(
    request: ConversationRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
) -> ConversationResponse:
    """Run the tool-call loop for one user message.

    The outcome is reported in the body; iteration exhaustion and provider
    protocol violations are named outcomes, not HTTP errors.
    """
    logger.info(f"Processing message for user {principal.client_id}: {request.message[:50]}...")
    result = await runtime.controller.run(principal, request.message)
    return ConversationResponse(
        message_id=result.message_id,
        content=result.content,
        run_id=result.run_id,
        outcome=result.outcome,
        passes=result.passes,
    )


@router.get("/conversation", response_model=ConversationHistoryResponse, tags=["Conversation"])
async def get_conversation(
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
) -> ConversationHistoryResponse:
    """Recent transcript of the authenticated user, oldest first."""
    messages = await runtime.transcript.list_recent(principal.client_id, limit)
    return ConversationHistoryResponse(messages=messages)


@router.delete("/conversation", response_model=ConversationResetResponse, tags=["Conversation"])
async def reset_conversation(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
) -> ConversationResetResponse:
    deleted = await runtime.transcript.delete_conversation(principal.client_id)
    logger.info(f"Deleted {deleted} messages for user {principal.client_id}")
    return ConversationResetResponse(deleted=deleted)


@router.get("/tools", response_model=list[ToolDescription], tags=["Tools"])
async def list_tools(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
) -> list[ToolDescription]:
    """All registered tools with the scopes they require."""
    return [
        ToolDescription(
            name=tool.name,
            description=tool.full_description,
            required_scopes=sorted(tool.required_scopes),
            input_schema=tool.get_json_schema(),
        )
        for tool in runtime.registry.tools()
    ]


@router.post("/tools/call", response_model=ToolCallResponse, tags=["Tools"])
async def call_tool(
    body: ToolCallBody,
    verification: VerificationResult = Depends(verify_request),
    runtime: Runtime = Depends(get_runtime),
):
    """Invoke one tool on behalf of the bearer.

    Rejected credentials and missing scopes come back as structured tool results
    rather than transport errors; only the status code differs for the former.
    """
    if verification.principal is None:
        response = ToolCallResponse(
            content=f"Unauthorized: {verification.error}", is_error=True, kind="unauthorized", call_id=body.call_id
        )
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content=response.model_dump(),
            headers={"WWW-Authenticate": "Bearer"},
        )

    principal = verification.principal
    run_id = principal.run_id or new_id("run")
    call_id = body.call_id or new_id("call")
    result = await runtime.dispatcher.invoke(body.name, body.arguments, principal, run_id, call_id)
    return ToolCallResponse(
        content=result.content, is_error=result.is_error, kind=result.kind, run_id=run_id, call_id=call_id
    )


@router.get("/runs/{run_id}/tool-logs", response_model=list[ToolCallLog], tags=["Tools"])
async def get_tool_logs(
    run_id: str,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
) -> list[ToolCallLog]:
    """Audit entries of a run in creation order.

    The development identity sees every entry; other principals only their own.
    """
    entries = await runtime.audit_log.entries(run_id)
    if principal.strategy != "dev":
        entries = [entry for entry in entries if entry.user_id == principal.client_id]
    return entries


@router.post("/links/google", response_model=LinkResponse, tags=["Links"])
async def link_google(
    request: GoogleLinkRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
) -> LinkResponse:
    """Store delegated Google tokens for the bearer; they are refreshed on lookup."""
    runtime.google_tokens.link(
        principal.client_id,
        GoogleTokens(
            access_token=request.access_token,
            refresh_token=request.refresh_token,
            expires_at=int(time.time()) + request.expires_in,
        ),
    )
    logger.info(f"Linked Google account for user {principal.client_id}")
    return LinkResponse(user_id=principal.client_id, provider="google", linked=True)


@router.delete("/links/google", response_model=LinkResponse, tags=["Links"])
async def unlink_google(
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
) -> LinkResponse:
    runtime.google_tokens.unlink(principal.client_id)
    logger.info(f"Unlinked Google account for user {principal.client_id}")
    return LinkResponse(user_id=principal.client_id, provider="google", linked=False)


@router.post("/links/telegram", response_model=LinkResponse, tags=["Links"])
async def link_telegram(
    request: TelegramLinkRequest,
    principal: Principal = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
) -> LinkResponse:
    """Route the bearer's notifications to a Telegram chat."""
    if not isinstance(runtime.notifier, TelegramNotifier):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Telegram notifications are not configured"
        )
    runtime.notifier.link_chat(principal.client_id, request.chat_id)
    logger.info(f"Linked Telegram chat for user {principal.client_id}")
    return LinkResponse(user_id=principal.client_id, provider="telegram", linked=True)


@router.post("/auth/token", response_model=TokenResponse, tags=["Auth"])
async def issue_token(
    request: TokenRequest,
    x_api_key: str | None = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> TokenResponse:
    """Issue a signed bearer token; guarded by the development API key."""
    settings = runtime.settings
    if not settings.dev_api_key:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token issuance is disabled")
    if not x_api_key or not hmac.compare_digest(x_api_key.encode(), settings.dev_api_key.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    if request.scopes:
        unknown = sorted(set(request.scopes) - ALL_SCOPES)
        if unknown:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown scopes: {unknown}")

    try:
        token = issue_access_token(
            settings,
            request.user_id,
            google_access_token=request.google_access_token,
            scopes=request.scopes,
            run_id=request.run_id,
        )
    except ValueError as e:
        logger.error(f"Token issuance failed: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e

    logger.info(f"Issued token for user {request.user_id}")
    return TokenResponse(token=token, expires_in=settings.token_ttl_seconds)


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
    )
