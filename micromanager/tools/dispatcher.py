"""Authorized, audited tool invocation."""

import json
from typing import Any

from micromanager.auth.scopes import ScopeAuthority, denial_message, is_authorized
from micromanager.auth.verifier import Principal
from micromanager.services.audit import AuditLog
from micromanager.tools.base import ToolContext, ToolResult
from micromanager.tools.registry import ToolsRegistry
from micromanager.utils.logging import get_logger

logger = get_logger(__name__)


class ToolDispatcher:
    """Single entry point for running a tool on behalf of a principal.

    Every call is scope-checked before execution and recorded in the audit log,
    including denied calls. The result is always a ``ToolResult``.
    """

    def __init__(self, registry: ToolsRegistry, authority: ScopeAuthority, audit_log: AuditLog):
        self.registry = registry
        self.authority = authority
        self.audit_log = audit_log

    async def invoke(
        self,
        name: str,
        arguments: dict[str, Any] | str,
        principal: Principal,
        run_id: str,
        call_id: str,
    ) -> ToolResult:
        audit_arguments = _audit_arguments(arguments)
        await self.audit_log.open(run_id, call_id, name, audit_arguments, user_id=principal.client_id)

        required = self.authority.required_scopes(name)
        if not is_authorized(required, principal.scopes):
            message = denial_message(required)
            logger.info(f"Denied {name} for {principal.client_id}: {message}")
            await self.audit_log.close(run_id, call_id, "error", message)
            return ToolResult.error(message, "forbidden")

        try:
            result = await self.registry.execute(name, arguments, ToolContext(principal=principal, run_id=run_id))
        except Exception as e:
            logger.error(f"Tool {name} escaped error handling: {e}", exc_info=True)
            result = ToolResult.error(f"Tool failed: {e}", "failed")

        if result.is_error:
            await self.audit_log.close(run_id, call_id, "error", result.content)
        else:
            await self.audit_log.close(run_id, call_id, "success")
        return result


def _audit_arguments(arguments: dict[str, Any] | str) -> dict[str, Any] | str:
    if isinstance(arguments, dict):
        return arguments
    try:
        decoded = json.loads(arguments) if arguments.strip() else {}
    except json.JSONDecodeError:
        return arguments
    return decoded if isinstance(decoded, dict) else arguments
