"""Capability scopes and the per-tool scope requirements."""

from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from micromanager.auth.verifier import Principal

USER_CONTEXT_READ = "read:user-context"
USER_CONTEXT_WRITE = "write:user-context"
CALENDAR_READ = "calendar:read"
CALENDAR_WRITE = "calendar:write"

ALL_SCOPES: frozenset[str] = frozenset({USER_CONTEXT_READ, USER_CONTEXT_WRITE, CALENDAR_READ, CALENDAR_WRITE})

BASE_SCOPES: frozenset[str] = frozenset({USER_CONTEXT_READ, USER_CONTEXT_WRITE})
CALENDAR_SCOPES: frozenset[str] = frozenset({CALENDAR_READ, CALENDAR_WRITE})

SCOPE_SETS: Mapping[str, frozenset[str]] = MappingProxyType(
    {
        "FULL": ALL_SCOPES,
        "CONTEXT_READ_ONLY": frozenset({USER_CONTEXT_READ}),
        "CONTEXT_FULL": BASE_SCOPES,
        "CALENDAR_READ_ONLY": frozenset({USER_CONTEXT_READ, CALENDAR_READ}),
        "CALENDAR_FULL": ALL_SCOPES,
    }
)


def derive_scopes(has_delegated_secret: bool) -> frozenset[str]:
    """Scopes for a verified subject whose credential lists none explicitly."""
    if has_delegated_secret:
        return BASE_SCOPES | CALENDAR_SCOPES
    return BASE_SCOPES


def is_authorized(required: Iterable[str], granted: Iterable[str]) -> bool:
    """Any-of check: true when nothing is required or at least one required scope is granted."""
    required_set = frozenset(required)
    if not required_set:
        return True
    return not required_set.isdisjoint(granted)


def denial_message(required: Iterable[str]) -> str:
    """Tool-specific denial text naming the missing scope(s)."""
    names = " or ".join(f"'{scope}'" for scope in sorted(required))
    return f"Access denied: Missing required scope {names}"


class ScopeAuthority:
    """Read-only map of tool name to the scopes that unlock it."""

    def __init__(self, requirements: Mapping[str, Iterable[str]]):
        self._requirements: Mapping[str, frozenset[str]] = MappingProxyType(
            {name: frozenset(scopes) for name, scopes in requirements.items()}
        )

    def required_scopes(self, tool_name: str) -> frozenset[str]:
        """Scopes required for ``tool_name``; unknown tools require nothing here.

        Unknown tools are rejected by the registry, not by the authority.
        """
        return self._requirements.get(tool_name, frozenset())

    def is_authorized(self, tool_name: str, principal: "Principal") -> bool:
        return is_authorized(self.required_scopes(tool_name), principal.scopes)

    def denial_for(self, tool_name: str) -> str:
        return denial_message(self.required_scopes(tool_name))

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._requirements

    def as_dict(self) -> dict[str, list[str]]:
        return {name: sorted(scopes) for name, scopes in self._requirements.items()}
