"""Service configuration loaded from the environment."""

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class Settings:
    """Runtime settings for the agent service."""

    # Signed access tokens
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    token_ttl_seconds: int = 3600

    # Development override credential
    dev_api_key: str | None = None
    dev_user_id: str = "dev-user"
    fallback_google_token: str | None = None

    # Front-end session bridging
    session_token_marker: str | None = None
    session_user_header: str = "user-id"
    session_google_token_header: str = "x-google-access-token"

    # Tool loop
    max_tool_iterations: int = 4
    flush_interval_seconds: float = 1.0
    history_limit: int = 10

    # External collaborators
    telegram_bot_token: str | None = None
    google_client_id: str | None = None
    google_client_secret: str | None = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        return cls(
            jwt_secret=os.getenv("JWT_SECRET", ""),
            token_ttl_seconds=_env_int("MCP_TOKEN_TTL_SECONDS", 3600),
            dev_api_key=os.getenv("MCP_DEVELOPMENT_API_KEY") or None,
            dev_user_id=os.getenv("MCP_DEVELOPMENT_USER_ID", "dev-user"),
            fallback_google_token=os.getenv("PERSONAL_GOOGLE_ACCESS_TOKEN_FOR_TESTING") or None,
            session_token_marker=os.getenv("MCP_SESSION_TOKEN_MARKER") or None,
            max_tool_iterations=_env_int("MAX_TOOL_ITERATIONS", 4),
            flush_interval_seconds=_env_float("STREAM_FLUSH_INTERVAL", 1.0),
            history_limit=_env_int("CHAT_HISTORY_LIMIT", 10),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            google_client_id=os.getenv("GOOGLE_CLIENT_ID") or None,
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
