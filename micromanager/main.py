"""Main FastAPI application."""

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from micromanager import __version__
from micromanager.api.dependencies import Runtime, build_runtime
from micromanager.api.endpoints import router
from micromanager.config import Settings
from micromanager.utils.logging import LogConfig, setup_logging


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Create the application.

    Args:
        runtime: Pre-built runtime; when omitted one is built from the environment at startup

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            settings = Settings.from_env()
            setup_logging(LogConfig(level=settings.log_level))
            app.state.runtime = build_runtime(settings, http_client=httpx.AsyncClient(timeout=10.0))
        yield
        await app.state.runtime.aclose()

    app = FastAPI(
        title="Micromanager Agent",
        description=(
            "Personal assistant agent runtime: streamed tool-calling conversations "
            "with scoped, audited tool access."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Conversation", "description": "Send messages to the assistant and read the transcript."},
            {"name": "Tools", "description": "Scoped tool invocation and per-run audit logs."},
            {"name": "Links", "description": "Link Google and Telegram accounts to the authenticated user."},
            {"name": "Auth", "description": "Signed bearer token issuance for development."},
            {"name": "Health", "description": "Service health monitoring and status checks."},
        ],
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("micromanager.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
