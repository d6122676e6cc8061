"""DappForge -- FastAPI transport.

``POST /mcp`` carries JSON requests of the form ``{"method": ..., "params":
{...}}``. A request without the ``mcp-session-id`` header must be an
``initialize`` call and creates a session; every other request is routed to
the session named by the header. ``DELETE /mcp`` tears the session down
before responding.

Usage::

    python -m dappforge.server --port 3001
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .config import Config
from .errors import DappForgeError, ValidationError, format_error_response
from .pipeline import Services
from .session import SessionRegistry
from .session.registry import NO_SESSION_MESSAGE
from .tools import SessionTools
from .utils import console, print_warning

SESSION_HEADER = "mcp-session-id"
INITIALIZE = "initialize"


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or str(uuid.uuid4())


async def _handle_domain_error(request: Request, exc: DappForgeError) -> JSONResponse:
    """Map a :class:`DappForgeError` to its status code and a structured body."""
    request_id = _request_id(request)
    if exc.status_code >= 500:
        print_warning(f"{request.method} {request.url.path} failed [{request_id}]: {exc}")
    detail: Any = str(exc)
    diagnostics = getattr(exc, "diagnostics", None)
    if diagnostics is not None:
        detail = {"message": str(exc), "diagnostics": diagnostics}
    return JSONResponse(
        status_code=exc.status_code,
        content=format_error_response(
            error=type(exc).__name__,
            detail=detail,
            request_id=request_id,
        ),
    )


def create_app(
    config: Config | None = None,
    registry: SessionRegistry | None = None,
    services: Services | None = None,
    tools: SessionTools | None = None,
) -> FastAPI:
    """Build the application. Collaborators default to the real adapters."""
    config = config or Config.from_env()
    registry = registry or SessionRegistry(config.chain)
    if tools is None:
        tools = SessionTools(services or Services.from_config(config), config)

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        config.ensure_directories()
        console.print(f"[cyan]DappForge {__version__} ready[/cyan]")
        yield
        console.print("[yellow]Shutting down; closing all sessions[/yellow]")
        await registry.close_all()

    app = FastAPI(title="DappForge", version=__version__, lifespan=lifespan)
    app.state.registry = registry
    app.state.tools = tools
    app.add_exception_handler(DappForgeError, _handle_domain_error)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "sessions": registry.count}

    @app.post("/mcp")
    async def mcp_post(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError as exc:
            raise ValidationError("Request body must be JSON") from exc
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")

        method: Optional[str] = body.get("method")
        session_id = request.headers.get(SESSION_HEADER)
        ctx = registry.resolve(session_id, body if method == INITIALIZE else None)

        if method == INITIALIZE:
            return JSONResponse(
                {
                    "session_id": ctx.session_id,
                    "server": {"name": "dappforge", "version": __version__},
                    "tools": tools.names,
                },
                headers={SESSION_HEADER: ctx.session_id},
            )
        if not method:
            raise ValidationError("Missing method")

        result = await tools.dispatch(ctx, method, body.get("params"))
        return JSONResponse({"result": result}, headers={SESSION_HEADER: ctx.session_id})

    @app.delete("/mcp")
    async def mcp_delete(request: Request) -> dict[str, Any]:
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id or not await registry.close(session_id):
            raise ValidationError(NO_SESSION_MESSAGE)
        return {"session_id": session_id, "closed": True}

    return app


def main() -> None:
    """CLI entry point for ``python -m dappforge.server``."""
    import argparse

    import uvicorn

    config = Config.from_env()
    parser = argparse.ArgumentParser(description="DappForge build server")
    parser.add_argument("--host", default=config.server.host, help="Bind address")
    parser.add_argument("--port", type=int, default=config.server.port, help="Listen port")
    args = parser.parse_args()

    uvicorn.run(create_app(config), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
