import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.engine import Engine

from promptgate.config import Settings, settings as default_settings
from promptgate.db.database import init_db
from promptgate.errors import (
    AuthenticationRequired,
    AuthorizationConflict,
    AuthorizationRequired,
    ExecutionStateError,
    NotFoundError,
    ParameterValidationError,
)
from promptgate.services.auth_manager import AuthManager
from promptgate.services.connection_registry import ConnectionRegistry
from promptgate.services.execution_adapter import ExecutionAdapter, ExecutionBackend, create_backend
from promptgate.services.ledger import ExecutionLedger
from promptgate.services.prompt_runner import PromptRunner
from promptgate.services.registry_loader import RegistryLoader
from promptgate.services.session_manager import SessionManager
from promptgate.controllers import (
    auth_controller,
    connections_controller,
    executions_controller,
    prompts_controller,
    system_controller,
)
from promptgate.controllers.auth_controller import LinkSender
from promptgate.controllers.deps import identity_resolver, is_api_request

logging.basicConfig(level=default_settings.log_level.upper())
logger = logging.getLogger(__name__)

LOGIN_URL = "/login"


def create_app(
    settings: Optional[Settings] = None,
    backend: Optional[ExecutionBackend] = None,
    bind: Optional[Engine] = None,
    link_sender: Optional[LinkSender] = None,
) -> FastAPI:
    """
    Wire the service together. ``link_sender`` delivers email login links;
    without one, email login is turned off.
    """
    settings = settings or default_settings

    # Core components (created once per process)
    registry_loader = RegistryLoader(settings.registry_path)
    auth_manager = AuthManager()
    registry = ConnectionRegistry(
        registry_loader,
        auth_manager,
        bind=bind,
        redirect_uri=settings.oauth_redirect_uri,
        retry_backoff_base=settings.retry_backoff_base,
        retry_attempts=settings.retry_attempts,
        request_timeout=settings.backend_timeout,
    )
    session_manager = SessionManager(
        session_ttl=timedelta(hours=settings.session_ttl_hours),
        access_token=settings.access_token,
        authorized_emails=settings.authorized_emails,
        magic_link_ttl=timedelta(minutes=settings.magic_link_ttl_minutes),
    )
    pending_ttl = timedelta(hours=settings.pending_ttl_hours) if settings.pending_ttl_hours > 0 else None
    ledger = ExecutionLedger(bind=bind, pending_ttl=pending_ttl)
    backend = backend or create_backend(settings)
    adapter = ExecutionAdapter(backend, registry, timeout=settings.execution_timeout or None)
    runner = PromptRunner(registry_loader, registry, adapter, ledger)
    require_identity = identity_resolver(session_manager, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # --- startup ---
        logger.info("Initializing database...")
        init_db(bind)
        logger.info("Loading persisted connection secrets...")
        registry.load_persisted()
        logger.info("Startup complete (%s backend).", backend.name)
        try:
            yield
        finally:
            # --- shutdown ---
            logger.info("Shutting down execution backend...")
            await backend.dispose()
            await registry.aclose()

    app = FastAPI(
        title="Prompt Gate",
        description="Runs registered prompts once the connections they need are authorized, streaming output as SSE.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.ledger = ledger
    app.state.session_manager = session_manager
    app.state.runner = runner

    register_exception_handlers(app)

    # Routes
    app.include_router(auth_controller.get_router(session_manager, settings, require_identity, link_sender))
    app.include_router(connections_controller.get_router(registry, require_identity))
    app.include_router(prompts_controller.get_router(runner, ledger, require_identity))
    app.include_router(executions_controller.get_router(runner, ledger, require_identity))
    app.include_router(
        system_controller.get_router(
            registry_loader, session_manager, backend, require_identity, email_login_enabled=link_sender is not None
        )
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "backend": backend.name,
            "prompts": len(registry_loader.list_prompts()),
            "sessions": session_manager.stats(),
        }

    return app


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "Not Found", "message": str(exc)})

    @app.exception_handler(AuthorizationRequired)
    async def authorization_required(request: Request, exc: AuthorizationRequired) -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content={
                "error": "Authorization required",
                "message": str(exc),
                "requiredConnections": [{"name": n, "authUrl": exc.auth_urls.get(n)} for n in exc.missing],
                "executionId": exc.execution_id,
            },
        )

    @app.exception_handler(AuthenticationRequired)
    async def authentication_required(request: Request, exc: AuthenticationRequired):
        if not is_api_request(request):
            return RedirectResponse(url=LOGIN_URL, status_code=302)
        return JSONResponse(
            status_code=401,
            content={"error": "Unauthorized", "message": str(exc) or "Login required", "loginUrl": LOGIN_URL},
        )

    @app.exception_handler(ParameterValidationError)
    async def invalid_parameters(request: Request, exc: ParameterValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid parameters", "message": str(exc), "errors": exc.errors},
        )

    @app.exception_handler(AuthorizationConflict)
    async def authorization_conflict(request: Request, exc: AuthorizationConflict) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "Bad Request", "message": str(exc)})

    @app.exception_handler(ExecutionStateError)
    async def execution_state(request: Request, exc: ExecutionStateError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"error": "Conflict", "message": str(exc)})


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("promptgate.main:app", host=default_settings.host, port=default_settings.port)
