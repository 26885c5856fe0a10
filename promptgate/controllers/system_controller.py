import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict

from fastapi import APIRouter, Depends

from promptgate.services.execution_adapter import ExecutionBackend
from promptgate.services.registry_loader import RegistryLoader
from promptgate.services.session_manager import Identity, SessionManager

BACKEND_CAPABILITIES = ["streaming", "mcp-servers", "git-integration"]


def _envelope(data: Dict[str, Any]) -> Dict[str, Any]:
    return {"success": True, "data": data, "timestamp": datetime.now(timezone.utc).isoformat()}


def get_router(
    registry_loader: RegistryLoader,
    session_manager: SessionManager,
    backend: ExecutionBackend,
    require_identity: Callable,
    email_login_enabled: bool,
) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["system"])
    started = time.monotonic()

    @router.get("/user")
    async def current_user(identity: Identity = Depends(require_identity)) -> Dict[str, Any]:
        return _envelope(
            {
                "email": identity.email,
                "sessionId": identity.session_id,
                "loginMethod": identity.login_method,
                "isAuthenticated": True,
            }
        )

    @router.get("/system/status")
    async def system_status() -> Dict[str, Any]:
        """Non-sensitive configuration summary; no login needed."""
        return _envelope(
            {
                "executionBackend": {
                    "type": backend.name,
                    "available": True,
                    "capabilities": BACKEND_CAPABILITIES,
                },
                "authentication": {
                    "method": "session",
                    "emailLoginEnabled": email_login_enabled,
                    "tokenAuthEnabled": session_manager.token_auth_enabled,
                },
                "mcpServersConfigured": len(registry_loader.list_mcp_servers()),
                "promptsLoaded": len(registry_loader.list_prompts()),
                "uptime": int(time.monotonic() - started),
            }
        )

    return router
