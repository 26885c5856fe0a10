from typing import Callable

from fastapi import APIRouter, Depends

from promptgate.errors import AuthorizationConflict, NotFoundError
from promptgate.schemas.api import (
    AuthorizeResponse,
    ConnectionResponse,
    ConnectionsResponse,
    CredentialSetupRequest,
    TokenCallbackRequest,
)
from promptgate.services.connection_registry import CREDENTIAL, MCP_SERVER, Connection, ConnectionRegistry
from promptgate.services.session_manager import Identity


def get_router(registry: ConnectionRegistry, require_identity: Callable) -> APIRouter:
    router = APIRouter(prefix="/api/connections", tags=["connections"])

    def ensure_kind(name: str, kind: str) -> None:
        if registry.kind_of(name) != kind:
            label = "MCP server" if kind == MCP_SERVER else "Credential"
            raise NotFoundError(label, name)

    @router.get("", response_model=ConnectionsResponse, response_model_by_alias=True)
    async def list_connections(identity: Identity = Depends(require_identity)) -> ConnectionsResponse:
        return ConnectionsResponse(connections=await registry.list())

    @router.get("/mcp/{name}/status", response_model=Connection, response_model_by_alias=True)
    async def mcp_status(name: str, identity: Identity = Depends(require_identity)) -> Connection:
        ensure_kind(name, MCP_SERVER)
        return await registry.get(name)

    @router.post("/mcp/{name}/authorize", response_model=AuthorizeResponse, response_model_by_alias=True)
    async def authorize_mcp(name: str, identity: Identity = Depends(require_identity)) -> AuthorizeResponse:
        """
        Start the external OAuth flow; the client should redirect to authUrl.
        """
        ensure_kind(name, MCP_SERVER)
        auth_url = await registry.initiate_authorization(name)
        return AuthorizeResponse(auth_url=auth_url)

    @router.post("/mcp/{name}/token", response_model=ConnectionResponse, response_model_by_alias=True)
    async def store_mcp_token(
        name: str,
        payload: TokenCallbackRequest,
        identity: Identity = Depends(require_identity),
    ) -> ConnectionResponse:
        ensure_kind(name, MCP_SERVER)
        if payload.state is not None and registry.consume_state(payload.state) != name:
            raise AuthorizationConflict(f"Unknown or mismatched authorization state for '{name}'")
        connection = await registry.mark_authorized(name, payload.tokens())
        return ConnectionResponse(connection=connection)

    @router.post("/credential/{name}/setup", response_model=ConnectionResponse, response_model_by_alias=True)
    async def setup_credential(
        name: str,
        payload: CredentialSetupRequest,
        identity: Identity = Depends(require_identity),
    ) -> ConnectionResponse:
        ensure_kind(name, CREDENTIAL)
        connection = await registry.mark_authorized(name, payload.secret())
        return ConnectionResponse(connection=connection)

    @router.delete("/{name}", response_model=ConnectionResponse, response_model_by_alias=True)
    async def revoke_connection(name: str, identity: Identity = Depends(require_identity)) -> ConnectionResponse:
        connection = await registry.revoke(name)
        return ConnectionResponse(connection=connection)

    return router
