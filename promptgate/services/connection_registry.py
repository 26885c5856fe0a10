from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from promptgate.db.database import get_db_session
from promptgate.db.models import ConnectionSecret, utcnow
from promptgate.errors import AuthorizationConflict, NotFoundError
from promptgate.utils.retries import async_retry
from .auth_manager import AuthManager
from .registry_loader import CredentialConfig, McpServerConfig, RegistryLoader

logger = logging.getLogger(__name__)

MCP_SERVER = "mcp-server"
CREDENTIAL = "credential"

Validator = Callable[[str], Awaitable[bool]]


class Connection(BaseModel):
    """
    Read-only snapshot of one connection at the time it was taken.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    name: str
    kind: str
    description: str
    is_available: bool
    auth_url: str
    last_verified_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SetupInstructions(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    setup_url: str
    method: str


@dataclass
class ResolvedCredentials:
    """Credential material for one run, ready to hand to a backend."""

    mcp_servers: List[McpServerConfig] = field(default_factory=list)
    # server name -> headers for requests to that server
    headers: Dict[str, Dict[str, str]] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)

    def token_for(self, server_name: str) -> Optional[str]:
        auth = self.headers.get(server_name, {}).get("Authorization", "")
        if auth.startswith("Bearer "):
            return auth[len("Bearer "):]
        return None


def _file_has_content(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


def _write_private(path: Path, content: str) -> bool:
    """Write ``content`` with 0600 permissions; returns False when unchanged."""
    if path.is_file() and path.read_text() == content:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    path.chmod(0o600)
    return True


def _iso(ts: Optional[float]) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class ConnectionRegistry:
    """
    Process-wide view of every declared connection and its secrets.

    State is only changed through this class. Reads and writes for the same
    connection name are serialized by a per-name lock; different names never
    wait on each other.
    """

    def __init__(
        self,
        registry_loader: RegistryLoader,
        auth_manager: AuthManager,
        *,
        bind: Optional[Engine] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        redirect_uri: str = "http://localhost:3000/oauth/callback",
        retry_backoff_base: float = 0.5,
        retry_attempts: int = 1,
        request_timeout: float = 10.0,
    ) -> None:
        self.registry_loader = registry_loader
        self.auth_manager = auth_manager
        self._bind = bind
        self._http = http_client
        self._owns_http = http_client is None
        self._redirect_uri = redirect_uri
        self._retry_delay = retry_backoff_base
        self._retry_attempts = retry_attempts
        self._request_timeout = request_timeout

        # name -> token dict (access_token, refresh_token, expires_at, ...)
        self._tokens: Dict[str, Dict[str, Any]] = {}
        # name -> credential secret (token or username/password)
        self._secrets: Dict[str, Dict[str, Any]] = {}
        self._last_verified: Dict[str, datetime] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # OAuth state -> connection name
        self._pending_states: Dict[str, str] = {}
        self._validators: Dict[str, Validator] = {}

    # ---------- Helpers ----------

    def _lock_for(self, name: str) -> asyncio.Lock:
        return self._locks.setdefault(name, asyncio.Lock())

    def kind_of(self, name: str) -> str:
        if name in self.registry_loader.list_mcp_servers():
            return MCP_SERVER
        if name in self.registry_loader.list_credentials():
            return CREDENTIAL
        raise NotFoundError("Connection", name)

    def auth_url(self, name: str) -> Optional[str]:
        try:
            kind = self.kind_of(name)
        except NotFoundError:
            return None
        if kind == MCP_SERVER:
            return f"/api/connections/mcp/{name}/authorize"
        return f"/api/connections/credential/{name}/setup"

    def names(self) -> List[str]:
        return list(self.registry_loader.list_mcp_servers()) + list(
            self.registry_loader.list_credentials()
        )

    def register_validator(self, kind: str, validator: Validator) -> None:
        """
        Attach an extra availability predicate for every connection of ``kind``.
        It only runs once the built-in check has passed.
        """
        if kind not in (MCP_SERVER, CREDENTIAL):
            raise ValueError(f"Unknown connection kind '{kind}'")
        self._validators[kind] = validator

    def _http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._request_timeout)
        return self._http

    # ---------- Persistence helpers ----------

    def _persist_secret(self, name: str, kind: str, secret: Dict[str, Any]) -> None:
        with get_db_session(self._bind) as db:
            row = db.get(ConnectionSecret, name)
            if row is None:
                row = ConnectionSecret(name=name, kind=kind, secret_json="{}")
            row.secret_json = json.dumps(secret)
            row.updated_at = utcnow()
            db.add(row)
            db.commit()

    def _load_secret(self, name: str) -> Optional[Dict[str, Any]]:
        with get_db_session(self._bind) as db:
            row = db.get(ConnectionSecret, name)
            return json.loads(row.secret_json) if row else None

    def _delete_secret(self, name: str) -> None:
        with get_db_session(self._bind) as db:
            row = db.get(ConnectionSecret, name)
            if row is not None:
                db.delete(row)
                db.commit()

    def load_persisted(self) -> None:
        """
        On startup, restore stored tokens and credentials.

        Best-effort: rows for connections no longer declared are skipped.
        """
        with get_db_session(self._bind) as db:
            rows = db.exec(select(ConnectionSecret)).all()

        restored = 0
        for row in rows:
            try:
                kind = self.kind_of(row.name)
                data = json.loads(row.secret_json)
            except (NotFoundError, ValueError):
                logger.warning("Ignoring stored secret for undeclared connection %s", row.name)
                continue
            if kind == MCP_SERVER:
                self._tokens[row.name] = data
            else:
                self._secrets[row.name] = data
            restored += 1
        logger.info("Restored secrets for %d connection(s)", restored)

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    # ---------- Availability ----------

    async def check_availability(self, name: str) -> bool:
        kind = self.kind_of(name)
        async with self._lock_for(name):
            return await self._check_locked(name, kind)

    async def _check_locked(self, name: str, kind: str) -> bool:
        # caller holds the lock for name
        if kind == MCP_SERVER:
            available = await self._check_mcp(self.registry_loader.get_mcp_server(name))
        else:
            available = await self._check_credential(self.registry_loader.get_credential(name))
        validator = self._validators.get(kind)
        if available and validator is not None:
            available = await validator(name)
        if available:
            self._last_verified[name] = utcnow()
        return available

    async def _check_mcp(self, server: McpServerConfig) -> bool:
        if server.authorization_token:
            return True
        tokens = self._tokens.get(server.name)
        if not tokens or not tokens.get("access_token"):
            return False
        expires_at = tokens.get("expires_at")
        if not expires_at or expires_at > time.time():
            return True
        if tokens.get("refresh_token") and server.token_url:
            return await self._refresh(server, tokens)
        logger.info("Token for %s expired and cannot be refreshed", server.name)
        return False

    async def _refresh(self, server: McpServerConfig, tokens: Dict[str, Any]) -> bool:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": tokens["refresh_token"],
        }
        if server.client_id:
            data["client_id"] = server.client_id
        if server.client_secret:
            data["client_secret"] = server.client_secret

        async def do_request() -> httpx.Response:
            return await self._http_client().post(server.token_url, data=data)

        try:
            resp = await async_retry(
                do_request,
                retries=self._retry_attempts,
                base_delay=self._retry_delay,
                exceptions=(httpx.RequestError,),
                label=f"token refresh for {server.name}",
            )
            resp.raise_for_status()
            fresh = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Token refresh failed for %s: %s", server.name, e)
            return False

        if not isinstance(fresh, dict) or not fresh.get("access_token"):
            logger.warning("Token refresh for %s returned no access_token", server.name)
            return False
        fresh.setdefault("refresh_token", tokens["refresh_token"])
        self._store_tokens(server.name, fresh)
        logger.info("Refreshed token for %s", server.name)
        return True

    async def _check_credential(self, cred: CredentialConfig) -> bool:
        if cred.storage == "file":
            path = cred.resolved_path()

            async def has_secret() -> bool:
                return await asyncio.to_thread(_file_has_content, path)

            errors = (OSError,)
        else:

            async def has_secret() -> bool:
                return await asyncio.to_thread(self._load_secret, cred.name) is not None

            errors = (OSError, OperationalError)

        try:
            # Credentials can change underneath us; one retry covers flaky reads
            return await async_retry(
                has_secret,
                retries=1,
                base_delay=self._retry_delay,
                exceptions=errors,
                label=f"availability check for {cred.name}",
            )
        except errors as e:
            logger.warning("Availability check for %s failed: %s", cred.name, e)
            return False

    # ---------- Snapshots ----------

    def _metadata(self, name: str, kind: str) -> Dict[str, Any]:
        if kind == MCP_SERVER:
            server = self.registry_loader.get_mcp_server(name)
            tokens = self._tokens.get(name) or {}
            return {
                "url": server.url,
                "transport": server.transport,
                "scopes": list(server.scopes),
                "tokenExpiry": _iso(tokens.get("expires_at")),
                "hasRefreshToken": bool(tokens.get("refresh_token")),
            }
        cred = self.registry_loader.get_credential(name)
        meta: Dict[str, Any] = {"method": cred.method, "storage": cred.storage}
        if cred.storage == "file":
            meta["path"] = str(cred.resolved_path())
        return meta

    def _description(self, name: str, kind: str) -> str:
        if kind == MCP_SERVER:
            desc = self.registry_loader.get_mcp_server(name).description
            return desc or f"{name} integration"
        desc = self.registry_loader.get_credential(name).description
        return desc or f"{name} connection"

    def _snapshot(self, name: str, kind: str, available: bool) -> Connection:
        return Connection(
            name=name,
            kind=kind,
            description=self._description(name, kind),
            is_available=available,
            auth_url=self.auth_url(name),
            last_verified_at=self._last_verified.get(name),
            metadata=self._metadata(name, kind),
        )

    async def get(self, name: str) -> Connection:
        kind = self.kind_of(name)
        async with self._lock_for(name):
            available = await self._check_locked(name, kind)
            return self._snapshot(name, kind, available)

    async def list(self) -> List[Connection]:
        return [await self.get(name) for name in self.names()]

    # ---------- Mutation ----------

    def _store_tokens(self, name: str, tokens: Dict[str, Any]) -> None:
        stored = dict(tokens)
        if stored.get("expires_in"):
            stored["expires_at"] = time.time() + float(stored.pop("expires_in"))
        self._tokens[name] = stored
        self._persist_secret(name, MCP_SERVER, stored)

    def _normalize_credential(self, cred: CredentialConfig, secret: Dict[str, Any]) -> Dict[str, Any]:
        if cred.method == "token":
            token = (secret.get("token") or "").strip()
            if not token:
                raise AuthorizationConflict(f"Token is required for {cred.name}")
            if cred.token_prefixes and not token.startswith(tuple(cred.token_prefixes)):
                raise AuthorizationConflict(f"Invalid token format for {cred.name}")
            normalized = {"token": token}
            if secret.get("username"):
                normalized["username"] = secret["username"]
            return normalized
        username, password = secret.get("username"), secret.get("password")
        if not username or not password:
            raise AuthorizationConflict(f"Username and password are required for {cred.name}")
        return {"username": username, "password": password}

    async def mark_authorized(self, name: str, secret: Dict[str, Any]) -> Connection:
        """
        Store a token or credential for ``name`` and make it available.

        Storing the same secret again changes nothing.
        """
        kind = self.kind_of(name)
        async with self._lock_for(name):
            if kind == MCP_SERVER:
                if not secret.get("access_token"):
                    raise AuthorizationConflict(f"Missing access_token for {name}")
                current = self._tokens.get(name) or {}
                same = current.get("access_token") == secret["access_token"] and current.get(
                    "refresh_token"
                ) == secret.get("refresh_token")
                if not same:
                    self._store_tokens(name, secret)
                    logger.info("Stored tokens for %s", name)
            else:
                cred = self.registry_loader.get_credential(name)
                normalized = self._normalize_credential(cred, secret)
                if cred.storage == "file":
                    values = {"username": cred.username, "password": "", **normalized}
                    content = cred.file_template.format(**values)
                    written = await asyncio.to_thread(_write_private, cred.resolved_path(), content)
                    if written:
                        logger.info("Credential file for %s written to %s", name, cred.resolved_path())
                if self._secrets.get(name) != normalized:
                    self._secrets[name] = normalized
                    self._persist_secret(name, CREDENTIAL, normalized)
                    logger.info("Stored credential for %s", name)
            self._last_verified[name] = utcnow()
            return self._snapshot(name, kind, True)

    async def revoke(self, name: str) -> Connection:
        kind = self.kind_of(name)
        async with self._lock_for(name):
            self._tokens.pop(name, None)
            self._secrets.pop(name, None)
            self._last_verified.pop(name, None)
            self._delete_secret(name)
            if kind == CREDENTIAL:
                path = self.registry_loader.get_credential(name).resolved_path()
                if path is not None:
                    await asyncio.to_thread(path.unlink, missing_ok=True)
            logger.info("Revoked %s", name)
        return await self.get(name)

    async def initiate_authorization(self, name: str) -> Union[str, SetupInstructions]:
        """
        Start authorizing ``name``.

        MCP servers get a redirect URL for the external OAuth provider;
        credentials get the endpoint for direct submission.
        """
        kind = self.kind_of(name)
        if kind == CREDENTIAL:
            cred = self.registry_loader.get_credential(name)
            return SetupInstructions(setup_url=self.auth_url(name), method=cred.method)

        server = self.registry_loader.get_mcp_server(name)
        if await self.check_availability(name):
            raise AuthorizationConflict(f"MCP server '{name}' is already authorized")
        if not server.authorization_url:
            raise AuthorizationConflict(f"MCP server '{name}' has no authorization_url configured")

        state = secrets.token_urlsafe(16)
        self._pending_states[state] = name
        params = {
            "response_type": "code",
            "redirect_uri": self._redirect_uri,
            "state": state,
        }
        if server.client_id:
            params["client_id"] = server.client_id
        if server.scopes:
            params["scope"] = " ".join(server.scopes)
        sep = "&" if "?" in server.authorization_url else "?"
        return f"{server.authorization_url}{sep}{urlencode(params)}"

    def consume_state(self, state: str) -> Optional[str]:
        """Connection name an OAuth ``state`` was issued for, at most once."""
        return self._pending_states.pop(state, None)

    # ---------- Execution binding ----------

    def resolve_credentials(self, names: Iterable[str]) -> ResolvedCredentials:
        """
        Collect headers and environment for the given connections.

        Raises ValueError when a required token is missing.
        """
        resolved = ResolvedCredentials()
        for name in names:
            kind = self.kind_of(name)
            if kind == MCP_SERVER:
                server = self.registry_loader.get_mcp_server(name)
                if server.authorization_token:
                    tokens = {"access_token": server.authorization_token}
                else:
                    tokens = self._tokens.get(name) or {}
                resolved.mcp_servers.append(server)
                resolved.headers[name] = self.auth_manager.build_headers(server, tokens)
                resolved.env.update(self.auth_manager.mcp_env(server, tokens))
            else:
                cred = self.registry_loader.get_credential(name)
                secret = self._secrets.get(name) or self._load_secret(name) or {}
                resolved.env.update(self.auth_manager.build_env(cred, secret))
        return resolved
