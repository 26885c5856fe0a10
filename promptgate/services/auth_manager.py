import logging
import re
from typing import Any, Dict, Optional, Tuple

from .registry_loader import CredentialConfig, McpServerConfig

logger = logging.getLogger(__name__)


def env_prefix(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", name).upper()


# token fields accepted per auth type, in order of preference
_SECRET_KEYS = {
    "bearer": ("access_token", "token"),
    "api_key": ("api_key", "key", "token", "access_token"),
}


def _first(data: Dict[str, Any], keys: Tuple[str, ...]) -> Optional[str]:
    for key in keys:
        if data.get(key):
            return data[key]
    return None


class AuthManager:
    """
    Turns stored connection secrets into what an execution backend needs:
    HTTP headers for MCP servers and environment variables for credentials.
    """

    def build_headers(self, server: McpServerConfig, tokens: Dict[str, Any]) -> Dict[str, str]:
        """
        Request headers for an MCP server, from its stored token data.

        ``bearer`` sends ``Authorization: Bearer <access_token>``; ``api_key``
        puts the key in ``api_key_header_name`` (default ``x-api-key``);
        ``none`` only sends the server's ``extra_headers``.
        """
        headers: Dict[str, str] = dict(server.extra_headers or {})
        auth_type = (server.auth_type or "none").lower()
        if auth_type in ("none", ""):
            return headers

        if auth_type not in _SECRET_KEYS:
            raise ValueError(f"Unsupported auth_type '{server.auth_type}' for MCP server {server.name}")
        secret = _first(tokens, _SECRET_KEYS[auth_type])
        if not secret:
            raise ValueError(f"Missing access_token for MCP server {server.name} ({auth_type} auth)")

        if auth_type == "bearer":
            headers["Authorization"] = f"Bearer {secret}"
        else:
            headers[server.api_key_header_name or "x-api-key"] = secret
        return headers

    def build_env(self, credential: CredentialConfig, secret: Dict[str, Any]) -> Dict[str, str]:
        """
        Render the credential's ``env`` templates against the stored secret.

        Templates may reference ``{token}``, ``{username}``, ``{password}`` and
        ``{credential_file}``. A variable whose template needs a field that is
        not known (e.g. a credential file written out-of-band) is skipped.
        """
        values = {
            "username": secret.get("username") or credential.username,
            "credential_file": str(credential.resolved_path() or ""),
        }
        for key in ("token", "password"):
            if secret.get(key):
                values[key] = secret[key]

        env: Dict[str, str] = {}
        for var, template in credential.env.items():
            try:
                env[var] = template.format(**values)
            except KeyError as e:
                logger.info(
                    "Skipping env var %s for credential %s (no %s stored)",
                    var, credential.name, e,
                )
        return env

    def mcp_env(self, server: McpServerConfig, credentials: Dict[str, Any]) -> Dict[str, str]:
        """
        Token exposed to subprocess backends as <NAME>_ACCESS_TOKEN.
        """
        token = credentials.get("access_token") or credentials.get("token")
        if not token:
            return {}
        return {f"{env_prefix(server.name)}_ACCESS_TOKEN": token}
