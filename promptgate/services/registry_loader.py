from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ValidationError, Field, field_validator


class McpServerConfig(BaseModel):
    name: str
    url: str
    transport: str = "http"  # "http" or "sse"
    description: Optional[str] = None
    auth_type: str = "bearer"  # "bearer", "api_key" or "none"
    api_key_header_name: Optional[str] = None
    extra_headers: Dict[str, str] = Field(default_factory=dict)
    # Static token from config; such a server never needs an OAuth round-trip
    authorization_token: Optional[str] = None
    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)


class CredentialConfig(BaseModel):
    name: str
    description: Optional[str] = None
    method: str = "token"  # "token" or "credentials"
    # When set the secret lives in this file, otherwise in the database vault
    credential_file: Optional[str] = None
    file_template: str = "{token}\n"
    username: str = "token"
    token_prefixes: List[str] = Field(default_factory=list)
    # Environment injected into the execution backend; values are format strings
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("method")
    @classmethod
    def _check_method(cls, v: str) -> str:
        if v not in ("token", "credentials"):
            raise ValueError(f"unsupported credential method '{v}'")
        return v

    @property
    def storage(self) -> str:
        return "file" if self.credential_file else "vault"

    def resolved_path(self) -> Optional[Path]:
        if not self.credential_file:
            return None
        return Path(self.credential_file).expanduser()


class ParameterSpec(BaseModel):
    type: str = "string"
    description: Optional[str] = None
    default: Any = None


class ParameterSchema(BaseModel):
    properties: Dict[str, ParameterSpec] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)


class MessageTemplate(BaseModel):
    role: str
    content: str


class PromptConfig(BaseModel):
    name: str
    description: Optional[str] = None
    parameters: ParameterSchema = Field(default_factory=ParameterSchema)
    connections: List[str] = Field(default_factory=list)
    messages: List[MessageTemplate]

    @field_validator("connections")
    @classmethod
    def _dedupe(cls, v: List[str]) -> List[str]:
        # ordered set
        return list(dict.fromkeys(v))

    @field_validator("messages")
    @classmethod
    def _non_empty(cls, v: List[MessageTemplate]) -> List[MessageTemplate]:
        if not v:
            raise ValueError("prompt needs at least one message")
        return v


class RegistryLoader:
    """
    Loads and validates connection and prompt configs from registry.yaml.
    """

    def __init__(self, registry_path: str) -> None:
        self._path = Path(registry_path)
        if not self._path.exists():
            raise FileNotFoundError(f"registry.yaml not found at {registry_path}")
        self._mcp_servers: Dict[str, McpServerConfig] = {}
        self._credentials: Dict[str, CredentialConfig] = {}
        self._prompts: Dict[str, PromptConfig] = {}
        self._load()

    def _load(self) -> None:
        data = yaml.safe_load(self._path.read_text()) or {}

        mcp_servers: Dict[str, McpServerConfig] = {}
        for name, cfg in (data.get("mcp_servers") or {}).items():
            try:
                server = McpServerConfig(name=name, **(cfg or {}))
            except ValidationError as e:
                raise ValueError(f"Invalid MCP server config for {name}: {e}") from e
            mcp_servers[server.name] = server

        credentials: Dict[str, CredentialConfig] = {}
        for name, cfg in (data.get("credentials") or {}).items():
            try:
                cred = CredentialConfig(name=name, **(cfg or {}))
            except ValidationError as e:
                raise ValueError(f"Invalid credential config for {name}: {e}") from e
            if cred.name in mcp_servers:
                raise ValueError(f"Connection name '{name}' is declared twice")
            credentials[cred.name] = cred

        prompts: Dict[str, PromptConfig] = {}
        for raw in data.get("prompts") or []:
            try:
                prompt = PromptConfig(**raw)
            except ValidationError as e:
                raise ValueError(f"Invalid prompt config {raw.get('name')!r}: {e}") from e
            prompts[prompt.name] = prompt

        self._mcp_servers = mcp_servers
        self._credentials = credentials
        self._prompts = prompts

    def get_mcp_server(self, name: str) -> McpServerConfig:
        if name not in self._mcp_servers:
            raise KeyError(f"MCP server '{name}' not found in registry")
        return self._mcp_servers[name]

    def get_credential(self, name: str) -> CredentialConfig:
        if name not in self._credentials:
            raise KeyError(f"Credential '{name}' not found in registry")
        return self._credentials[name]

    def get_prompt(self, name: str) -> PromptConfig:
        if name not in self._prompts:
            raise KeyError(f"Prompt '{name}' not found in registry")
        return self._prompts[name]

    def list_mcp_servers(self) -> Dict[str, McpServerConfig]:
        return dict(self._mcp_servers)

    def list_credentials(self) -> Dict[str, CredentialConfig]:
        return dict(self._credentials)

    def list_prompts(self) -> Dict[str, PromptConfig]:
        return dict(self._prompts)
