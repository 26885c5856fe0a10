from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from promptgate.services.connection_registry import Connection


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConnectionsResponse(BaseModel):
    connections: List[Connection]


class AuthorizeResponse(CamelModel):
    auth_url: str


class CredentialSetupRequest(BaseModel):
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    def secret(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class TokenCallbackRequest(BaseModel):
    """
    Tokens delivered by the external OAuth collaborator once the user has
    finished the provider's flow.
    """

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[float] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None

    def tokens(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={"state"})


class ConnectionResponse(BaseModel):
    success: bool = True
    connection: Connection


class RunRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    parameters: Dict[str, Any] = Field(default_factory=dict)


class LoginRequest(CamelModel):
    email: str
    access_token: str


class IdentityResponse(CamelModel):
    email: str
    login_method: str
    session_id: Optional[str] = None


class MagicLinkRequest(BaseModel):
    email: str


class MagicLinkResponse(BaseModel):
    success: bool = True
    message: str
