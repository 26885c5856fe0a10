import json
import logging
from typing import Awaitable, Callable, Optional

from fastapi import Request

from promptgate.config import Settings
from promptgate.errors import AuthenticationRequired
from promptgate.services.session_manager import Identity, SessionManager

logger = logging.getLogger(__name__)

DISABLED_AUTH_IDENTITY = Identity(email="test@example.com", login_method="disabled", session_id="test-session")


def is_api_request(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    content_type = request.headers.get("content-type", "")
    return (
        request.url.path.startswith("/api/")
        or request.headers.get("x-requested-with", "").lower() == "xmlhttprequest"
        or "application/json" in accept
        or "application/json" in content_type
        or "text/event-stream" in accept
    )


async def _token_from_request(request: Request) -> Optional[str]:
    """
    Legacy static token, looked up in order: bearer header, query string,
    JSON body, X-Access-Token header.
    """
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[len("Bearer "):].strip()

    if request.query_params.get("access_token"):
        return request.query_params["access_token"]

    if "application/json" in request.headers.get("content-type", ""):
        body = await request.body()
        if body:
            try:
                payload = json.loads(body)
            except ValueError:
                payload = None
            if isinstance(payload, dict) and isinstance(payload.get("access_token"), str):
                return payload["access_token"]

    return request.headers.get("x-access-token")


def identity_resolver(
    session_manager: SessionManager, settings: Settings
) -> Callable[[Request], Awaitable[Identity]]:
    """
    Build the FastAPI dependency that turns a request into an Identity.
    Session cookies win over the legacy token.
    """

    async def require_identity(request: Request) -> Identity:
        if settings.disable_auth:
            return DISABLED_AUTH_IDENTITY

        session = session_manager.get_session(request.cookies.get(settings.session_cookie_name))
        if session is not None:
            return Identity(email=session.identity, login_method=session.login_method, session_id=session.id)

        if session_manager.token_auth_enabled:
            token = await _token_from_request(request)
            if session_manager.verify_access_token(token):
                return Identity(email=settings.default_identity, login_method="token")

        raise AuthenticationRequired("Login required")

    return require_identity
