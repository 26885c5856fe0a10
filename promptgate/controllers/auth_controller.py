import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import RedirectResponse

from promptgate.config import Settings
from promptgate.errors import AuthenticationRequired
from promptgate.schemas.api import IdentityResponse, LoginRequest, MagicLinkRequest, MagicLinkResponse
from promptgate.services.session_manager import EMAIL_RE, Identity, Session, SessionManager, normalize_email

logger = logging.getLogger(__name__)

# (email, login_url) -> delivered; email delivery lives outside this service
LinkSender = Callable[[str, str], Awaitable[None]]

LINK_SENT_MESSAGE = "If your email is authorized, you will receive a login link shortly."


def get_router(
    session_manager: SessionManager,
    settings: Settings,
    require_identity: Callable,
    link_sender: Optional[LinkSender] = None,
) -> APIRouter:
    router = APIRouter(prefix="/api/auth", tags=["auth"])

    def set_session_cookie(response: Response, session: Session) -> None:
        response.set_cookie(
            key=settings.session_cookie_name,
            value=session.id,
            max_age=int(session_manager.session_ttl.total_seconds()),
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
        )

    def identity_body(session: Session) -> IdentityResponse:
        return IdentityResponse(email=session.identity, login_method=session.login_method, session_id=session.id)

    @router.post("/login", response_model=IdentityResponse, response_model_by_alias=True)
    async def login(payload: LoginRequest, response: Response) -> IdentityResponse:
        """
        Exchange the shared access token for a session cookie bound to
        ``email``.
        """
        if not session_manager.verify_access_token(payload.access_token):
            logger.warning("Rejected login for %s", payload.email)
            raise AuthenticationRequired("Invalid access token")
        if not session_manager.is_email_authorized(payload.email):
            logger.warning("Rejected login for unlisted address %s", payload.email)
            raise AuthenticationRequired("Email address is not authorized")

        session = session_manager.create_session(payload.email, "token")
        set_session_cookie(response, session)
        return identity_body(session)

    @router.post("/magic-link", response_model=MagicLinkResponse)
    async def request_magic_link(payload: MagicLinkRequest) -> MagicLinkResponse:
        """
        Issue a one-time login link and hand it to the email sender.

        The reply is the same whether or not the address is on the
        allowlist.
        """
        if link_sender is None:
            raise HTTPException(status_code=503, detail="Email login is not configured")
        email = normalize_email(payload.email)
        if not EMAIL_RE.match(email):
            raise HTTPException(status_code=400, detail="Invalid email address")

        if not session_manager.is_email_authorized(email):
            logger.warning("Login link requested for unlisted address %s", email)
            return MagicLinkResponse(message=LINK_SENT_MESSAGE)

        token = session_manager.generate_magic_link(email)
        url = f"{settings.public_base_url.rstrip('/')}/api/auth/verify?{urlencode({'token': token})}"
        try:
            await link_sender(email, url)
        except Exception:
            logger.exception("Failed to send login link to %s", email)
            raise HTTPException(status_code=502, detail="Failed to send login link. Please try again.")
        logger.info("Login link sent to %s", email)
        return MagicLinkResponse(message=LINK_SENT_MESSAGE)

    @router.get("/verify", response_model=IdentityResponse, response_model_by_alias=True)
    async def verify_magic_link(request: Request, response: Response, token: Optional[str] = None):
        """
        Turn a login link into a session. Browsers are sent on to the app
        root; API clients get the identity back.
        """
        email = session_manager.consume_magic_link(token)
        if email is None:
            raise AuthenticationRequired("Invalid or expired login link")

        session = session_manager.create_session(email, "magic-link")
        if "text/html" in request.headers.get("accept", ""):
            redirect = RedirectResponse(url="/", status_code=302)
            set_session_cookie(redirect, session)
            return redirect
        set_session_cookie(response, session)
        return identity_body(session)

    @router.post("/logout")
    async def logout(request: Request, response: Response) -> Dict[str, Any]:
        session_id = request.cookies.get(settings.session_cookie_name)
        if session_id:
            session_manager.destroy_session(session_id)
        response.delete_cookie(settings.session_cookie_name)
        return {"success": True}

    @router.get("/me", response_model=IdentityResponse, response_model_by_alias=True)
    async def me(identity: Identity = Depends(require_identity)) -> IdentityResponse:
        return IdentityResponse(
            email=identity.email,
            login_method=identity.login_method,
            session_id=identity.session_id,
        )

    return router
