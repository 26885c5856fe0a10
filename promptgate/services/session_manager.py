import hmac
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from promptgate.db.models import utcnow

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class Session:
    id: str
    identity: str
    login_method: str
    created_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(default_factory=utcnow)


@dataclass
class MagicLink:
    token: str
    email: str
    expires_at: datetime
    used: bool = False


@dataclass(frozen=True)
class Identity:
    """Who a request acts for; passed explicitly into every core call."""

    email: str
    login_method: str
    session_id: Optional[str] = None


class SessionManager:
    """
    Owns login sessions, one-time email login links and the legacy static
    access token.

    Sessions live in memory and use a sliding expiry: every successful
    lookup pushes ``expires_at`` forward by the configured TTL. Expired
    sessions and links are swept whenever a new session is created.
    """

    def __init__(
        self,
        session_ttl: timedelta,
        access_token: Optional[str] = None,
        authorized_emails: Iterable[str] = (),
        magic_link_ttl: timedelta = timedelta(minutes=15),
    ) -> None:
        self.session_ttl = session_ttl
        self.magic_link_ttl = magic_link_ttl
        self._access_token = access_token
        self._authorized_emails = {normalize_email(e) for e in authorized_emails if e.strip()}
        # session_id -> Session
        self._sessions: Dict[str, Session] = {}
        # token -> MagicLink
        self._magic_links: Dict[str, MagicLink] = {}

    @property
    def token_auth_enabled(self) -> bool:
        return bool(self._access_token)

    # ---------- Email allowlist ----------

    def is_email_authorized(self, email: str) -> bool:
        """
        An empty allowlist admits every address.
        """
        if not self._authorized_emails:
            return True
        return normalize_email(email) in self._authorized_emails

    # ---------- Magic links ----------

    def generate_magic_link(self, email: str) -> str:
        token = secrets.token_hex(32)
        self._magic_links[token] = MagicLink(
            token=token,
            email=normalize_email(email),
            expires_at=utcnow() + self.magic_link_ttl,
        )
        return token

    def consume_magic_link(self, token: Optional[str]) -> Optional[str]:
        """
        Email a login link was issued for. Each link works once and only
        until it expires.
        """
        if not token:
            return None
        link = self._magic_links.get(token)
        if link is None or link.used:
            return None
        if link.expires_at < utcnow():
            self._magic_links.pop(token, None)
            return None
        link.used = True
        return link.email

    # ---------- Sessions ----------

    def create_session(self, identity: str, login_method: str) -> Session:
        self.cleanup_expired()
        now = utcnow()
        session = Session(
            id=secrets.token_hex(32),
            identity=normalize_email(identity),
            login_method=login_method,
            created_at=now,
            last_accessed_at=now,
            expires_at=now + self.session_ttl,
        )
        self._sessions[session.id] = session
        logger.info("Created %s session for %s", login_method, session.identity)
        return session

    def get_session(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        now = utcnow()
        if session.expires_at < now:
            self._sessions.pop(session_id, None)
            return None
        session.last_accessed_at = now
        session.expires_at = now + self.session_ttl
        return session

    def destroy_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def cleanup_expired(self) -> int:
        now = utcnow()
        expired = [sid for sid, s in self._sessions.items() if s.expires_at < now]
        for sid in expired:
            self._sessions.pop(sid, None)
        stale_links = [t for t, link in self._magic_links.items() if link.used or link.expires_at < now]
        for token in stale_links:
            self._magic_links.pop(token, None)
        if expired:
            logger.info("Removed %d expired session(s)", len(expired))
        return len(expired)

    def verify_access_token(self, provided: Optional[str]) -> bool:
        if not self._access_token or not provided:
            return False
        return hmac.compare_digest(provided.encode(), self._access_token.encode())

    def stats(self) -> Dict[str, int]:
        now = utcnow()
        active = sum(1 for s in self._sessions.values() if s.expires_at > now)
        return {
            "total": len(self._sessions),
            "active": active,
            "expired": len(self._sessions) - active,
            "magicLinks": len(self._magic_links),
        }
