import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env if present
load_dotenv()


class Settings(BaseModel):
    database_url: str
    registry_path: str
    log_level: str = "INFO"

    # Execution backend: "api" (Messages API over HTTP) or "cli" (assistant CLI subprocess)
    execution_backend: str = "cli"
    anthropic_api_key: Optional[str] = None
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    max_tokens: int = 4096
    claude_cli_path: str = "claude"
    claude_max_turns: int = 10
    working_dir: Optional[str] = None
    execution_timeout: float = 1800.0

    backend_timeout: float = 10.0
    retry_attempts: int = 2
    retry_backoff_base: float = 0.5

    # Authentication
    access_token: Optional[str] = None
    disable_auth: bool = False
    default_identity: str = "token-user"
    session_ttl_hours: float = 24.0
    session_cookie_name: str = "ai-coding-agent-session"
    cookie_secure: bool = False
    # Email login; an empty allowlist admits any address
    authorized_emails: List[str] = []
    magic_link_ttl_minutes: float = 15.0
    public_base_url: str = "http://localhost:3000"

    # 0 disables age-based eviction of pending executions
    pending_ttl_hours: float = 24.0
    oauth_redirect_uri: str = "http://localhost:3000/oauth/callback"
    host: str = "0.0.0.0"
    port: int = 3000

    class Config:
        arbitrary_types_allowed = True


def _default_registry_path() -> str:
    here = Path(__file__).resolve().parent
    return str(here / "registry.yaml")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_settings() -> Settings:
    """
    Build settings from the process environment.
    """
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./promptgate.db"),
        registry_path=os.getenv("REGISTRY_PATH", _default_registry_path()),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        execution_backend=os.getenv("EXECUTION_BACKEND", "cli"),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
        anthropic_base_url=os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com"),
        anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022"),
        max_tokens=int(os.getenv("MAX_TOKENS", "4096")),
        claude_cli_path=os.getenv("CLAUDE_CLI_PATH", "claude"),
        claude_max_turns=int(os.getenv("CLAUDE_MAX_TURNS", "10")),
        working_dir=os.getenv("WORKING_DIR") or None,
        execution_timeout=float(os.getenv("EXECUTION_TIMEOUT", "1800")),
        backend_timeout=float(os.getenv("BACKEND_TIMEOUT", "10")),
        retry_attempts=int(os.getenv("RETRY_ATTEMPTS", "2")),
        retry_backoff_base=float(os.getenv("RETRY_BACKOFF_BASE", "0.5")),
        access_token=os.getenv("ACCESS_TOKEN") or None,
        disable_auth=_env_bool("DISABLE_AUTH"),
        default_identity=os.getenv("DEFAULT_IDENTITY", "token-user"),
        session_ttl_hours=float(os.getenv("SESSION_TTL_HOURS", "24")),
        session_cookie_name=os.getenv("SESSION_COOKIE_NAME", "ai-coding-agent-session"),
        cookie_secure=_env_bool("COOKIE_SECURE"),
        authorized_emails=_env_list(os.getenv("AUTHORIZED_EMAILS") or os.getenv("EMAIL", "")),
        magic_link_ttl_minutes=float(os.getenv("MAGIC_LINK_TTL_MINUTES", "15")),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:3000"),
        pending_ttl_hours=float(os.getenv("PENDING_TTL_HOURS", "24")),
        oauth_redirect_uri=os.getenv("OAUTH_REDIRECT_URI", "http://localhost:3000/oauth/callback"),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
    )


settings = load_settings()
