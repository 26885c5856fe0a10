from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to a timestamp read back without tzinfo."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ExecutionRecord(SQLModel, table=True):
    """
    One prompt execution, from request to terminal outcome.

    ``seq`` is the insertion order and drives most-recent-first paging;
    ``id`` is the public identifier.
    """

    __tablename__ = "executions"

    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(default_factory=lambda: str(uuid4()), unique=True, index=True)
    prompt_name: str = Field(index=True)
    identity: str = Field(index=True)
    status: str = Field(default="running", index=True)  # pending, running, completed, failed
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    output: Optional[str] = None
    error: Optional[str] = None
    # execution this one was started from, when it resumed a pending run
    retry_of: Optional[str] = Field(default=None, index=True)

    # JSON strings
    parameters_json: str = Field(default="{}", description="JSON object of run parameters")
    waiting_for_json: str = Field(default="[]", description="JSON list of missing connections")
    tool_uses_json: str = Field(default="[]", description="JSON list of tool invocations")


class ConnectionSecret(SQLModel, table=True):
    """
    Persisted OAuth tokens and vault-stored credentials.

    TODO: In production, encrypt/seal secret_json.
    """

    __tablename__ = "connection_secrets"

    name: str = Field(primary_key=True)
    kind: str = Field(index=True)  # mcp-server, credential
    secret_json: str = Field(description="JSON object of token or credential fields")
    updated_at: datetime = Field(default_factory=utcnow)
