import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import select

from promptgate.db.database import get_db_session
from promptgate.db.models import ExecutionRecord, as_utc, utcnow
from promptgate.errors import ExecutionStateError, NotFoundError
from .execution_adapter import Completed, Failed, TerminalOutcome

logger = logging.getLogger(__name__)

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
STATUSES = (PENDING, RUNNING, COMPLETED, FAILED)
TERMINAL = (COMPLETED, FAILED)


@dataclass
class Page:
    items: List[ExecutionRecord]
    total: int
    limit: int
    offset: int
    # Highest sequence number visible to this page; pass it back to pin later pages
    snapshot: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


def _iso(value) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


def record_to_dict(record: ExecutionRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "promptName": record.prompt_name,
        "identity": record.identity,
        "parameters": json.loads(record.parameters_json),
        "status": record.status,
        "createdAt": _iso(record.created_at),
        "startedAt": _iso(record.started_at),
        "completedAt": _iso(record.completed_at),
        "durationMs": record.duration_ms,
        "output": record.output,
        "error": record.error,
        "waitingFor": json.loads(record.waiting_for_json),
        "toolUses": json.loads(record.tool_uses_json),
        "retryOf": record.retry_of,
    }


class ExecutionLedger:
    """
    Persists execution records and answers history queries.

    Status only moves forward: pending -> running -> completed | failed.
    Transition calls on a record that is already terminal are ignored, so
    duplicate completion signals are harmless.
    """

    def __init__(self, bind: Optional[Engine] = None, pending_ttl: Optional[timedelta] = None) -> None:
        self._bind = bind
        self.pending_ttl = pending_ttl

    # ---------- Writes ----------

    def record(
        self,
        prompt_name: str,
        identity: str,
        parameters: Dict[str, Any],
        waiting_for: Optional[Iterable[str]] = None,
        retry_of: Optional[str] = None,
    ) -> str:
        missing = list(waiting_for or [])
        now = utcnow()
        with get_db_session(self._bind) as db:
            rec = ExecutionRecord(
                prompt_name=prompt_name,
                identity=identity,
                parameters_json=json.dumps(parameters, default=str),
                status=PENDING if missing else RUNNING,
                waiting_for_json=json.dumps(missing),
                created_at=now,
                started_at=None if missing else now,
                retry_of=retry_of,
            )
            db.add(rec)
            db.commit()
            db.refresh(rec)
            logger.info("Recorded %s execution %s for %s", rec.status, rec.id, prompt_name)
            return rec.id

    def _load(self, db, execution_id: str) -> ExecutionRecord:
        rec = db.exec(select(ExecutionRecord).where(ExecutionRecord.id == execution_id)).first()
        if rec is None:
            raise NotFoundError("Execution", execution_id)
        return rec

    def mark_deferred(self, execution_id: str, missing: Iterable[str]) -> None:
        missing = list(missing)
        if not missing:
            raise ValueError("A deferred execution must wait for at least one connection")
        with get_db_session(self._bind) as db:
            rec = self._load(db, execution_id)
            if rec.status != PENDING:
                logger.warning("Ignoring defer of %s execution %s", rec.status, execution_id)
                return
            rec.waiting_for_json = json.dumps(missing)
            db.add(rec)
            db.commit()

    def mark_running(self, execution_id: str) -> None:
        with get_db_session(self._bind) as db:
            rec = self._load(db, execution_id)
            if rec.status != PENDING:
                return
            rec.status = RUNNING
            rec.waiting_for_json = "[]"
            rec.started_at = utcnow()
            db.add(rec)
            db.commit()

    def retire_pending(self, execution_id: str) -> None:
        """
        Remove a pending record once a retry has replaced it with a new
        execution. Pending rows never appear in history pages, so removing
        one leaves earlier snapshots untouched.
        """
        with get_db_session(self._bind) as db:
            rec = self._load(db, execution_id)
            if rec.status != PENDING:
                raise ExecutionStateError(f"Execution '{execution_id}' is {rec.status}, not pending")
            db.delete(rec)
            db.commit()

    def mark_terminal(self, execution_id: str, outcome: TerminalOutcome) -> None:
        with get_db_session(self._bind) as db:
            rec = self._load(db, execution_id)
            if rec.status in TERMINAL:
                return
            if rec.status == PENDING:
                logger.warning("Execution %s never started; ignoring terminal outcome", execution_id)
                return
            now = utcnow()
            rec.completed_at = now
            if rec.started_at is not None:
                rec.duration_ms = int((now - as_utc(rec.started_at)).total_seconds() * 1000)
            if isinstance(outcome, Completed):
                rec.status = COMPLETED
                rec.output = outcome.output
                rec.tool_uses_json = json.dumps(outcome.tool_uses, default=str)
            elif isinstance(outcome, Failed):
                rec.status = FAILED
                rec.error = outcome.error
            else:
                raise TypeError(f"Unknown outcome {outcome!r}")
            db.add(rec)
            db.commit()
            logger.info("Execution %s %s", execution_id, rec.status)

    def expire_pending(self, max_age: Optional[timedelta] = None) -> int:
        """
        Delete pending records older than ``max_age`` (default: the
        configured TTL). Returns how many were removed.
        """
        max_age = max_age or self.pending_ttl
        if not max_age:
            return 0
        cutoff = utcnow() - max_age
        with get_db_session(self._bind) as db:
            stale = db.exec(
                select(ExecutionRecord)
                .where(ExecutionRecord.status == PENDING)
                .where(ExecutionRecord.created_at < cutoff)
            ).all()
            for rec in stale:
                db.delete(rec)
            db.commit()
        if stale:
            logger.info("Expired %d pending execution(s)", len(stale))
        return len(stale)

    # ---------- Reads ----------

    def get(self, execution_id: str) -> ExecutionRecord:
        with get_db_session(self._bind) as db:
            return self._load(db, execution_id)

    def query(
        self,
        prompt_name: Optional[str] = None,
        identity: Optional[str] = None,
        status: Optional[Iterable[str]] = None,
        limit: int = 20,
        offset: int = 0,
        snapshot: Optional[int] = None,
    ) -> Page:
        """
        Most-recent-first page of records.

        Records inserted after ``snapshot`` are invisible, so walking pages
        with the snapshot from the first page never skips or repeats rows.
        """
        self.expire_pending()
        statuses = [status] if isinstance(status, str) else list(status or [])

        with get_db_session(self._bind) as db:
            if snapshot is None:
                snapshot = db.exec(select(func.max(ExecutionRecord.seq))).one() or 0

            conditions = [ExecutionRecord.seq <= snapshot]
            if prompt_name:
                conditions.append(ExecutionRecord.prompt_name == prompt_name)
            if identity:
                conditions.append(ExecutionRecord.identity == identity)
            if statuses:
                conditions.append(ExecutionRecord.status.in_(statuses))

            total = db.exec(select(func.count()).select_from(ExecutionRecord).where(*conditions)).one()
            items = db.exec(
                select(ExecutionRecord)
                .where(*conditions)
                .order_by(ExecutionRecord.seq.desc())
                .offset(offset)
                .limit(limit)
            ).all()

        return Page(items=list(items), total=total, limit=limit, offset=offset, snapshot=snapshot)

    def list_pending(self, prompt_name: Optional[str] = None) -> List[ExecutionRecord]:
        self.expire_pending()
        with get_db_session(self._bind) as db:
            stmt = select(ExecutionRecord).where(ExecutionRecord.status == PENDING)
            if prompt_name:
                stmt = stmt.where(ExecutionRecord.prompt_name == prompt_name)
            return list(db.exec(stmt.order_by(ExecutionRecord.seq.desc())).all())
