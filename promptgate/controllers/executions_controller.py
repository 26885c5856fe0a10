from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from promptgate.services.ledger import COMPLETED, FAILED, PENDING, RUNNING, STATUSES, ExecutionLedger, record_to_dict
from promptgate.services.prompt_runner import PromptRunner
from promptgate.services.session_manager import Identity
from .streaming import stream_run

MAX_PAGE_SIZE = 100


def get_router(runner: PromptRunner, ledger: ExecutionLedger, require_identity: Callable) -> APIRouter:
    router = APIRouter(prefix="/api/executions", tags=["executions"])

    @router.get("")
    async def list_executions(
        status: Optional[str] = None,
        user: Optional[str] = None,
        limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
        offset: int = Query(0, ge=0),
        snapshot: Optional[int] = Query(None, ge=0),
        identity: Identity = Depends(require_identity),
    ) -> Dict[str, Any]:
        """
        Recent executions across all prompts. Pending ones are listed
        separately unless ``status=pending`` is asked for explicitly.
        """
        if status is not None and status not in STATUSES:
            raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
        statuses: List[str] = [status] if status else [RUNNING, COMPLETED, FAILED]

        page = ledger.query(identity=user, status=statuses, limit=limit, offset=offset, snapshot=snapshot)
        pending = [r for r in ledger.list_pending() if user is None or r.identity == user]
        return {
            "executions": [record_to_dict(r) for r in page.items],
            "pendingExecutions": [record_to_dict(r) for r in pending] if status in (None, PENDING) else [],
            "pagination": {
                "total": page.total,
                "limit": page.limit,
                "offset": page.offset,
                "hasMore": page.has_more,
                "snapshot": page.snapshot,
            },
        }

    @router.get("/{execution_id}")
    async def get_execution(execution_id: str, identity: Identity = Depends(require_identity)) -> Dict[str, Any]:
        return record_to_dict(ledger.get(execution_id))

    @router.post("/{execution_id}/retry")
    async def retry_execution(
        execution_id: str,
        request: Request,
        identity: Identity = Depends(require_identity),
    ):
        """
        Resume a pending execution once its connections are authorized.
        """
        run = await runner.retry(execution_id, identity)
        return stream_run(runner, run, request)

    return router
