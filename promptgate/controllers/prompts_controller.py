from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from promptgate.schemas.api import RunRequest
from promptgate.services.ledger import COMPLETED, FAILED, RUNNING, ExecutionLedger, record_to_dict
from promptgate.services.prompt_runner import PromptRunner
from promptgate.services.session_manager import Identity
from .streaming import stream_run

MAX_PAGE_SIZE = 100


def get_router(runner: PromptRunner, ledger: ExecutionLedger, require_identity: Callable) -> APIRouter:
    router = APIRouter(prefix="/api/prompts", tags=["prompts"])

    @router.get("")
    async def list_prompts(identity: Identity = Depends(require_identity)) -> Dict[str, Any]:
        names = runner.registry_loader.list_prompts()
        return {"prompts": [await runner.describe(name) for name in names]}

    @router.get("/{name}")
    async def get_prompt(name: str, identity: Identity = Depends(require_identity)) -> Dict[str, Any]:
        return await runner.describe(name)

    @router.post("/{name}/run")
    async def run_prompt(
        name: str,
        payload: RunRequest,
        request: Request,
        identity: Identity = Depends(require_identity),
    ):
        """
        Stream the run as server-sent events, or 401 with the connections
        that still need authorizing.
        """
        run = await runner.prepare(name, payload.parameters, identity)
        return stream_run(runner, run, request)

    @router.get("/{name}/activity")
    async def prompt_activity(
        name: str,
        limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
        offset: int = Query(0, ge=0),
        snapshot: Optional[int] = Query(None, ge=0),
        identity: Identity = Depends(require_identity),
    ) -> Dict[str, Any]:
        prompt = runner.get_prompt(name)
        page = ledger.query(
            prompt_name=prompt.name,
            status=[RUNNING, COMPLETED, FAILED],
            limit=limit,
            offset=offset,
            snapshot=snapshot,
        )
        return {
            "prompt": {"name": prompt.name, "description": prompt.description},
            "executions": [record_to_dict(r) for r in page.items],
            "pendingExecutions": [record_to_dict(r) for r in ledger.list_pending(prompt.name)],
            "pagination": {
                "total": page.total,
                "limit": page.limit,
                "offset": page.offset,
                "hasMore": page.has_more,
                "snapshot": page.snapshot,
            },
        }

    return router
