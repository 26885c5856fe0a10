import asyncio
import logging
from contextlib import suppress
from typing import Optional

from fastapi import Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from promptgate.services.execution_adapter import EventSink
from promptgate.services.prompt_runner import PreparedRun, PromptRunner
from promptgate.utils.sse import format_sse_event

logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 1.0


def stream_run(runner: PromptRunner, run: PreparedRun, request: Request) -> StreamingResponse:
    """
    Execute ``run`` in its own task and relay canonical events as SSE.

    If the client goes away the task is cancelled, which stops the backend
    and records the run as failed. The response's background task settles
    the record even when the body was never iterated.
    """
    task: Optional[asyncio.Task] = None

    async def settle() -> None:
        if task is not None:
            if not task.done():
                task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        # no-op once the run has a terminal outcome
        runner.abandon(run)

    async def event_generator():
        nonlocal task
        sink = EventSink()

        async def drive() -> None:
            try:
                await runner.execute(run, sink.emit)
            finally:
                sink.close()

        task = asyncio.create_task(drive())
        seq = 0
        try:
            while True:
                try:
                    event = await asyncio.wait_for(sink.get(), timeout=DISCONNECT_POLL_SECONDS)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        logger.info("Client disconnected from execution %s", run.execution_id)
                        break
                    continue
                if event is None:
                    break
                seq += 1
                payload = {**event.payload(), "executionId": run.execution_id}
                yield format_sse_event(event.kind, payload, seq)
        finally:
            if not task.done():
                task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=BackgroundTask(settle),
    )
