import asyncio

import pytest

from conftest import ScriptedBackend
from promptgate.config import Settings
from promptgate.errors import BackendFailure
from promptgate.services.execution_adapter import (
    CLIENT_DISCONNECTED,
    Complete,
    Completed,
    Error,
    EventSink,
    ExecutionAdapter,
    Failed,
    Output,
    Start,
    ToolResult,
    ToolUse,
    create_backend,
)
from promptgate.services.session_manager import Identity

ANN = Identity(email="ann@example.com", login_method="token")


def _kinds(events):
    return [e.kind for e in events]


async def _run(backend, registry, prompt, parameters=None, timeout=None):
    events = []
    adapter = ExecutionAdapter(backend, registry, timeout=timeout)
    outcome = await adapter.execute_stream(prompt, parameters or {"name": "Ann"}, ANN, events.append, "exec-1")
    return outcome, events


async def test_successful_run_streams_in_order(loader, registry):
    backend = ScriptedBackend(
        events=[
            {"type": "text", "text": "Hello, "},
            {"type": "tool", "id": "t1", "name": "search", "input": {"q": "Ann"}},
            {"type": "result", "id": "t1", "output": "found"},
            {"type": "text", "text": "Ann!"},
        ]
    )
    outcome, events = await _run(backend, registry, loader.get_prompt("hello-world"))

    assert events == [
        Start(prompt_name="hello-world"),
        Output(text="Hello, "),
        ToolUse(name="search", input={"q": "Ann"}),
        ToolResult(name="search", output="found"),
        Output(text="Ann!"),
        Complete(success=True),
    ]
    assert outcome == Completed(output="Hello, Ann!", tool_uses=[{"name": "search", "input": {"q": "Ann"}}])
    assert backend.invocations[0].messages == [{"role": "user", "content": "Say hello to Ann"}]
    assert backend.invocations[0].execution_id == "exec-1"
    assert backend.closed == 1


async def test_unmapped_and_malformed_events_are_dropped(loader, registry):
    backend = ScriptedBackend(
        events=[
            {"type": "text", "text": "a"},
            {"type": "bad"},
            {"type": "ping"},
            {"type": "result", "id": "unknown-id", "output": 1},
            {"type": "text", "text": "b"},
        ]
    )
    outcome, events = await _run(backend, registry, loader.get_prompt("hello-world"))

    assert _kinds(events) == ["start", "output", "tool_result", "output", "complete"]
    assert events[2] == ToolResult(name="unknown", output=1)
    assert outcome.output == "ab"


async def test_backend_failure_ends_with_error_then_complete(loader, registry):
    backend = ScriptedBackend(events=[{"type": "text", "text": "partial"}], error=BackendFailure("rate limited"))
    outcome, events = await _run(backend, registry, loader.get_prompt("hello-world"))

    assert outcome == Failed(error="rate limited")
    assert events[-2:] == [Error(message="rate limited"), Complete(success=False)]


async def test_crash_is_reported_exactly_once(loader, registry):
    backend = ScriptedBackend(error=RuntimeError("segfault"))
    outcome, events = await _run(backend, registry, loader.get_prompt("hello-world"))

    assert outcome == Failed(error=BackendFailure.TERMINATED)
    assert _kinds(events) == ["start", "error", "complete"]
    assert events[1].message == "backend terminated unexpectedly"


async def test_missing_credentials_fail_before_the_backend_starts(loader, registry):
    backend = ScriptedBackend()
    outcome, events = await _run(
        backend, registry, loader.get_prompt("create-jira-issue"), {"project": "OPS", "summary": "x"}
    )

    assert isinstance(outcome, Failed)
    assert "access_token" in outcome.error
    assert _kinds(events) == ["start", "error", "complete"]
    assert backend.invocations == []


async def test_credentials_are_resolved_for_the_backend(loader, registry):
    await registry.mark_authorized("jira", {"access_token": "jira-token"})
    backend = ScriptedBackend(events=[{"type": "text", "text": "OPS-1"}])
    outcome, _ = await _run(
        backend, registry, loader.get_prompt("create-jira-issue"), {"project": "OPS", "summary": "Disk full"}
    )

    assert outcome.output == "OPS-1"
    invocation = backend.invocations[0]
    assert invocation.credentials.token_for("jira") == "jira-token"
    assert invocation.messages[0]["content"] == "Create an issue in OPS: Disk full ({{priority}})"
    assert "jira" in invocation.system_prompt()


async def test_timeout_fails_the_run_and_stops_the_backend(loader, registry):
    backend = ScriptedBackend(events=[{"type": "text", "text": "thinking"}], hang=True)
    outcome, events = await _run(backend, registry, loader.get_prompt("hello-world"), timeout=0.05)

    assert outcome == Failed(error=BackendFailure.TERMINATED)
    assert _kinds(events) == ["start", "output", "error", "complete"]
    assert backend.closed == 1


async def test_cancellation_reports_disconnect_and_propagates(loader, registry):
    backend = ScriptedBackend(events=[{"type": "text", "text": "working"}], hang=True)
    adapter = ExecutionAdapter(backend, registry)
    events = []
    started = asyncio.Event()

    def on_event(event):
        events.append(event)
        if isinstance(event, Output):
            started.set()

    task = asyncio.create_task(
        adapter.execute_stream(loader.get_prompt("hello-world"), {}, ANN, on_event, "exec-2")
    )
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert events[-2:] == [Error(message=CLIENT_DISCONNECTED), Complete(success=False)]
    assert backend.closed == 1


async def test_event_sink_iterates_until_closed():
    sink = EventSink()
    sink.emit(Output(text="a"))
    sink.emit(Output(text="b"))
    sink.close()
    sink.emit(Output(text="ignored"))

    assert [e async for e in sink] == [Output(text="a"), Output(text="b")]
    assert await sink.get() is None


def test_unknown_backend_is_rejected(registry_path):
    settings = Settings(database_url="sqlite://", registry_path=str(registry_path), execution_backend="carrier-pigeon")
    with pytest.raises(ValueError):
        create_backend(settings)


def test_api_backend_needs_a_key(registry_path):
    settings = Settings(database_url="sqlite://", registry_path=str(registry_path), execution_backend="api")
    with pytest.raises(ValueError):
        create_backend(settings)
