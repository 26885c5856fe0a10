import json
import stat

import httpx

from promptgate.errors import BackendFailure
from promptgate.services.api_backend import MCP_CLIENT_BETA, AnthropicApiBackend
from promptgate.services.cli_backend import ClaudeCliBackend
from promptgate.services.execution_adapter import Completed, ExecutionAdapter, Failed, Invocation, ToolUse
from promptgate.services.session_manager import Identity

ANN = Identity(email="ann@example.com", login_method="token")


def _sse(*events):
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode()


def _api_backend(settings, handler):
    client = httpx.AsyncClient(base_url="https://api.test", transport=httpx.MockTransport(handler))
    backend = AnthropicApiBackend(client=client)
    backend.configure(settings.model_copy(update={"execution_backend": "api"}))
    return backend


async def _run(backend, registry, prompt, parameters):
    events = []
    outcome = await ExecutionAdapter(backend, registry).execute_stream(prompt, parameters, ANN, events.append)
    return outcome, events


async def test_api_backend_streams_a_run(settings, loader, registry):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        body = _sse(
            {"type": "message_start", "message": {"id": "msg_1"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Filed "}},
            {"type": "content_block_start", "index": 1,
             "content_block": {"type": "mcp_tool_use", "id": "tu_1", "name": "create_issue", "input": {}}},
            {"type": "content_block_delta", "index": 2, "delta": {"type": "text_delta", "text": "OPS-1"}},
            {"type": "message_stop"},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    await registry.mark_authorized("jira", {"access_token": "jira-token"})
    backend = _api_backend(settings, handler)
    outcome, events = await _run(
        backend, registry, loader.get_prompt("create-jira-issue"), {"project": "OPS", "summary": "x", "priority": "High"}
    )

    assert outcome == Completed(output="Filed OPS-1", tool_uses=[{"name": "create_issue", "input": {}}])
    assert ToolUse(name="create_issue", input={}) in events

    sent = json.loads(requests[0].content)
    assert requests[0].url.path == "/v1/messages"
    assert requests[0].headers["anthropic-beta"] == MCP_CLIENT_BETA
    assert sent["stream"] is True
    assert sent["messages"] == [{"role": "user", "content": "Create an issue in OPS: x (High)"}]
    assert sent["mcp_servers"] == [
        {"type": "url", "url": "https://mcp.jira.example.com/v1/sse", "name": "jira", "authorization_token": "jira-token"}
    ]
    await backend.dispose()


async def test_api_backend_error_event_fails_the_run(settings, loader, registry):
    def handler(request):
        body = _sse(
            {"type": "message_start"},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )
        return httpx.Response(200, content=body)

    outcome, events = await _run(_api_backend(settings, handler), registry, loader.get_prompt("hello-world"), {})
    assert outcome == Failed(error="Overloaded")
    assert [e.kind for e in events] == ["start", "error", "complete"]


async def test_api_backend_http_error(settings, loader, registry):
    backend = _api_backend(settings, lambda request: httpx.Response(401, json={"error": "bad key"}))
    outcome, _ = await _run(backend, registry, loader.get_prompt("hello-world"), {})
    assert isinstance(outcome, Failed)
    assert outcome.error.startswith("backend returned HTTP 401")


async def test_api_stream_without_message_stop_is_a_failure(settings, loader, registry):
    def handler(request):
        body = _sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "cut"}})
        return httpx.Response(200, content=body)

    outcome, events = await _run(_api_backend(settings, handler), registry, loader.get_prompt("hello-world"), {})
    assert outcome == Failed(error=BackendFailure.TERMINATED)
    assert [e.kind for e in events] == ["start", "output", "error", "complete"]


def _fake_cli(tmp_path, body):
    script = tmp_path / "fake-cli"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return script


def _cli_backend(settings, script):
    backend = ClaudeCliBackend()
    backend.configure(settings.model_copy(update={"claude_cli_path": str(script)}))
    return backend


async def test_cli_backend_streams_records(settings, loader, registry, tmp_path):
    script = _fake_cli(
        tmp_path,
        """cat > prompt.txt
echo '{"type":"system","subtype":"init"}'
echo 'warming up'
echo '{"type":"assistant","message":{"content":[{"type":"text","text":"Pushed. "},{"type":"tool_use","id":"t1","name":"git_push","input":{}}]}}'
echo '{"type":"user","message":{"content":[{"type":"tool_result","tool_use_id":"t1","content":"ok"}]}}'
printf '{"type":"assistant","message":{"content":[{"type":"text","text":"%s"}]}}\\n' "$GITHUB_TOKEN"
echo '{"type":"result","subtype":"success","is_error":false}'
""",
    )
    await registry.mark_authorized("git-credentials", {"token": "ghp_cli"})
    backend = _cli_backend(settings, script)
    outcome, events = await _run(backend, registry, loader.get_prompt("open-pull-request"), {"repo": "acme/app"})

    assert [e.kind for e in events] == ["start", "output", "tool_use", "tool_result", "output", "complete"]
    assert outcome == Completed(output="Pushed. ghp_cli", tool_uses=[{"name": "git_push", "input": {}}])
    assert events[3].name == "git_push"

    prompt = (backend.working_dir / "prompt.txt").read_text()
    assert "user: Open a pull request on acme/app" in prompt
    # the per-run MCP config is removed afterwards
    assert list(backend.working_dir.glob("mcp-config-*.json")) == []


async def test_cli_backend_exit_without_result_fails(settings, loader, registry, tmp_path):
    script = _fake_cli(
        tmp_path,
        """cat > /dev/null
echo '{"type":"assistant","message":{"content":[{"type":"text","text":"half"}]}}'
exit 1
""",
    )
    outcome, events = await _run(_cli_backend(settings, script), registry, loader.get_prompt("hello-world"), {})
    assert outcome == Failed(error=BackendFailure.TERMINATED)
    assert [e.kind for e in events] == ["start", "output", "error", "complete"]


async def test_cli_backend_error_result(settings, loader, registry, tmp_path):
    script = _fake_cli(
        tmp_path,
        """cat > /dev/null
echo '{"type":"result","subtype":"error_max_turns","is_error":true}'
""",
    )
    outcome, _ = await _run(_cli_backend(settings, script), registry, loader.get_prompt("hello-world"), {})
    assert outcome == Failed(error="error_max_turns")


async def test_cli_backend_missing_binary(settings, loader, registry, tmp_path):
    backend = _cli_backend(settings, tmp_path / "does-not-exist")
    outcome, _ = await _run(backend, registry, loader.get_prompt("hello-world"), {})
    assert isinstance(outcome, Failed)
    assert outcome.error.startswith("could not start assistant CLI")


async def test_cli_mcp_config_carries_auth_headers(registry, tmp_path):
    await registry.mark_authorized("jira", {"access_token": "abc"})
    invocation = Invocation(
        prompt_name="release",
        messages=[{"role": "user", "content": "Cut a release"}],
        parameters={},
        identity=ANN,
        credentials=registry.resolve_credentials(["jira", "docs"]),
    )
    config = ClaudeCliBackend.build_mcp_config(invocation)

    assert config["mcpServers"]["jira"] == {
        "type": "sse",
        "url": "https://mcp.jira.example.com/v1/sse",
        "headers": {"Authorization": "Bearer abc"},
    }
    assert config["mcpServers"]["docs"]["headers"] == {"Authorization": "Bearer static-docs-token"}
    args = ClaudeCliBackend().build_args(tmp_path / "mcp.json")
    assert args[:2] == ["claude", "-p"]
    assert args[-2:] == ["--mcp-config", str(tmp_path / "mcp.json")]
