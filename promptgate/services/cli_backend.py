import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional
from uuid import uuid4

from promptgate.config import Settings
from promptgate.errors import BackendFailure
from .execution_adapter import (
    CanonicalEvent,
    ExecutionBackend,
    Invocation,
    Output,
    StreamTranslator,
)

logger = logging.getLogger(__name__)

# stream-json lines carry whole messages and tool results
STDOUT_LIMIT = 16 * 1024 * 1024
TERMINATE_GRACE_SECONDS = 5.0


def split_blocks(record: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    """
    Split a multi-block assistant/user message into one record per block,
    so each record maps to at most one canonical event.
    """
    message = record.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if record.get("type") in ("assistant", "user") and isinstance(content, list) and len(content) > 1:
        for block in content:
            yield {**record, "message": {**message, "content": [block]}}
    else:
        yield record


class CliStreamTranslator(StreamTranslator):
    """
    Assistant CLI ``stream-json`` records -> canonical events.
    """

    def translate(self, native: Dict[str, Any]) -> Optional[CanonicalEvent]:
        kind = native.get("type")

        if kind in ("assistant", "user"):
            message = native.get("message") or {}
            content = message.get("content")
            if isinstance(content, str):
                return Output(text=content) if kind == "assistant" and content else None
            if not content:
                return None
            block = content[0]
            block_type = block.get("type")
            if block_type == "text" and kind == "assistant" and block.get("text"):
                return Output(text=block["text"])
            if block_type == "tool_use":
                return self.tool_use(block.get("id"), block["name"], block.get("input"))
            if block_type == "tool_result":
                return self.tool_result(block.get("tool_use_id"), block.get("content"))
            return None

        if kind in ("content", "text"):
            text = native.get("content") or native.get("text")
            return Output(text=text) if isinstance(text, str) and text else None

        if kind == "tool_use":
            name = native.get("name") or native["tool"]
            return self.tool_use(native.get("id"), name, native.get("input") or native.get("arguments"))
        if kind == "tool_result":
            return self.tool_result(native.get("tool_use_id"), native.get("content") or native.get("result"))

        # system, result and anything newer
        return None


class ClaudeCliBackend(ExecutionBackend):
    """
    Runs prompts through the assistant CLI in print mode.

    The prompt goes in on stdin; stdout carries one JSON record per line.
    Credentials reach the process through its environment and through a
    per-run MCP config file carrying each server's auth headers.
    """

    name = "cli"

    def __init__(self) -> None:
        self.cli_path = "claude"
        self.max_turns = 10
        self.working_dir = Path(tempfile.gettempdir()) / "promptgate"

    def configure(self, settings: Settings) -> None:
        self.cli_path = settings.claude_cli_path
        self.max_turns = settings.claude_max_turns
        if settings.working_dir:
            self.working_dir = Path(settings.working_dir).resolve()

    def new_translator(self) -> StreamTranslator:
        return CliStreamTranslator()

    def build_args(self, mcp_config_path: Path) -> List[str]:
        return [
            self.cli_path,
            "-p",
            "--output-format", "stream-json",
            "--verbose",
            "--max-turns", str(self.max_turns),
            "--dangerously-skip-permissions",
            "--mcp-config", str(mcp_config_path),
        ]

    @staticmethod
    def build_prompt(invocation: Invocation) -> str:
        parts = []
        system = invocation.system_prompt()
        if system:
            parts.append(f"System: {system}")
        for message in invocation.messages:
            parts.append(f"{message['role']}: {message['content']}")
        return "\n\n".join(parts)

    @staticmethod
    def build_mcp_config(invocation: Invocation) -> Dict[str, Any]:
        servers: Dict[str, Any] = {}
        for server in invocation.credentials.mcp_servers:
            entry: Dict[str, Any] = {"type": server.transport, "url": server.url}
            headers = invocation.credentials.headers.get(server.name)
            if headers:
                entry["headers"] = headers
            servers[server.name] = entry
        return {"mcpServers": servers}

    def _write_config(self, invocation: Invocation) -> Path:
        self.working_dir.mkdir(parents=True, exist_ok=True)
        path = self.working_dir / f"mcp-config-{uuid4().hex}.json"
        path.write_text(json.dumps(self.build_mcp_config(invocation)))
        path.chmod(0o600)
        return path

    async def stream(self, invocation: Invocation) -> AsyncIterator[Dict[str, Any]]:
        config_path = await asyncio.to_thread(self._write_config, invocation)
        env = {**os.environ, **invocation.credentials.env}
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_args(config_path),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.working_dir),
                env=env,
                limit=STDOUT_LIMIT,
            )
        except OSError as e:
            config_path.unlink(missing_ok=True)
            raise BackendFailure(f"could not start assistant CLI: {e}") from e

        logger.info("Started assistant CLI for %s (pid=%s)", invocation.prompt_name, proc.pid)
        stderr_task = asyncio.create_task(self._drain_stderr(proc, invocation.prompt_name))
        finished = False
        try:
            try:
                proc.stdin.write(self.build_prompt(invocation).encode())
                await proc.stdin.drain()
                proc.stdin.close()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise BackendFailure() from e

            async for raw in proc.stdout:
                line = raw.decode(errors="replace").strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except ValueError:
                    logger.warning("Dropping non-JSON line from assistant CLI: %.200s", line)
                    continue
                if not isinstance(record, dict):
                    continue

                kind = record.get("type")
                if kind == "error":
                    raise BackendFailure(str(record.get("message") or record.get("error") or "assistant CLI error"))
                if kind == "result":
                    if record.get("is_error"):
                        raise BackendFailure(str(record.get("result") or record.get("subtype") or "assistant CLI error"))
                    finished = True
                for native in split_blocks(record):
                    yield native

            returncode = await proc.wait()
            logger.info("Assistant CLI for %s exited with %s", invocation.prompt_name, returncode)
            if not finished:
                raise BackendFailure()
        finally:
            await self._terminate(proc)
            stderr_task.cancel()
            config_path.unlink(missing_ok=True)

    @staticmethod
    async def _drain_stderr(proc: asyncio.subprocess.Process, prompt_name: str) -> None:
        async for raw in proc.stderr:
            line = raw.decode(errors="replace").rstrip()
            if line:
                logger.info("assistant CLI [%s] stderr: %s", prompt_name, line)

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Assistant CLI pid=%s ignored SIGTERM, killing", proc.pid)
                proc.kill()
                await proc.wait()
        except ProcessLookupError:
            pass
