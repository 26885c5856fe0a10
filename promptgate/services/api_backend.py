import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from promptgate.config import Settings
from promptgate.errors import BackendFailure
from promptgate.utils.sse import iter_sse_events
from .execution_adapter import (
    CanonicalEvent,
    ExecutionBackend,
    Invocation,
    Output,
    StreamTranslator,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
MCP_CLIENT_BETA = "mcp-client-2025-04-04"


class ApiStreamTranslator(StreamTranslator):
    """
    Messages API stream deltas -> canonical events.
    """

    def translate(self, native: Dict[str, Any]) -> Optional[CanonicalEvent]:
        kind = native.get("type")

        if kind == "content_block_delta":
            delta = native.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return Output(text=delta["text"])
            return None

        if kind == "content_block_start":
            block = native.get("content_block") or {}
            block_type = block.get("type")
            if block_type in ("mcp_tool_use", "tool_use"):
                return self.tool_use(block.get("id"), block["name"], block.get("input"))
            if block_type in ("mcp_tool_result", "tool_result"):
                return self.tool_result(block.get("tool_use_id"), block.get("content"))
            if block_type == "text" and block.get("text"):
                return Output(text=block["text"])
            return None

        if kind == "mcp_tool_use":
            return self.tool_use(native.get("id"), native["name"], native.get("input"))
        if kind == "mcp_tool_result":
            return self.tool_result(native.get("tool_use_id"), native.get("content"))

        # message_start, message_delta, message_stop, ping, ...
        return None


class AnthropicApiBackend(ExecutionBackend):
    """
    Runs prompts through the Messages API with streaming enabled.

    MCP servers required by the prompt are attached to the request with
    their authorization token, so the API talks to them on our behalf.
    """

    name = "api"

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client
        self.model = "claude-3-5-sonnet-20241022"
        self.max_tokens = 4096

    def configure(self, settings: Settings) -> None:
        if not settings.anthropic_api_key and self._client is None:
            raise ValueError("ANTHROPIC_API_KEY is required for the api execution backend")
        self.model = settings.anthropic_model
        self.max_tokens = settings.max_tokens
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=settings.anthropic_base_url,
                headers={
                    "x-api-key": settings.anthropic_api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                },
                # Reads may legitimately stall while tools run
                timeout=httpx.Timeout(settings.backend_timeout, read=settings.execution_timeout),
            )

    async def dispose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def new_translator(self) -> StreamTranslator:
        return ApiStreamTranslator()

    def build_request(self, invocation: Invocation) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": invocation.messages,
            "stream": True,
        }
        system = invocation.system_prompt()
        if system:
            body["system"] = system

        servers: List[Dict[str, Any]] = []
        for server in invocation.credentials.mcp_servers:
            entry: Dict[str, Any] = {"type": "url", "url": server.url, "name": server.name}
            token = invocation.credentials.token_for(server.name)
            if token:
                entry["authorization_token"] = token
            servers.append(entry)
        if servers:
            body["mcp_servers"] = servers
        return body

    async def stream(self, invocation: Invocation) -> AsyncIterator[Dict[str, Any]]:
        if self._client is None:
            raise BackendFailure("api backend is not configured")

        body = self.build_request(invocation)
        headers = {"anthropic-beta": MCP_CLIENT_BETA} if "mcp_servers" in body else {}
        finished = False
        try:
            async with self._client.stream("POST", "/v1/messages", json=body, headers=headers) as resp:
                if resp.status_code >= 400:
                    detail = (await resp.aread()).decode(errors="replace")[:500]
                    raise BackendFailure(f"backend returned HTTP {resp.status_code}: {detail}")

                async for event, data in iter_sse_events(resp.aiter_lines()):
                    try:
                        native = json.loads(data)
                    except ValueError:
                        logger.warning("Dropping non-JSON %s event from Messages API", event)
                        continue
                    if not isinstance(native, dict):
                        continue
                    native.setdefault("type", event)

                    if native["type"] == "error":
                        error = native.get("error") or {}
                        raise BackendFailure(error.get("message") or "backend reported an error")
                    yield native
                    if native["type"] == "message_stop":
                        finished = True
                        break
        except httpx.HTTPError as e:
            logger.warning("Messages API stream for %s broke: %s", invocation.prompt_name, e)
            raise BackendFailure() from e

        if not finished:
            raise BackendFailure()
