from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, ClassVar, Dict, List, Optional, Union

from promptgate.config import Settings
from promptgate.errors import BackendFailure
from .connection_registry import ConnectionRegistry, ResolvedCredentials
from .prompt_templates import render_messages
from .registry_loader import PromptConfig
from .session_manager import Identity

logger = logging.getLogger(__name__)

CLIENT_DISCONNECTED = "client disconnected"


# ---------- Canonical events ----------


class CanonicalEvent:
    kind: ClassVar[str] = ""

    def payload(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class Start(CanonicalEvent):
    prompt_name: str
    kind: ClassVar[str] = "start"

    def payload(self) -> Dict[str, Any]:
        return {"promptName": self.prompt_name}


@dataclass(frozen=True)
class Output(CanonicalEvent):
    text: str
    kind: ClassVar[str] = "output"

    def payload(self) -> Dict[str, Any]:
        return {"text": self.text}


@dataclass(frozen=True)
class ToolUse(CanonicalEvent):
    name: str
    input: Any = None
    kind: ClassVar[str] = "tool_use"

    def payload(self) -> Dict[str, Any]:
        return {"name": self.name, "input": self.input}


@dataclass(frozen=True)
class ToolResult(CanonicalEvent):
    name: str
    output: Any = None
    kind: ClassVar[str] = "tool_result"

    def payload(self) -> Dict[str, Any]:
        return {"name": self.name, "output": self.output}


@dataclass(frozen=True)
class Complete(CanonicalEvent):
    success: bool
    kind: ClassVar[str] = "complete"

    def payload(self) -> Dict[str, Any]:
        return {"success": self.success}


@dataclass(frozen=True)
class Error(CanonicalEvent):
    message: str
    kind: ClassVar[str] = "error"

    def payload(self) -> Dict[str, Any]:
        return {"message": self.message}


EventCallback = Callable[[CanonicalEvent], None]


# ---------- Terminal outcomes ----------


@dataclass(frozen=True)
class Completed:
    output: str
    tool_uses: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class Failed:
    error: str


TerminalOutcome = Union[Completed, Failed]


class EventSink:
    """
    Bridges the adapter's callback to an async iterator.

    ``emit`` is handed to the adapter as ``on_event``; a consumer iterates
    the sink until ``close`` is called.
    """

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def emit(self, event: CanonicalEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    async def get(self) -> Optional[CanonicalEvent]:
        """Next event, or None once the sink is closed. Safe to cancel."""
        item = await self._queue.get()
        if item is self._CLOSED:
            # keep the marker for any later reader
            self._queue.put_nowait(item)
            return None
        return item

    async def __aiter__(self) -> AsyncIterator[CanonicalEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


# ---------- Backend contract ----------


@dataclass
class Invocation:
    prompt_name: str
    messages: List[Dict[str, str]]
    parameters: Dict[str, Any]
    identity: Identity
    credentials: ResolvedCredentials
    execution_id: Optional[str] = None

    def system_prompt(self) -> Optional[str]:
        if not self.credentials.mcp_servers:
            return None
        names = ", ".join(s.name for s in self.credentials.mcp_servers)
        return (
            f"You have access to the following MCP services: {names}. "
            "Use these tools to help the user accomplish their goals."
        )


class StreamTranslator:
    """
    Maps one backend's native events to canonical events for a single run.

    Instances carry per-run state (tool-use ids to tool names), so every
    run gets a fresh translator.
    """

    def __init__(self) -> None:
        self.tool_names: Dict[str, str] = {}

    def translate(self, native: Dict[str, Any]) -> Optional[CanonicalEvent]:
        raise NotImplementedError

    def tool_use(self, tool_id: Optional[str], name: str, tool_input: Any) -> ToolUse:
        if tool_id:
            self.tool_names[tool_id] = name
        return ToolUse(name=name, input=tool_input)

    def tool_result(self, tool_id: Optional[str], output: Any) -> ToolResult:
        return ToolResult(name=self.tool_names.get(tool_id or "", "unknown"), output=output)


class ExecutionBackend(ABC):
    """
    One way of running a prompt against the assistant.

    ``stream`` yields native events and must raise BackendFailure when the
    run fails, including when the native stream ends without its own
    end-of-run marker. Closing the generator must stop the underlying work.
    """

    name: ClassVar[str] = "base"

    def configure(self, settings: Settings) -> None:
        """Called once at startup."""

    async def dispose(self) -> None:
        """Release process-wide resources."""

    @abstractmethod
    def stream(self, invocation: Invocation) -> AsyncIterator[Dict[str, Any]]:
        ...

    @abstractmethod
    def new_translator(self) -> StreamTranslator:
        ...


def create_backend(settings: Settings) -> ExecutionBackend:
    """
    Pick the execution backend named by ``settings.execution_backend``.
    """
    from .api_backend import AnthropicApiBackend
    from .cli_backend import ClaudeCliBackend

    backends = {
        AnthropicApiBackend.name: AnthropicApiBackend,
        ClaudeCliBackend.name: ClaudeCliBackend,
    }
    kind = (settings.execution_backend or "").lower()
    if kind not in backends:
        raise ValueError(f"Unknown execution backend '{settings.execution_backend}'")
    backend = backends[kind]()
    backend.configure(settings)
    logger.info("Using %s execution backend", kind)
    return backend


# ---------- Adapter ----------


class ExecutionAdapter:
    """
    Runs a prompt on the configured backend and reports canonical events.
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        registry: ConnectionRegistry,
        timeout: Optional[float] = None,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.timeout = timeout

    async def execute_stream(
        self,
        prompt: PromptConfig,
        parameters: Dict[str, Any],
        identity: Identity,
        on_event: EventCallback,
        execution_id: Optional[str] = None,
    ) -> TerminalOutcome:
        """
        Stream one run. ``Start`` comes first and ``Complete`` last; a failed
        run sends ``Error`` just before ``Complete(success=False)``.

        Cancellation stops the backend, reports the disconnect to
        ``on_event`` and propagates.
        """
        on_event(Start(prompt_name=prompt.name))
        parts: List[str] = []
        tool_uses: List[Dict[str, Any]] = []

        try:
            credentials = self.registry.resolve_credentials(prompt.connections)
            invocation = Invocation(
                prompt_name=prompt.name,
                messages=render_messages(prompt, parameters),
                parameters=parameters,
                identity=identity,
                credentials=credentials,
                execution_id=execution_id,
            )
            pump = self._pump(invocation, on_event, parts, tool_uses)
            if self.timeout:
                await asyncio.wait_for(pump, timeout=self.timeout)
            else:
                await pump
        except asyncio.CancelledError:
            logger.info("Execution %s of %s cancelled", execution_id, prompt.name)
            self._finish(on_event, Failed(error=CLIENT_DISCONNECTED))
            raise
        except asyncio.TimeoutError:
            logger.warning("Execution %s of %s timed out after %ss", execution_id, prompt.name, self.timeout)
            return self._finish(on_event, Failed(error=BackendFailure.TERMINATED))
        except BackendFailure as e:
            logger.warning("Execution %s of %s failed: %s", execution_id, prompt.name, e.message)
            return self._finish(on_event, Failed(error=e.message))
        except ValueError as e:
            logger.warning("Execution %s of %s could not start: %s", execution_id, prompt.name, e)
            return self._finish(on_event, Failed(error=str(e)))
        except Exception:
            logger.exception("Backend crashed during execution %s of %s", execution_id, prompt.name)
            return self._finish(on_event, Failed(error=BackendFailure.TERMINATED))

        return self._finish(on_event, Completed(output="".join(parts), tool_uses=tool_uses))

    async def _pump(
        self,
        invocation: Invocation,
        on_event: EventCallback,
        parts: List[str],
        tool_uses: List[Dict[str, Any]],
    ) -> None:
        translator = self.backend.new_translator()
        async with aclosing(self.backend.stream(invocation)) as native_events:
            async for native in native_events:
                try:
                    event = translator.translate(native)
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    logger.warning("Dropping untranslatable %s event: %s", native.get("type"), e)
                    continue
                if event is None:
                    continue
                if isinstance(event, Output):
                    parts.append(event.text)
                elif isinstance(event, ToolUse):
                    tool_uses.append({"name": event.name, "input": event.input})
                on_event(event)

    @staticmethod
    def _finish(on_event: EventCallback, outcome: TerminalOutcome) -> TerminalOutcome:
        if isinstance(outcome, Failed):
            on_event(Error(message=outcome.error))
        on_event(Complete(success=isinstance(outcome, Completed)))
        return outcome
