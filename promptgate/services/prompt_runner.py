import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from promptgate.errors import AuthorizationRequired, ExecutionStateError, NotFoundError
from . import gate
from .connection_registry import ConnectionRegistry
from .execution_adapter import CLIENT_DISCONNECTED, EventCallback, ExecutionAdapter, Failed, TerminalOutcome
from .ledger import PENDING, ExecutionLedger
from .prompt_templates import validate_parameters
from .registry_loader import PromptConfig, RegistryLoader
from .session_manager import Identity

logger = logging.getLogger(__name__)


@dataclass
class PreparedRun:
    """A run that passed the gate and has a running ledger record."""

    execution_id: str
    prompt: PromptConfig
    parameters: Dict[str, Any]
    identity: Identity


class PromptRunner:
    """
    Request-level flow: validate, gate, record, execute, record outcome.
    """

    def __init__(
        self,
        registry_loader: RegistryLoader,
        registry: ConnectionRegistry,
        adapter: ExecutionAdapter,
        ledger: ExecutionLedger,
    ) -> None:
        self.registry_loader = registry_loader
        self.registry = registry
        self.adapter = adapter
        self.ledger = ledger

    def get_prompt(self, name: str) -> PromptConfig:
        try:
            return self.registry_loader.get_prompt(name)
        except KeyError:
            raise NotFoundError("Prompt", name) from None

    def _deferred(self, prompt: PromptConfig, missing: List[str], execution_id: str) -> AuthorizationRequired:
        auth_urls = {name: self.registry.auth_url(name) for name in missing}
        return AuthorizationRequired(prompt.name, missing, auth_urls, execution_id=execution_id)

    async def describe(self, name: str) -> Dict[str, Any]:
        """
        Prompt descriptor with per-connection availability and ``canRun``.
        """
        prompt = self.get_prompt(name)
        decision = await gate.evaluate(prompt, self.registry)
        connections = []
        for conn_name in prompt.connections:
            try:
                kind = self.registry.kind_of(conn_name)
            except NotFoundError:
                kind = None
            connections.append(
                {
                    "name": conn_name,
                    "kind": kind,
                    "isAvailable": conn_name not in decision.missing,
                    "authUrl": self.registry.auth_url(conn_name),
                }
            )
        return {
            "name": prompt.name,
            "description": prompt.description,
            "parameters": prompt.parameters.model_dump(exclude_none=True),
            "messages": [m.model_dump() for m in prompt.messages],
            "canRun": decision.allowed,
            "connections": connections,
        }

    async def prepare(self, prompt_name: str, parameters: Dict[str, Any], identity: Identity) -> PreparedRun:
        """
        Gate a new run. Raises ParameterValidationError (nothing recorded)
        or AuthorizationRequired (a pending record is left behind).
        """
        prompt = self.get_prompt(prompt_name)
        params = validate_parameters(prompt, parameters)
        decision = await gate.evaluate(prompt, self.registry)
        if not decision.allowed:
            execution_id = self.ledger.record(prompt.name, identity.email, params, waiting_for=decision.missing)
            raise self._deferred(prompt, decision.missing, execution_id)

        execution_id = self.ledger.record(prompt.name, identity.email, params)
        return PreparedRun(execution_id=execution_id, prompt=prompt, parameters=params, identity=identity)

    async def retry(self, execution_id: str, identity: Identity) -> PreparedRun:
        """
        Re-gate a pending execution.

        When every connection is now available the pending record is
        replaced by a new running execution that points back at it through
        ``retry_of``. Otherwise its ``waitingFor`` is refreshed and
        AuthorizationRequired is raised again.
        """
        record = self.ledger.get(execution_id)
        if record.status != PENDING:
            raise ExecutionStateError(f"Execution '{execution_id}' is {record.status}, not pending")
        prompt = self.get_prompt(record.prompt_name)
        params = json.loads(record.parameters_json)

        decision = await gate.evaluate(prompt, self.registry)
        if not decision.allowed:
            self.ledger.mark_deferred(execution_id, decision.missing)
            raise self._deferred(prompt, decision.missing, execution_id)

        # a concurrent retry may have claimed it while the gate was awaited
        self.ledger.retire_pending(execution_id)
        new_id = self.ledger.record(prompt.name, identity.email, params, retry_of=execution_id)
        logger.info("Pending execution %s of %s resumed as %s", execution_id, prompt.name, new_id)
        return PreparedRun(execution_id=new_id, prompt=prompt, parameters=params, identity=identity)

    def abandon(self, run: PreparedRun) -> None:
        """Record a run whose stream ended before it could finish."""
        self.ledger.mark_terminal(run.execution_id, Failed(error=CLIENT_DISCONNECTED))

    async def execute(self, run: PreparedRun, on_event: EventCallback) -> TerminalOutcome:
        """
        Stream a prepared run and record its outcome. A cancelled run is
        recorded as failed with "client disconnected" before cancellation
        propagates.
        """
        try:
            outcome = await self.adapter.execute_stream(
                run.prompt,
                run.parameters,
                run.identity,
                on_event,
                execution_id=run.execution_id,
            )
        except asyncio.CancelledError:
            self.ledger.mark_terminal(run.execution_id, Failed(error=CLIENT_DISCONNECTED))
            raise
        self.ledger.mark_terminal(run.execution_id, outcome)
        return outcome
