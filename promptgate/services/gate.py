import logging
from dataclasses import dataclass, field
from typing import List

from promptgate.errors import NotFoundError
from .connection_registry import ConnectionRegistry
from .registry_loader import PromptConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    """
    Outcome of gating a prompt. ``missing`` is empty exactly when the run
    is allowed and otherwise lists every unavailable connection in the
    prompt's declared order.
    """

    missing: List[str] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return not self.missing


ALLOW = Decision()


async def evaluate(prompt: PromptConfig, registry: ConnectionRegistry) -> Decision:
    """
    Check every connection the prompt requires against the registry.

    Always evaluated fresh; nothing is cached between requests because a
    user may finish authorizing in another tab at any time.
    """
    missing: List[str] = []
    for name in prompt.connections:
        try:
            available = await registry.check_availability(name)
        except NotFoundError:
            logger.warning("Prompt %s requires undeclared connection %s", prompt.name, name)
            available = False
        if not available:
            missing.append(name)

    if missing:
        logger.info("Deferring prompt %s, waiting for %s", prompt.name, missing)
        return Decision(missing=missing)
    return ALLOW
