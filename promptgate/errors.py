from typing import Dict, List, Optional


class NotFoundError(KeyError):
    """
    Unknown prompt, connection or execution.
    """

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(name)
        self.kind = kind
        self.name = name

    def __str__(self) -> str:
        return f"{self.kind} '{self.name}' not found"


class AuthorizationRequired(Exception):
    """
    The gate deferred a run because required connections are unavailable.
    """

    def __init__(
        self,
        prompt_name: str,
        missing: List[str],
        auth_urls: Dict[str, str],
        execution_id: Optional[str] = None,
    ) -> None:
        super().__init__(f"Prompt '{prompt_name}' is waiting for: {', '.join(missing)}")
        self.prompt_name = prompt_name
        self.missing = list(missing)
        self.auth_urls = dict(auth_urls)
        self.execution_id = execution_id


class AuthenticationRequired(Exception):
    """No valid session or access token on the request."""


class AuthorizationConflict(ValueError):
    """
    An authorization request that cannot be honoured: already authorized,
    misconfigured provider, or a malformed credential.
    """


class ParameterValidationError(ValueError):
    def __init__(self, errors: List[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)


class BackendFailure(Exception):
    """Raised by an execution backend when a run cannot complete."""

    TERMINATED = "backend terminated unexpectedly"

    def __init__(self, message: str = TERMINATED) -> None:
        super().__init__(message)
        self.message = message


class ExecutionStateError(ValueError):
    """An execution is not in a state that allows the requested operation."""
