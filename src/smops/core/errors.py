"""Error taxonomy shared by the broker client, credential store and orchestrator.

Every error carries enough context (names, namespaces, offending fields,
HTTP status) to be rendered by the routing layer without further lookups.
None of them ever carries credential values.
"""

from __future__ import annotations

from typing import Iterable


class SMOpsError(RuntimeError):
    """Base class for all sm-ops errors."""


class TransportError(SMOpsError):
    """Raised when the broker could not be reached (DNS, connect, timeout)."""


class BrokerError(SMOpsError):
    """Raised when the broker answered with a failure status."""

    def __init__(self, status: int, message: str, code: str | None = None) -> None:
        super().__init__(f"broker responded {status}: {message}")
        self.status = status
        self.message = message
        self.code = code


class DecodeError(SMOpsError):
    """Raised when a broker response body could not be decoded."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ValidationError(SMOpsError):
    """Raised when a request fails local validation and is never sent."""

    def __init__(self, message: str, fields: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.fields = tuple(fields)


class NotFoundError(SMOpsError):
    """Raised when a named object does not exist."""

    def __init__(self, kind: str, name: str, namespace: str | None = None) -> None:
        where = f' in "{namespace}" namespace' if namespace else ""
        super().__init__(f'{kind} "{name}"{where} not found')
        self.kind = kind
        self.name = name
        self.namespace = namespace


class ConflictError(SMOpsError):
    """Raised when a secret target `(name, namespace)` is already occupied."""

    def __init__(
        self, name: str, namespace: str, binding_id: str | None = None
    ) -> None:
        super().__init__(f'secret "{name}" in "{namespace}" namespace already exists')
        self.name = name
        self.namespace = namespace
        self.binding_id = binding_id


class AuthError(SMOpsError):
    """Raised when a broker access token could not be obtained."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class MalformedSecretError(AuthError):
    """Raised when a credential secret lacks required keys."""

    def __init__(self, name: str, namespace: str, missing: Iterable[str]) -> None:
        self.missing = tuple(missing)
        super().__init__(
            f'secret "{name}" in "{namespace}" namespace is missing keys: '
            + ", ".join(self.missing)
        )
