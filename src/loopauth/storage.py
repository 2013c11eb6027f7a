"""Credential storage seam used to persist tokens between runs."""

from __future__ import annotations

from typing import Protocol


class CredentialStore(Protocol):
    """Key-value store for persisted credentials.

    Implementations decide where tokens live (OS keychain, encrypted file,
    ...); this package only reads and writes string values by key.
    """

    def set(self, key: str, value: str) -> None: ...

    def get(self, key: str) -> str | None: ...

    def delete(self, key: str) -> None: ...

    def list_all(self) -> dict[str, str]: ...


class InMemoryCredentialStore:
    """Process-local credential store, mainly for tests and short sessions."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._values: dict[str, str] = dict(initial or {})

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def list_all(self) -> dict[str, str]:
        return dict(self._values)
