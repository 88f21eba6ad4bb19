"""Exceptions raised by the permission engine."""

from __future__ import annotations


class PermissionEngineError(Exception):
    """Base class for every error the engine raises."""


class DataSourceError(PermissionEngineError):
    """A query against the backing data store failed."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class DataSourceUnavailable(DataSourceError):
    """The relation a query needs does not exist (schema not provisioned).

    The resolver treats this as an empty result rather than a failure.
    """

    def __init__(
        self,
        message: str,
        *,
        relation: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message, operation=operation)
        self.relation = relation


class ResolutionTimeout(DataSourceError):
    """Resolving a user's permissions took longer than the allowed wait."""

    def __init__(self, user_id: str, timeout: float) -> None:
        super().__init__(
            f"Permission resolution for user {user_id!r} timed out after {timeout}s",
            operation="resolve",
        )
        self.user_id = user_id
        self.timeout = timeout
