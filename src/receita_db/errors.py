"""Error hierarchy for the consolidation pipeline and the query layer.

Lookups that find nothing raise NotFoundError; infrastructure failures
raise ConnectivityError so a serving layer can tell the two apart.
"""

from typing import Optional


class ReceitaDBError(Exception):
    """Base exception for all receita-db failures."""


class ValidationError(ReceitaDBError):
    """Raised for rejected input (index names, metadata keys, CNPJs) before any mutation."""


class NotFoundError(ReceitaDBError):
    """Raised when a company or metadata key does not exist."""


class StorageCorruption(ReceitaDBError):
    """Raised when a staged value cannot be decoded. Fatal for the import."""

    def __init__(self, namespace: str, key: str, reason: str):
        self.namespace = namespace
        self.key = key
        self.reason = reason
        super().__init__(f"corrupt staged value at {namespace}/{key}: {reason}")


class ConnectivityError(ReceitaDBError):
    """Raised for pool exhaustion, connection failures and query timeouts."""

    def __init__(self, operation: str, target: Optional[str], cause: BaseException):
        self.operation = operation
        self.target = target
        self.cause = cause
        where = f" on {target}" if target else ""
        super().__init__(f"database unavailable during {operation}{where}: {cause}")


class PartialIndexFailure(ReceitaDBError):
    """Raised when a batch of extra indexes could not be created."""

    def __init__(self, names: list[str], cause: BaseException):
        self.names = names
        self.cause = cause
        super().__init__(f"could not create indexes {', '.join(names)}: {cause}")


class DatabaseError(ReceitaDBError):
    """Raised when PostgreSQL rejects a statement (missing table, bad value, constraint)."""

    def __init__(self, operation: str, target: Optional[str], cause: BaseException):
        self.operation = operation
        self.target = target
        self.cause = cause
        where = f" on {target}" if target else ""
        super().__init__(f"{operation} failed{where}: {cause}")
