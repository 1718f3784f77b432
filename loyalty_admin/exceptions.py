"""
Exceptions raised by the data service and the admin layer.
"""

from typing import Optional


class DataServiceError(Exception):
    """A table query, mutation or procedure call failed."""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        procedure: Optional[str] = None,
    ):
        self.message = message
        self.table = table
        self.procedure = procedure
        super().__init__(message)


class ProcedureError(DataServiceError):
    """A stored procedure rejected its input (business rule violation)."""


class AdminActionError(Exception):
    """An administrative mutation (create, delete, reset, adjust) failed."""

    def __init__(self, message: str, action: str):
        self.message = message
        self.action = action
        super().__init__(message)
