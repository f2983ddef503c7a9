"""
Orchestrator Errors

Error kinds raised by the orchestration core. The admin API maps each kind
to an HTTP status code.
"""

from typing import List, Optional


class OrchestratorError(Exception):
    """Base class for all orchestration errors"""


class ValidationError(OrchestratorError):
    """
    Raised when task or agent fields fail their constraints.

    Carries every violated rule, not just the first one.
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid request: " + ", ".join(self.errors))


class InvalidTransitionError(ValidationError):
    """Raised when a record is asked to make a state change it does not allow"""

    def __init__(self, message: str):
        super().__init__([message])


class NotFoundError(OrchestratorError):
    """Raised when a task, agent or session id is unknown to the store"""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind.capitalize()} not found: {record_id}")


class GatewayError(OrchestratorError):
    """Raised for execution gateway transport or remote failures"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class StoreError(OrchestratorError):
    """Raised when the persistence layer fails"""
