"""Error taxonomy shared by every layer of the engine."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class OrchestrationError(Exception):
    """Base error. ``context`` carries whatever the caller needs to build
    a human-readable status message."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        return self.message


class ConnectivityError(OrchestrationError):
    """Remote shell or provider/store API unreachable."""


class NotFoundError(OrchestrationError):
    """Record or secret missing."""


class ValidationError(OrchestrationError):
    """Malformed input or an illegal state transition. Never retried."""


class StoreError(OrchestrationError):
    """Remote store rejected a request (4xx other than 404)."""

    def __init__(self, message: str, status_code: Optional[int] = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.status_code = status_code


class BusyError(OrchestrationError):
    """Another operation already holds the entity."""


class PartialFailure(OrchestrationError):
    """A pipeline step failed after earlier steps succeeded."""

    def __init__(
        self,
        message: str,
        step: str = "",
        rolled_back: Optional[List[str]] = None,
        **context: Any,
    ) -> None:
        super().__init__(message, **context)
        self.step = step
        self.rolled_back: List[str] = list(rolled_back or [])


class BestEffortCleanupFailure(OrchestrationError):
    """A delete-path step failed. Collected and reported, never raised
    out of the orchestrator."""

    def __init__(self, message: str, step: str = "", resource: str = "", **context: Any) -> None:
        super().__init__(message, **context)
        self.step = step
        self.resource = resource

    def to_dict(self) -> Dict[str, Any]:
        return {"step": self.step, "resource": self.resource, "error": self.message}


class DeadlineExceeded(OrchestrationError):
    """The caller's deadline passed between pipeline steps."""
