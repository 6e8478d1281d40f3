"""Application lifecycle orchestration."""

from .models import ALLOWED_TRANSITIONS, AppStatus, Application, DeleteReport, check_transition
from .orchestrator import AuditEntry, Orchestrator

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AppStatus",
    "Application",
    "DeleteReport",
    "check_transition",
    "AuditEntry",
    "Orchestrator",
]
