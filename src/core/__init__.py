"""
Shared plumbing for the deployment engine: error taxonomy, config, logging.
"""

from .errors import (
    OrchestrationError, ConnectivityError, NotFoundError, ValidationError,
    PartialFailure, BestEffortCleanupFailure, BusyError, StoreError,
    DeadlineExceeded,
)
from .config import EngineConfig, load_config

__all__ = [
    'OrchestrationError', 'ConnectivityError', 'NotFoundError',
    'ValidationError', 'PartialFailure', 'BestEffortCleanupFailure',
    'BusyError', 'StoreError', 'DeadlineExceeded',
    'EngineConfig', 'load_config',
]
