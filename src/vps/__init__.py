"""
VPS layer for the deployment engine

Provides:
- Connection pool (ConnectionManager) — keyed, health-probed SSH sessions
- Command builder (commands.Command) — quoted POSIX one-liners
- Compute providers (HetznerProvider, OCIProvider, ManuallyRegisteredProvider)
- Provisioning pipeline (ProvisioningPipeline) — allocate, key, reach, runtime, record
- Rollback stack (RollbackStack) — LIFO compensation
- Terminal sessions (TerminalSessionFactory)
"""

from .commands import Command
from .ssh_pool import ConnectionManager, PooledConnection, CommandResult
from .models import VPSConfig
from .providers import (
    ComputeProvider, HetznerProvider, OCIProvider, ManuallyRegisteredProvider,
    InstanceRequest, Instance, PROVIDERS, resolve_provider,
)
from .rollback import RollbackStack, RollbackStep
from .provisioning import ProvisioningPipeline, ProvisionRequest, AccessKey
from .terminal import TerminalSessionFactory, TerminalSession

__all__ = [
    'Command',
    'ConnectionManager', 'PooledConnection', 'CommandResult',
    'VPSConfig',
    'ComputeProvider', 'HetznerProvider', 'OCIProvider',
    'ManuallyRegisteredProvider', 'InstanceRequest', 'Instance',
    'PROVIDERS', 'resolve_provider',
    'RollbackStack', 'RollbackStep',
    'ProvisioningPipeline', 'ProvisionRequest', 'AccessKey',
    'TerminalSessionFactory', 'TerminalSession',
]
