"""
Credential vault: AES-GCM secret codec, encrypted storage in the remote
store, and ordered live-retrieval fallback chains.
"""

from .vault import CredentialVault, SecretProbe, CachedSecret, generate_password
from .probes import probes_for

__all__ = [
    'CredentialVault', 'SecretProbe', 'CachedSecret', 'generate_password',
    'probes_for',
]
