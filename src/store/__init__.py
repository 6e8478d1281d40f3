"""
Remote store access: typed KV client, fetch-many, TTL memo-cache and
memoized upstream version lookups.
"""

from .client import RemoteStoreClient, FetchResult, SECRET_SUFFIX
from .memo import TTLMemoCache
from .versions import (
    VersionService, GitHubReleaseSource, HelmRepositorySource, StaticVersionSource,
)

__all__ = [
    'RemoteStoreClient', 'FetchResult', 'SECRET_SUFFIX',
    'TTLMemoCache',
    'VersionService', 'GitHubReleaseSource', 'HelmRepositorySource',
    'StaticVersionSource',
]
