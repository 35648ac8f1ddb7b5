"""
Secret backends -- where synced credentials are stored.

A SecretStore is the CRUD contract; VaultSecretStore implements it over
a Vault KV mount. The BackendCache builds one store per destination
(the default mount plus one per configured engine), wraps them for
metrics, and hands out a single immutable snapshot at a time.
"""

from .base import OperationContext, SecretStore
from .cache import BackendCache, CachedState
from .pathbuilder import PathTemplateBuilder, PathVariables
from .routing import EngineRoute, EngineRouter, LabelSelector
from .vault import VaultSecretStore

__all__ = [
    "BackendCache",
    "CachedState",
    "EngineRoute",
    "EngineRouter",
    "LabelSelector",
    "OperationContext",
    "PathTemplateBuilder",
    "PathVariables",
    "SecretStore",
    "VaultSecretStore",
]
