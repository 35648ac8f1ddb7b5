"""
bmcsecretsync -- BMC credential synchronization engine.

Keeps BMC login credentials declared in a registry synchronized into
one or more Vault-compatible KV secret engines. Paths are templated
per device, routing is label driven, and cleanup on deletion is
gated by a finalizer.
"""

import os

__version__ = "0.1.0"

SYNC_HOME = os.environ.get("BMCSECRETSYNC_HOME", "~/.bmcsecretsync")
