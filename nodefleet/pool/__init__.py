"""SSH connection pool and remote shell sessions."""

from .pool import ConnectionPool, DirectShell, PooledShell, PoolMaintenanceWorker
from .session import SshSession, load_private_key

__all__ = [
    "ConnectionPool",
    "DirectShell",
    "PooledShell",
    "PoolMaintenanceWorker",
    "SshSession",
    "load_private_key",
]
