"""Error taxonomy for node operations.

Every error carries the name of the node it concerns so that a failure can be
turned into a per-node status or ``last_error`` note at the operation
boundary.
"""

from typing import Optional


class FleetError(Exception):
    """Base class for errors raised while operating on a node."""

    def __init__(self, node_name: str, message: str, cause: Optional[Exception] = None):
        self.node_name = node_name
        self.detail = message
        self.cause = cause
        super().__init__(f"[{node_name}] {message}")


class NodeConnectionError(FleetError):
    """Transport or authentication failure on a remote shell session."""


class PoolDisabledError(NodeConnectionError):
    """Raised by the pool when pooling is switched off.

    Callers fall back to a single-use direct connection.
    """


class CommandTimeout(NodeConnectionError):
    """A remote command did not finish before its deadline."""


class ConfigValidationError(FleetError):
    """The pushed configuration was rejected."""


class ServiceError(FleetError):
    """The remote service did not reach the running state after a restart."""

    def __init__(
        self,
        node_name: str,
        message: str,
        log_tail: str = "",
        cause: Optional[Exception] = None,
    ):
        self.log_tail = log_tail
        super().__init__(node_name, message, cause)


class TelemetryError(FleetError):
    """The stats endpoint was unreachable or returned something unusable."""
