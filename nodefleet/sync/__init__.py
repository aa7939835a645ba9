"""Configuration push, validation and provisioning for nodes."""

from .orchestrator import SyncOrchestrator
from .remote import HysteriaControl, parse_port_range, parse_system_stats
from .render import check_custom_config, render_node_config

__all__ = [
    "SyncOrchestrator",
    "HysteriaControl",
    "parse_port_range",
    "parse_system_stats",
    "check_custom_config",
    "render_node_config",
]
