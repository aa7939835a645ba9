"""nodefleet - remote proxy node management: config sync, pooled SSH, telemetry."""

__version__ = "1.0.0"
