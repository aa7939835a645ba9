"""Configuration management for the fleet manager.

Supports YAML-based configuration with an inline node inventory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..data.models import Node


@dataclass
class PoolConfig:
    """SSH connection pool settings (seconds)."""

    enabled: bool = True
    max_idle_time: int = 120
    keepalive_interval: int = 30
    keepalive_count_max: int = 3
    connect_timeout: int = 15
    max_retries: int = 2
    backoff_base: float = 0.5
    cleanup_interval: int = 30


@dataclass
class SyncConfig:
    """Configuration push settings."""

    batch_size: int = 5
    settle_seconds: float = 3.0
    command_timeout: int = 30
    auth_url: str = ""
    service_names: List[str] = field(default_factory=lambda: ["hysteria-server", "hysteria"])
    hysteria_binary: str = "/usr/local/bin/hysteria"
    log_tail_lines: int = 10
    interval: int = 0  # seconds between fleet syncs; 0 = on demand only


@dataclass
class TelemetryConfig:
    """Stats polling settings."""

    batch_size: int = 5
    traffic_timeout: int = 10
    online_timeout: int = 5
    poll_interval: int = 300
    health_interval: int = 60
    warmup_delay: int = 10


@dataclass
class RetentionConfig:
    """How long each snapshot series is kept."""

    fine_hours: int = 48
    hourly_days: int = 30
    daily_days: int = 365


@dataclass
class Config:
    """Main configuration container."""

    deployment_name: str = "nodefleet"
    panel_domain: str = ""

    pool: PoolConfig = field(default_factory=PoolConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)

    nodes: List[Node] = field(default_factory=list)
    users: List[Dict[str, Any]] = field(default_factory=list)

    # Data directory override
    data_dir: Optional[str] = None
    verbose: bool = False

    @property
    def auth_url(self) -> str:
        """Callback URL nodes use for HTTP authentication."""
        if self.sync.auth_url:
            return self.sync.auth_url
        if self.panel_domain:
            return f"https://{self.panel_domain}/api/auth"
        return ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        deployment = data.get("deployment", {})

        pool_data = data.get("pool", {})
        pool = PoolConfig(
            enabled=pool_data.get("enabled", True),
            max_idle_time=pool_data.get("max_idle_time", 120),
            keepalive_interval=pool_data.get("keepalive_interval", 30),
            keepalive_count_max=pool_data.get("keepalive_count_max", 3),
            connect_timeout=pool_data.get("connect_timeout", 15),
            max_retries=pool_data.get("max_retries", 2),
            backoff_base=pool_data.get("backoff_base", 0.5),
            cleanup_interval=pool_data.get("cleanup_interval", 30),
        )

        sync_data = data.get("sync", {})
        sync = SyncConfig(
            batch_size=sync_data.get("batch_size", 5),
            settle_seconds=sync_data.get("settle_seconds", 3.0),
            command_timeout=sync_data.get("command_timeout", 30),
            auth_url=sync_data.get("auth_url", ""),
            service_names=sync_data.get("service_names", SyncConfig().service_names),
            hysteria_binary=sync_data.get("hysteria_binary", "/usr/local/bin/hysteria"),
            log_tail_lines=sync_data.get("log_tail_lines", 10),
            interval=sync_data.get("interval", 0),
        )

        tel_data = data.get("telemetry", {})
        telemetry = TelemetryConfig(
            batch_size=tel_data.get("batch_size", 5),
            traffic_timeout=tel_data.get("traffic_timeout", 10),
            online_timeout=tel_data.get("online_timeout", 5),
            poll_interval=tel_data.get("poll_interval", 300),
            health_interval=tel_data.get("health_interval", 60),
            warmup_delay=tel_data.get("warmup_delay", 10),
        )

        ret_data = data.get("retention", {})
        retention = RetentionConfig(
            fine_hours=ret_data.get("fine_hours", 48),
            hourly_days=ret_data.get("hourly_days", 30),
            daily_days=ret_data.get("daily_days", 365),
        )

        nodes = [Node.from_dict(n) for n in data.get("nodes", []) or [] if isinstance(n, dict)]

        return cls(
            deployment_name=deployment.get("name", "nodefleet"),
            panel_domain=data.get("panel_domain", "") or "",
            pool=pool,
            sync=sync,
            telemetry=telemetry,
            retention=retention,
            nodes=nodes,
            users=[u for u in data.get("users", []) or [] if isinstance(u, dict)],
            data_dir=data.get("data_dir"),
            verbose=bool(data.get("verbose", False)),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load config from YAML file."""
        if not path.exists():
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "Config":
        """Load config from path or defaults.

        Checks in order:
        1. Provided path
        2. NODEFLEET_CONFIG env var
        3. ./configs/config.yaml
        4. ./config.yaml
        5. ~/.nodefleet/config.yaml
        6. Default config
        """
        paths_to_try = []

        if config_path:
            paths_to_try.append(Path(config_path))

        if env_path := os.environ.get("NODEFLEET_CONFIG"):
            paths_to_try.append(Path(env_path))

        paths_to_try.extend([
            Path("./configs/config.yaml"),
            Path("./config.yaml"),
            Path.home() / ".nodefleet" / "config.yaml",
        ])

        for path in paths_to_try:
            if path.exists():
                return cls.from_yaml(path)

        return cls()

    def get_node(self, node_id: str) -> Optional[Node]:
        """Get an inventory node by id."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary. Secrets are left out."""
        return {
            "deployment": {
                "name": self.deployment_name,
            },
            "panel_domain": self.panel_domain,
            "pool": {
                "enabled": self.pool.enabled,
                "max_idle_time": self.pool.max_idle_time,
                "keepalive_interval": self.pool.keepalive_interval,
                "keepalive_count_max": self.pool.keepalive_count_max,
                "connect_timeout": self.pool.connect_timeout,
                "max_retries": self.pool.max_retries,
            },
            "sync": {
                "batch_size": self.sync.batch_size,
                "settle_seconds": self.sync.settle_seconds,
                "command_timeout": self.sync.command_timeout,
                "auth_url": self.auth_url,
                "interval": self.sync.interval,
            },
            "telemetry": {
                "batch_size": self.telemetry.batch_size,
                "poll_interval": self.telemetry.poll_interval,
                "warmup_delay": self.telemetry.warmup_delay,
            },
            "retention": {
                "fine_hours": self.retention.fine_hours,
                "hourly_days": self.retention.hourly_days,
                "daily_days": self.retention.daily_days,
            },
            "nodes": [n.to_dict() for n in self.nodes],
        }
