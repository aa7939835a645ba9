"""Hysteria 2 server configuration rendering and custom-config checks."""

from __future__ import annotations

from typing import Any, Dict, List

import yaml

from ..data.models import Node

# Custom configs at or below this length are treated as empty
MIN_CUSTOM_CONFIG_LENGTH = 50


def render_node_config(node: Node, auth_url: str) -> str:
    """Generate the YAML server config from the node's parameters.

    A node with a domain gets an ACME block; otherwise static TLS files are
    referenced. The traffic stats endpoint is enabled when the node has a
    stats port and secret.
    """
    config: Dict[str, Any] = {
        "listen": f":{node.port}",
        "sniff": {
            "enable": True,
            "timeout": "2s",
            "rewriteDomain": False,
            "tcpPorts": "80,443,8000-9000",
            "udpPorts": "443,80,53",
        },
        "quic": {
            "initStreamReceiveWindow": 8388608,
            "maxStreamReceiveWindow": 8388608,
            "initConnReceiveWindow": 20971520,
            "maxConnReceiveWindow": 20971520,
            "maxIdleTimeout": "60s",
            "maxIncomingStreams": 256,
            "disablePathMTUDiscovery": False,
        },
        "auth": {
            "type": "http",
            "http": {
                "url": auth_url,
                "insecure": False,
            },
        },
        "ignoreClientBandwidth": False,
        "masquerade": {
            "type": "proxy",
            "proxy": {
                "url": "https://www.google.com",
                "rewriteHost": True,
            },
        },
        "acl": {
            "inline": [
                "reject(geoip:cn)",
                "reject(geoip:private)",
            ],
        },
    }

    if node.domain:
        config["acme"] = {
            "domains": [node.domain],
            "email": f"acme@{node.domain}",
            "ca": "letsencrypt",
            "listenHost": "0.0.0.0",
        }
    else:
        config["tls"] = {
            "cert": node.paths.cert,
            "key": node.paths.key,
        }

    if node.has_stats_endpoint:
        config["trafficStats"] = {
            "listen": f":{node.stats_port}",
            "secret": node.stats_secret,
        }

    return yaml.safe_dump(config, sort_keys=False, default_flow_style=False)


def is_trivial_custom_config(text: str) -> bool:
    return len((text or "").strip()) <= MIN_CUSTOM_CONFIG_LENGTH


def check_custom_config(text: str) -> List[str]:
    """Structural checks for a hand-written config.

    Returns a list of problems; empty means the config is usable.
    """
    text = (text or "").strip()
    problems = []
    if "listen:" not in text:
        problems.append("missing listen:")
    if "acme:" not in text and "tls:" not in text:
        problems.append("missing acme: or tls:")
    return problems
