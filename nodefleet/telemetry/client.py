"""HTTP client for the per-node traffic stats endpoint.

Each node runs Hysteria's ``trafficStats`` API, authenticated with the node's
shared secret in the ``Authorization`` header:

- ``GET /traffic?clear=true``: per-user ``{"tx": n, "rx": n}`` since the last
  clear
- ``GET /online``: ``{user_id: connection_count}``
- ``POST /kick``: JSON list of user ids to disconnect
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .. import __version__
from ..data.models import Node, OnlineSession
from ..errors import TelemetryError


class StatsClient:
    """Thin wrapper around a shared requests session.

    Args:
        traffic_timeout: Timeout for traffic reads (seconds)
        online_timeout: Timeout for online and kick calls (seconds)
        retries: Retry count for idempotent requests
    """

    def __init__(
        self,
        traffic_timeout: float = 10,
        online_timeout: float = 5,
        retries: int = 1,
    ):
        self.traffic_timeout = traffic_timeout
        self.online_timeout = online_timeout
        self.retries = retries
        self._session: Optional[requests.Session] = None

    def _get_session(self) -> requests.Session:
        """Get or create a requests session with retry configuration.

        Reuses the session for connection pooling efficiency.
        """
        if self._session is None:
            session = requests.Session()
            # Connect errors only: a replayed /traffic?clear=true drops counters
            retry = Retry(
                total=self.retries,
                connect=self.retries,
                read=0,
                status=0,
                backoff_factor=0.5,
                allowed_methods=("GET",),
            )
            adapter = HTTPAdapter(
                max_retries=retry,
                pool_connections=5,
                pool_maxsize=10,
            )
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            session.headers.update({"User-Agent": f"nodefleet/{__version__}"})
            self._session = session
        return self._session

    def close(self) -> None:
        """Close the session and release resources."""
        if self._session is not None:
            self._session.close()
            self._session = None

    def _request(
        self,
        node: Node,
        method: str,
        path: str,
        timeout: float,
        params: Optional[Dict[str, str]] = None,
        payload: Any = None,
    ) -> Any:
        if not node.has_stats_endpoint:
            raise TelemetryError(node.name, "Stats API not configured")
        url = f"{node.stats_base_url}{path}"
        try:
            resp = self._get_session().request(
                method,
                url,
                params=params,
                json=payload,
                headers={"Authorization": node.stats_secret},
                timeout=timeout,
            )
            resp.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise TelemetryError(node.name, str(exc), exc)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise TelemetryError(node.name, f"invalid JSON from {path}", exc)

    def fetch_traffic(self, node: Node, clear: bool = True) -> Dict[str, Dict[str, int]]:
        """Per-user traffic since the previous clear.

        Returns:
            ``{user_id: {"tx": bytes, "rx": bytes}}``
        """
        params = {"clear": "true"} if clear else None
        data = self._request(node, "GET", "/traffic", self.traffic_timeout, params=params)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise TelemetryError(node.name, "unexpected /traffic payload")

        traffic: Dict[str, Dict[str, int]] = {}
        try:
            for user_id, counters in data.items():
                counters = counters if isinstance(counters, dict) else {}
                traffic[str(user_id)] = {
                    "tx": int(counters.get("tx") or 0),
                    "rx": int(counters.get("rx") or 0),
                }
        except (TypeError, ValueError) as exc:
            raise TelemetryError(node.name, "malformed /traffic counters", exc)
        return traffic

    def fetch_online(self, node: Node) -> List[OnlineSession]:
        """Connected users and their connection counts."""
        data = self._request(node, "GET", "/online", self.online_timeout)
        if data is None:
            return []
        if not isinstance(data, dict):
            raise TelemetryError(node.name, "unexpected /online payload")
        try:
            return [
                OnlineSession(user_id=str(user_id), connections=int(count or 0))
                for user_id, count in data.items()
            ]
        except (TypeError, ValueError) as exc:
            raise TelemetryError(node.name, "malformed /online payload", exc)

    def kick(self, node: Node, user_ids: Iterable[str]) -> None:
        """Disconnect users from a node."""
        self._request(node, "POST", "/kick", self.online_timeout, payload=list(user_ids))
