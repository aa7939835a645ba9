"""Remote control of the Hysteria service on a node.

``HysteriaControl`` turns the steps of a configuration push into shell and
SFTP operations on a shell object (pooled or direct).
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

from ..data.models import CommandResult, Node
from ..log import debug

# Interfaces that older provisioning scripts bound redirect rules to
LEGACY_INTERFACES = ("eth0", "eth1", "ens3", "ens5", "enp0s3", "eno1")

_PORT_RANGE_RE = re.compile(r"^\s*(\d{1,5})\s*[-:]\s*(\d{1,5})\s*$")


def parse_port_range(port_range: str) -> Tuple[int, int]:
    """Parse '20000-50000' into (20000, 50000).

    Raises:
        ValueError: if the range is malformed or out of order.
    """
    match = _PORT_RANGE_RE.match(port_range or "")
    if not match:
        raise ValueError(f"invalid port range: {port_range!r}")
    start, end = int(match.group(1)), int(match.group(2))
    if not (1 <= start <= end <= 65535):
        raise ValueError(f"invalid port range: {port_range!r}")
    return start, end


def build_port_hopping_script(start: int, end: int, main_port: int) -> str:
    """Shell script that (re)installs UDP redirect rules for a port range.

    Existing rules for the same range, including legacy interface-bound
    ones, are deleted first so running it twice leaves one rule per family.
    """
    rule = f"PREROUTING -p udp --dport {start}:{end} -j REDIRECT --to-port {main_port}"
    iface_list = " ".join(LEGACY_INTERFACES)
    return f"""
# Clear old rules
iptables -t nat -D {rule} 2>/dev/null || true
ip6tables -t nat -D {rule} 2>/dev/null || true

# Clear legacy interface-specific rules
for iface in {iface_list}; do
    iptables -t nat -D PREROUTING -i $iface -p udp --dport {start}:{end} -j REDIRECT --to-port {main_port} 2>/dev/null || true
    ip6tables -t nat -D PREROUTING -i $iface -p udp --dport {start}:{end} -j REDIRECT --to-port {main_port} 2>/dev/null || true
done

# Add new rules (no interface binding)
iptables -t nat -A {rule}
ip6tables -t nat -A {rule}

# Open ports in UFW
if command -v ufw > /dev/null 2>&1 && ufw status 2>/dev/null | grep -q "Status: active"; then
    ufw allow {start}:{end}/udp 2>/dev/null || true
fi

# Save rules
if command -v netfilter-persistent > /dev/null 2>&1; then
    netfilter-persistent save 2>/dev/null
elif command -v iptables-save > /dev/null 2>&1; then
    mkdir -p /etc/iptables
    iptables-save > /etc/iptables/rules.v4 2>/dev/null || true
    ip6tables-save > /etc/iptables/rules.v6 2>/dev/null || true
fi

echo "Port hopping: {start}-{end} -> {main_port}"
"""


SYSTEM_STATS_SCRIPT = """
echo "===CPU==="
cat /proc/loadavg
echo "===CORES==="
nproc
echo "===MEM==="
free -b | grep -E "^Mem:"
echo "===DISK==="
df -B1 / | tail -1
echo "===UPTIME==="
cat /proc/uptime | cut -d' ' -f1
"""


def _int(value: str, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _usage(parts: List[str]) -> Dict[str, int]:
    total, used, free = (_int(p) for p in (parts[1:4] + ["0", "0", "0"])[:3])
    return {
        "total": total,
        "used": used,
        "free": free,
        "percent": round(used / total * 100) if total > 0 else 0,
    }


def parse_system_stats(output: str) -> Dict[str, Any]:
    """Parse the sectioned output of SYSTEM_STATS_SCRIPT."""
    cpu = {"load1": 0.0, "load5": 0.0, "load15": 0.0, "cores": 1}
    mem = {"total": 0, "used": 0, "free": 0, "percent": 0}
    disk = {"total": 0, "used": 0, "free": 0, "percent": 0}
    uptime = 0

    section = ""
    for raw in output.splitlines():
        line = raw.strip()
        if line.startswith("===") and line.endswith("==="):
            section = line.strip("=").lower()
            continue
        if not line:
            continue
        parts = line.split()
        if section == "cpu":
            cpu["load1"], cpu["load5"], cpu["load15"] = (
                _float(p) for p in (parts + ["0", "0", "0"])[:3]
            )
        elif section == "cores":
            cpu["cores"] = _int(parts[0], 1) or 1
        elif section == "mem":
            # Mem: total used free shared buff/cache available
            mem = _usage(parts)
        elif section == "disk":
            # /dev/xxx total used free use% mount
            disk = _usage(parts)
        elif section == "uptime":
            uptime = int(_float(parts[0]))

    return {"cpu": cpu, "mem": mem, "disk": disk, "uptime": uptime}


class HysteriaControl:
    """Service and config operations for one node.

    Args:
        shell: Object with exec/read_file/write_file/remove_file
        node: Node being operated on
        service_names: systemd unit names to try, in order
        binary: Path of the hysteria executable on the node
        command_timeout: Deadline for each remote command (seconds)
    """

    def __init__(
        self,
        shell: Any,
        node: Node,
        service_names: Optional[List[str]] = None,
        binary: str = "/usr/local/bin/hysteria",
        command_timeout: float = 30,
        log_tail_lines: int = 10,
    ):
        self.shell = shell
        self.node = node
        self.service_names = service_names or ["hysteria-server", "hysteria"]
        self.binary = binary
        self.command_timeout = command_timeout
        self.log_tail_lines = log_tail_lines

    def _exec(self, command: str) -> CommandResult:
        return self.shell.exec(command, self.command_timeout)

    def _each_unit(self, template: str) -> str:
        return " || ".join(template.format(unit=name) for name in self.service_names)

    # --- Config file ---

    def backup_config(self) -> Optional[bytes]:
        """Copy the live config to its .bak sibling.

        Returns the original bytes, or None when no config existed.
        """
        try:
            original = self.shell.read_file(self.node.paths.config)
        except FileNotFoundError:
            return None
        self.shell.write_file(self.node.paths.backup, original)
        return original

    def write_config(self, content: str) -> None:
        self.shell.write_file(self.node.paths.config, content)

    def restore_config(self, original: Optional[bytes]) -> None:
        """Put back exactly what was there before the push."""
        if original is None:
            self.shell.remove_file(self.node.paths.config)
        else:
            self.shell.write_file(self.node.paths.config, original)

    def check_config(self) -> Tuple[bool, str]:
        """Ask hysteria to validate the config file.

        Returns (valid, output).
        """
        result = self._exec(f"{self.binary} check -c {self.node.paths.config} 2>&1")
        output = result.output
        valid = result.ok and "error" not in output.lower()
        return valid, output

    # --- Service ---

    def restart_service(self) -> CommandResult:
        result = self._exec(self._each_unit("systemctl restart {unit} 2>&1"))
        debug(f"[sync] {self.node.name} restart output: {result.output}")
        return result

    def is_active(self) -> bool:
        result = self._exec(
            self._each_unit("systemctl is-active {unit} 2>/dev/null") + " || echo unknown"
        )
        states = [line.strip() for line in result.stdout.splitlines()]
        debug(f"[sync] {self.node.name} service state: {states}")
        return "active" in states

    def log_tail(self) -> str:
        """Last lines of the service journal, or '' if unavailable."""
        try:
            result = self._exec(
                self._each_unit(f"journalctl -u {{unit}} -n {self.log_tail_lines} --no-pager 2>/dev/null")
            )
        except Exception as exc:
            debug(f"[sync] {self.node.name} log tail unavailable: {exc}")
            return ""
        return result.stdout.strip()

    # --- Provisioning ---

    def setup_port_hopping(self, port_range: str) -> CommandResult:
        start, end = parse_port_range(port_range)
        return self._exec(build_port_hopping_script(start, end, self.node.port))

    def system_stats(self) -> Dict[str, Any]:
        result = self._exec(SYSTEM_STATS_SCRIPT)
        return parse_system_stats(result.stdout)
