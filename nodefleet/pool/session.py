"""Remote shell session over SSH.

Wraps a paramiko client with the three primitives the rest of the package
needs: run a command under a hard deadline, transfer a file over SFTP, and
probe the transport for liveness.
"""

from __future__ import annotations

import io
import time
from typing import Optional, Union

import paramiko

from ..data.models import CommandResult, Node
from ..errors import CommandTimeout, NodeConnectionError

_READ_CHUNK = 32768
_POLL_INTERVAL = 0.05

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def load_private_key(text: str, node_name: str = "?") -> paramiko.PKey:
    """Parse OpenSSH/PEM private key text of any supported type."""
    last_error: Optional[Exception] = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text))
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise NodeConnectionError(node_name, "SSH: unsupported or invalid private key", last_error)


class SshSession:
    """One authenticated SSH connection to a node."""

    def __init__(self, client: paramiko.SSHClient, node_name: str, host: str):
        self.client = client
        self.node_name = node_name
        self.host = host

    @classmethod
    def open(cls, node: Node, timeout: float, keepalive_interval: int = 0) -> "SshSession":
        """Connect and authenticate with the node's key or password.

        Raises:
            NodeConnectionError: on missing credentials, network or auth failure.
        """
        if not node.ssh.has_secret:
            raise NodeConnectionError(node.name, "SSH: no key or password")

        kwargs = {
            "hostname": node.ip,
            "port": node.ssh.port,
            "username": node.ssh.username,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if node.ssh.private_key:
            kwargs["pkey"] = load_private_key(node.ssh.private_key, node.name)
        else:
            kwargs["password"] = node.ssh.password

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(**kwargs)
        except paramiko.AuthenticationException as exc:
            client.close()
            raise NodeConnectionError(node.name, f"SSH authentication failed: {exc}", exc)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            client.close()
            raise NodeConnectionError(node.name, f"SSH connection failed: {exc}", exc)

        transport = client.get_transport()
        if transport is not None and keepalive_interval:
            transport.set_keepalive(keepalive_interval)
        return cls(client, node.name, node.ip)

    def _transport(self) -> paramiko.Transport:
        transport = self.client.get_transport()
        if transport is None or not transport.is_active():
            raise NodeConnectionError(self.node_name, "SSH transport is closed")
        return transport

    def is_alive(self) -> bool:
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def probe(self) -> None:
        """Send a keepalive packet; raises if the transport is gone."""
        try:
            self._transport().send_ignore()
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise NodeConnectionError(self.node_name, f"keepalive failed: {exc}", exc)

    def run(self, command: str, timeout: float) -> CommandResult:
        """Run a command and collect its output.

        Raises:
            CommandTimeout: if the command is still running after ``timeout``.
            NodeConnectionError: if the channel cannot be opened or breaks.
        """
        deadline = time.monotonic() + timeout
        try:
            channel = self._transport().open_session(timeout=timeout)
            channel.settimeout(timeout)
            channel.exec_command(command)
            stdout, stderr = [], []
            while True:
                while channel.recv_ready():
                    stdout.append(channel.recv(_READ_CHUNK))
                while channel.recv_stderr_ready():
                    stderr.append(channel.recv_stderr(_READ_CHUNK))
                if (
                    channel.exit_status_ready()
                    and not channel.recv_ready()
                    and not channel.recv_stderr_ready()
                ):
                    break
                if time.monotonic() > deadline:
                    channel.close()
                    raise CommandTimeout(
                        self.node_name, f"exec timeout ({timeout}s): {command[:50]}"
                    )
                time.sleep(_POLL_INTERVAL)
            exit_code = channel.recv_exit_status()
            channel.close()
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise NodeConnectionError(self.node_name, f"exec failed: {exc}", exc)

        return CommandResult(
            exit_code=exit_code,
            stdout=b"".join(stdout).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr).decode("utf-8", errors="replace"),
        )

    def _sftp(self, timeout: float) -> paramiko.SFTPClient:
        try:
            sftp = self.client.open_sftp()
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise NodeConnectionError(self.node_name, f"sftp failed: {exc}", exc)
        sftp.get_channel().settimeout(timeout)
        return sftp

    def write_file(self, path: str, content: Union[str, bytes], timeout: float = 30) -> None:
        data = content.encode("utf-8") if isinstance(content, str) else content
        sftp = self._sftp(timeout)
        try:
            with sftp.open(path, "wb") as f:
                f.write(data)
        finally:
            sftp.close()

    def read_file(self, path: str, timeout: float = 30) -> bytes:
        """Read a remote file. Raises FileNotFoundError if it does not exist."""
        sftp = self._sftp(timeout)
        try:
            with sftp.open(path, "rb") as f:
                return f.read()
        finally:
            sftp.close()

    def remove_file(self, path: str, timeout: float = 30) -> None:
        sftp = self._sftp(timeout)
        try:
            sftp.remove(path)
        except FileNotFoundError:
            pass
        finally:
            sftp.close()

    def close(self) -> None:
        self.client.close()
