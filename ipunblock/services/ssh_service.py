"""SSH session manager: ephemeral keys, one multiplexed connection per unit.

A session owns one paramiko transport and one key file written for it
alone. Every command of a check runs over that transport, one at a time,
and the session tears both down on every exit path.
"""

from __future__ import annotations

import logging
import os
import secrets
import socket
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, NamedTuple, Optional

import paramiko
from cryptography.fernet import Fernet

from ipunblock.config import SSHConfig, get_config
from ipunblock.core.exceptions import CommandExecutionFailed, ConnectionFailed
from ipunblock.models.host import Host

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 200


def normalize_key_material(secret: str) -> str:
    """Unix line endings and exactly one trailing newline."""
    text = secret.replace("\r\n", "\n").replace("\r", "\n").strip()
    return text + "\n"


class CommandResult(NamedTuple):
    output: str
    error_output: str
    exit_status: int


class SshSession:
    """One live connection to one host. Commands are strictly sequential."""

    def __init__(
        self,
        host: Host,
        client: paramiko.SSHClient,
        key_path: Path,
        manager: "SshConnectionManager",
        command_timeout: float,
    ) -> None:
        self.host = host
        self.key_path = key_path
        self._client = client
        self._manager = manager
        self._command_timeout = command_timeout
        self._lock = threading.Lock()
        self._closed = False
        self.commands_run = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def execute(self, command: str) -> str:
        """Run one command over the existing transport and return trimmed stdout.

        A nonzero exit status is logged and the output still returned:
        `grep` exits 1 on "no match", which is a normal answer here.
        """
        return self.run(command).output

    def execute_checked(self, command: str) -> str:
        """Like execute, but a nonzero exit status raises CommandExecutionFailed.

        Used for commands that change remote state, where a rejected or
        failed command must not be reported as done.
        """
        result = self.run(command)
        if result.exit_status != 0:
            detail = result.error_output or result.output or "no output"
            raise CommandExecutionFailed(
                f"Command exited {result.exit_status} on {self.host.fqdn}: {detail[:_PREVIEW_CHARS]}",
                command=command,
                exit_status=result.exit_status,
            )
        return result.output

    def run(self, command: str) -> CommandResult:
        with self._lock:
            if self._closed:
                raise ConnectionFailed(
                    f"Session to {self.host.fqdn} already closed", host=self.host.fqdn
                )
            transport = self._client.get_transport()
            if transport is None or not transport.is_active():
                raise ConnectionFailed(
                    f"SSH transport to {self.host.fqdn} is no longer active",
                    host=self.host.fqdn,
                )

            logger.info("SSH exec on %s: %s", self.host.fqdn, command)
            started = time.monotonic()
            try:
                stdin, stdout, stderr = self._client.exec_command(
                    command, timeout=self._command_timeout
                )
                stdin.close()
                output = stdout.read().decode("utf-8", errors="replace")
                error_output = stderr.read().decode("utf-8", errors="replace")
                exit_status = stdout.channel.recv_exit_status()
            except socket.timeout as e:
                raise CommandExecutionFailed(
                    f"Command timed out after {self._command_timeout:.0f}s on {self.host.fqdn}",
                    command=command,
                ) from e
            except paramiko.SSHException as e:
                raise CommandExecutionFailed(
                    f"Command failed on {self.host.fqdn}: {e}", command=command
                ) from e
            finally:
                self.commands_run += 1

            elapsed_ms = (time.monotonic() - started) * 1000
            if exit_status != 0:
                logger.warning(
                    "Remote command exited %d on %s (%s): %s",
                    exit_status, self.host.fqdn, command,
                    error_output.strip()[:_PREVIEW_CHARS],
                )
            output = output.strip()
            logger.debug(
                "SSH exec done on %s in %.0fms, %d bytes: %s",
                self.host.fqdn, elapsed_ms, len(output), output[:_PREVIEW_CHARS],
            )
            return CommandResult(output, error_output.strip(), exit_status)

    def cleanup(self) -> None:
        """Close the connection and delete the key file. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        try:
            self._client.close()
        except Exception as e:
            logger.warning("Error closing SSH connection to %s: %s", self.host.fqdn, e)
        self._manager.remove_key(self.key_path)

    def __enter__(self) -> "SshSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()


class SshConnectionManager:
    """Creates sessions. Holds no per-host state beyond the shared control dir."""

    def __init__(
        self,
        config: SSHConfig | None = None,
        cipher: Fernet | None = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self._cfg = config or get_config().ssh
        self._cipher = cipher if cipher is not None else _cipher_from_config()
        self._client_factory = client_factory
        self._control_ready = False
        self._control_lock = threading.Lock()

    @property
    def control_dir(self) -> Path:
        return Path(self._cfg.control_dir)

    def prepare_control_path(self) -> Path:
        """Create the shared control directory once (0700)."""
        with self._control_lock:
            if self._control_ready:
                return self.control_dir
            try:
                self.control_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
                os.chmod(self.control_dir, 0o700)
            except OSError as e:
                raise ConnectionFailed(
                    f"Cannot prepare SSH control path {self.control_dir}: {e}"
                ) from e
            self._control_ready = True
            return self.control_dir

    def generate_key(self, secret: str) -> Path:
        """Write key material to a uniquely named 0600 file and return its path."""
        directory = self.prepare_control_path()
        path = directory / f"key_{secrets.token_hex(5)}"
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(normalize_key_material(secret))
        os.chmod(path, 0o600)
        logger.debug("Generated ephemeral key %s", path.name)
        return path

    def remove_key(self, key_path: Path) -> None:
        """Best-effort delete; failures are logged, never raised."""
        try:
            key_path.unlink()
            logger.debug("Removed ephemeral key %s", key_path.name)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove SSH key %s: %s", key_path, e)

    def create_session(self, host: Host) -> SshSession:
        """Open one connection to the host, authenticated with a fresh key file."""
        secret = host.private_key(self._cipher)
        if not secret:
            raise ConnectionFailed(
                f"No usable private key stored for {host.fqdn}", host=host.fqdn
            )
        key_path = self.generate_key(secret)

        client = self._client_factory()
        try:
            if self._cfg.strict_host_keys:
                if self._cfg.known_hosts:
                    client.load_host_keys(self._cfg.known_hosts)
                else:
                    client.load_system_host_keys()
                client.set_missing_host_key_policy(paramiko.RejectPolicy())
            else:
                client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

            client.connect(
                hostname=host.ssh_address,
                port=host.port_ssh or 22,
                username=host.admin_user or "root",
                key_filename=str(key_path),
                timeout=self._cfg.connect_timeout,
                banner_timeout=self._cfg.connect_timeout,
                auth_timeout=self._cfg.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            transport = client.get_transport()
            if transport is not None:
                transport.set_keepalive(self._cfg.keepalive)
        except (paramiko.SSHException, OSError) as e:
            client.close()
            self.remove_key(key_path)
            logger.error("SSH connection to %s:%s failed: %s", host.fqdn, host.port_ssh, e)
            raise ConnectionFailed(
                f"SSH connection failed to {host.fqdn}: {e}", host=host.fqdn
            ) from e

        logger.info("SSH session opened to %s:%s", host.fqdn, host.port_ssh)
        return SshSession(host, client, key_path, self, self._cfg.command_timeout)

    @contextmanager
    def session(self, host: Host) -> Iterator[SshSession]:
        """Scoped session: cleanup runs on success, handled and unhandled errors."""
        session = self.create_session(host)
        try:
            yield session
        finally:
            session.cleanup()


def _cipher_from_config() -> Optional[Fernet]:
    key = get_config().security.key_encryption_key
    if not key:
        return None
    return Fernet(key.encode())
