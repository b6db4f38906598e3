"""SSH transport: one long-lived asyncssh connection per host.

Usage:
    session = await SSHSession.open(target)
    result = await session.execute("cat /proc/meminfo")
    await session.close()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import asyncssh

from sshmon.config import HostTarget, Password, PrivateKey

log = logging.getLogger(__name__)


class TransportError(Exception):
    """Base class for connection and session failures."""


class AuthConfigError(TransportError):
    """The host has no credential to authenticate with."""


class AuthError(TransportError):
    """The server rejected the supplied credentials."""


class NetworkError(TransportError):
    """Connection or handshake failure."""


@dataclass
class CommandResult:
    """Result of a remote command execution."""

    command: str
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class Session(Protocol):
    async def execute(self, command: str) -> CommandResult: ...

    async def close(self) -> None: ...


Connector = Callable[[HostTarget], Awaitable[Session]]


def _decode(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data).decode("utf-8", errors="replace")
    return str(data)


def connect_options(target: HostTarget, connect_timeout: float) -> dict[str, Any]:
    """Build asyncssh.connect keyword arguments for a target.

    Raises:
        AuthConfigError: If the target carries no credential.
    """
    opts: dict[str, Any] = {
        "host": target.host,
        "port": target.port,
        "username": target.user,
        "connect_timeout": connect_timeout,
        # Host keys are not verified; hosts are addressed by config only.
        "known_hosts": None,
    }
    creds = target.credentials
    if isinstance(creds, PrivateKey):
        if creds.passphrase:
            try:
                opts["client_keys"] = [
                    asyncssh.read_private_key(str(creds.path), passphrase=creds.passphrase)
                ]
            except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError, OSError) as e:
                raise AuthConfigError(f"cannot load private key {creds.path}: {e}") from e
        else:
            opts["client_keys"] = [str(creds.path)]
        opts["password"] = None
    elif isinstance(creds, Password):
        opts["password"] = creds.secret
        opts["client_keys"] = None
    else:
        raise AuthConfigError(f"no authentication method provided for server {target.name}")
    return opts


class SSHSession:
    """Async SSH session bound to one HostTarget."""

    def __init__(
        self,
        target: HostTarget,
        connection: asyncssh.SSHClientConnection,
        command_timeout: float = 10.0,
    ) -> None:
        self.target = target
        self.command_timeout = command_timeout
        self._connection: asyncssh.SSHClientConnection | None = connection

    @classmethod
    async def open(
        cls,
        target: HostTarget,
        connect_timeout: float = 10.0,
        command_timeout: float = 10.0,
    ) -> SSHSession:
        """Connect to ``target``.

        Raises:
            AuthConfigError: No credential configured.
            AuthError: Credentials rejected.
            NetworkError: Connection or handshake failed.
        """
        opts = connect_options(target, connect_timeout)
        try:
            connection = await asyncssh.connect(**opts)
        except asyncssh.PermissionDenied as e:
            raise AuthError(f"authentication failed for {target.user}@{target.host}: {e}") from e
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise NetworkError(f"cannot connect to {target.host}:{target.port}: {e}") from e
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError, ValueError) as e:
            # Client keys given by path are only loaded inside connect().
            raise AuthConfigError(f"cannot load private key for server {target.name}: {e}") from e
        log.info("connected to %s (%s@%s:%d)", target.name, target.user, target.host, target.port)
        return cls(target, connection, command_timeout)

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def execute(self, command: str) -> CommandResult:
        """Run ``command`` and capture its output.

        A command that exceeds the timeout yields exit code -1. A lost
        connection raises TransportError. Output is read as bytes and
        decoded leniently, so stray non-UTF-8 bytes never close the
        connection.
        """
        if self._connection is None:
            raise TransportError("session is closed")
        try:
            result = await asyncio.wait_for(
                self._connection.run(command, check=False, encoding=None),
                timeout=self.command_timeout,
            )
        except asyncio.TimeoutError:
            return CommandResult(
                command=command,
                stdout="",
                stderr=f"command timed out after {self.command_timeout} seconds",
                exit_code=-1,
            )
        except (asyncssh.Error, OSError) as e:
            raise TransportError(f"SSH error on {self.target.name}: {e}") from e

        exit_code = result.exit_status
        if exit_code is None:
            # Killed by a signal: no exit status is reported.
            exit_code = -1
        return CommandResult(
            command=command,
            stdout=_decode(result.stdout),
            stderr=_decode(result.stderr),
            exit_code=exit_code,
        )

    async def close(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        connection.close()
        try:
            await connection.wait_closed()
        except (asyncssh.Error, OSError) as e:
            log.debug("error closing connection to %s: %s", self.target.name, e)

    async def __aenter__(self) -> SSHSession:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


def make_connector(connect_timeout: float = 10.0, command_timeout: float = 10.0) -> Connector:
    """Return a Connector that opens SSHSessions with the given timeouts."""

    async def connect(target: HostTarget) -> Session:
        return await SSHSession.open(target, connect_timeout, command_timeout)

    return connect
