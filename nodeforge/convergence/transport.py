"""Remote execution boundary.

Service class pattern - connection settings bound at construction,
not passed on every call. Executors report transient channel problems
as TransportError and leave the exit code of the command alone; deciding
whether a non-zero exit is a failure is the engine's job.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import asyncssh
from loguru import logger

from nodeforge.api import InventoryEntry
from nodeforge.core.exceptions import TransportError


@dataclass(frozen=True, slots=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class RemoteExecutor(Protocol):
    async def run(self, host: InventoryEntry, command: str) -> CommandResult:
        """Run ``command`` on ``host``.

        Raises:
            TransportError: The channel failed before a result was produced.
        """
        ...

    async def close(self) -> None: ...


# =============================================================================
# SSH
# =============================================================================


@dataclass
class SSHExecutor:
    """Runs commands over asyncssh with one cached connection per host.

    A connection that breaks mid-command is dropped from the cache, so the
    next attempt reconnects.

    Example:
        >>> executor = SSHExecutor(user="vagrant", key_path="~/.ssh/id_ed25519")
        >>> result = await executor.run(entry, "uname -a")
        >>> await executor.close()
    """

    user: str = "vagrant"
    key_path: str | None = None
    port: int = 22
    connect_timeout: float = 30.0

    _conns: dict[str, asyncssh.SSHClientConnection] = field(default_factory=dict, repr=False)
    _locks: dict[str, asyncio.Lock] = field(default_factory=dict, repr=False)

    async def _connect(self, host: InventoryEntry) -> asyncssh.SSHClientConnection:
        lock = self._locks.setdefault(host.hostname, asyncio.Lock())
        async with lock:
            conn = self._conns.get(host.hostname)
            if conn is not None:
                return conn
            logger.debug("Connecting to {host} ({ip})", host=host.hostname, ip=host.ip)
            try:
                conn = await asyncssh.connect(
                    host.ip,
                    port=self.port,
                    username=self.user,
                    client_keys=[self.key_path] if self.key_path else None,
                    known_hosts=None,
                    connect_timeout=self.connect_timeout,
                )
            except (OSError, asyncssh.Error) as e:
                raise TransportError(f"SSH connect to {host.hostname} failed: {e}") from e
            self._conns[host.hostname] = conn
            return conn

    async def _drop(self, hostname: str) -> None:
        conn = self._conns.pop(hostname, None)
        if conn is not None:
            conn.close()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(conn.wait_closed(), timeout=5.0)

    async def run(self, host: InventoryEntry, command: str) -> CommandResult:
        conn = await self._connect(host)
        try:
            result = await conn.run(command, check=False)
        except (OSError, asyncssh.Error) as e:
            await self._drop(host.hostname)
            raise TransportError(f"SSH channel to {host.hostname} lost: {e}") from e
        return CommandResult(
            exit_code=result.exit_status if result.exit_status is not None else -1,
            stdout=str(result.stdout or ""),
            stderr=str(result.stderr or ""),
        )

    async def close(self) -> None:
        for hostname in list(self._conns):
            await self._drop(hostname)


# =============================================================================
# Local
# =============================================================================


@dataclass
class LocalExecutor:
    """Runs every host's commands on this machine through ``sh -c``.

    Pairs with the memory provider for dry runs of a task list. The host's
    name and IP are exported as NODEFORGE_HOST and NODEFORGE_IP.
    """

    shell: str = "/bin/sh"

    async def run(self, host: InventoryEntry, command: str) -> CommandResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.shell, "-c", command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_local_env(host),
            )
        except OSError as e:
            raise TransportError(f"Cannot spawn {self.shell}: {e}") from e
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise
        return CommandResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    async def close(self) -> None:
        return None


def _local_env(host: InventoryEntry) -> dict[str, str]:
    env = dict(os.environ)
    env["NODEFORGE_HOST"] = host.hostname
    env["NODEFORGE_IP"] = host.ip
    return env
