"""SSH bridge from the agent container to its host.

The container cannot see the host's processes, so every host operation is a
one-shot ``ssh`` invocation. Credentials are provisioned without any
out-of-band secret: the agent generates its own keypair and writes the public
key into the host's ``authorized_keys`` through a bind mount.
"""

from __future__ import annotations

import asyncio
import os
import socket
import struct
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from compose_guardian.constants import FALLBACK_HOST_ALIAS, PROBE_TOKEN
from compose_guardian.exceptions import CommandError, ConnectionUnavailableError, HostCommandError
from compose_guardian.host.shell import CommandResult, run_process
from compose_guardian.logging import get_logger

if TYPE_CHECKING:
    from compose_guardian.config import Settings

log = get_logger("compose_guardian.host.bridge")

_RTF_GATEWAY = 0x2


@dataclass
class AuthorizedKey:
    """One entry of the host's authorized_keys file."""

    key_type: str
    comment: str
    is_agent: bool


class HostBridge:
    """Provision SSH access to the host and run commands on it.

    Typical startup::

        bridge = HostBridge(settings)
        await bridge.initialize_access()
        result = await bridge.run_on_host("docker ps")
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._host: str | None = None

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def generate_keypair(self) -> str:
        """Generate a fresh ed25519 keypair, replacing any previous one.

        Returns the public key line.
        """
        key_path = Path(self._settings.ssh_key_path)
        pub_path = key_path.with_name(key_path.name + ".pub")
        key_path.parent.mkdir(parents=True, exist_ok=True)
        key_path.unlink(missing_ok=True)
        pub_path.unlink(missing_ok=True)

        comment = f"{self._settings.ssh_key_marker}-{int(time.time())}"
        await run_process(
            ["ssh-keygen", "-q", "-t", "ed25519", "-N", "", "-C", comment, "-f", str(key_path)],
            timeout=60,
        )
        public_key = pub_path.read_text(encoding="utf-8").strip()
        log.info("ssh_keypair_generated", key_path=str(key_path), comment=comment)
        return public_key

    def install_public_key(self, public_key: str) -> None:
        """Append *public_key* to authorized_keys after dropping older agent keys.

        Keys that do not carry the agent marker are left untouched.
        """
        path = Path(self._settings.authorized_keys_path)
        kept, removed = self._split_agent_keys(self._read_authorized_lines(path))

        body = "\n".join(kept).rstrip()
        content = f"{body}\n{public_key.strip()}\n" if body else f"{public_key.strip()}\n"
        self._write_authorized_keys(path, content)
        log.info("ssh_public_key_installed", path=str(path), replaced=removed)

    def remove_agent_keys(self) -> int:
        """Remove every agent-marked key and return how many were removed."""
        path = Path(self._settings.authorized_keys_path)
        kept, removed = self._split_agent_keys(self._read_authorized_lines(path))
        body = "\n".join(kept).rstrip()
        self._write_authorized_keys(path, f"{body}\n" if body else "")
        if removed:
            log.info("ssh_agent_keys_removed", path=str(path), count=removed)
        return removed

    def list_authorized_keys(self) -> list[AuthorizedKey]:
        """Inventory of authorized_keys entries, flagging the agent's own."""
        keys: list[AuthorizedKey] = []
        for line in self._read_authorized_lines(Path(self._settings.authorized_keys_path)):
            parts = line.split()
            if not parts or line.lstrip().startswith("#"):
                continue
            keys.append(
                AuthorizedKey(
                    key_type=parts[0],
                    comment=parts[2] if len(parts) > 2 else "no-comment",
                    is_agent=self._settings.ssh_key_marker in line,
                )
            )
        return keys

    def _split_agent_keys(self, lines: list[str]) -> tuple[list[str], int]:
        marker = self._settings.ssh_key_marker
        kept = [line for line in lines if marker not in line]
        return kept, len(lines) - len(kept)

    @staticmethod
    def _read_authorized_lines(path: Path) -> list[str]:
        try:
            return path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []

    @staticmethod
    def _write_authorized_keys(path: Path, content: str) -> None:
        # Written in place: a single-file bind mount cannot be renamed over.
        path.write_text(content, encoding="utf-8")
        os.chmod(path, 0o600)

    # ------------------------------------------------------------------
    # Addressing
    # ------------------------------------------------------------------

    def resolve_host_address(self) -> str:
        """Configured address, else the default gateway, else the host alias."""
        if self._host:
            return self._host

        if self._settings.host_address:
            self._host = self._settings.host_address
            source = "configured"
        else:
            gateway = self._default_gateway()
            self._host = gateway or FALLBACK_HOST_ALIAS
            source = "gateway" if gateway else "fallback"

        log.info("host_address_resolved", host=self._host, source=source)
        return self._host

    def _default_gateway(self) -> str | None:
        """Read the default route's gateway from the kernel route table."""
        try:
            lines = Path(self._settings.route_table_path).read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            log.warning("host_route_table_unreadable", error=str(exc))
            return None

        for line in lines[1:]:
            fields = line.split()
            if len(fields) < 4 or fields[1] != "00000000":
                continue
            try:
                flags = int(fields[3], 16)
                gateway = int(fields[2], 16)
            except ValueError:
                continue
            if flags & _RTF_GATEWAY and gateway:
                return socket.inet_ntoa(struct.pack("<L", gateway))
        return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_on_host(
        self,
        command: str,
        *,
        timeout: float | None = None,
        user: str | None = None,
        key_path: str | None = None,
    ) -> CommandResult:
        """Run *command* through the host's login shell over SSH.

        Raises:
            HostCommandError: On non-zero exit, timeout, or connection failure.
        """
        host = self.resolve_host_address()
        key = key_path or self._settings.ssh_key_path
        try:
            os.chmod(key, 0o600)
        except FileNotFoundError:
            raise HostCommandError(command, f"private key {key} does not exist") from None

        args = [
            "ssh",
            "-i",
            key,
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-o",
            f"ConnectTimeout={self._settings.ssh_connect_timeout}",
            f"{user or self._settings.host_user}@{host}",
            command,
        ]
        try:
            return await run_process(args, timeout=timeout, display=command)
        except CommandError as exc:
            raise HostCommandError(
                command,
                exc.reason,
                returncode=exc.returncode,
                stderr=exc.stderr,
                timed_out=exc.timed_out,
            ) from exc

    async def probe(self) -> bool:
        """Round-trip a trivial echo to check the host answers."""
        try:
            result = await self.run_on_host(f'echo "{PROBE_TOKEN}"', timeout=60)
        except HostCommandError as exc:
            log.debug("host_probe_failed", error=exc.reason)
            return False
        return PROBE_TOKEN in result.stdout

    async def wait_until_reachable(self, max_attempts: int = 10, retry_delay: float = 2.0) -> None:
        """Probe at a fixed interval until the host answers.

        Raises:
            ConnectionUnavailableError: If every attempt fails.
        """
        for attempt in range(1, max_attempts + 1):
            log.info("host_connect_attempt", attempt=attempt, max_attempts=max_attempts)
            if await self.probe():
                log.info("host_connected", attempt=attempt)
                return
            if attempt < max_attempts:
                await asyncio.sleep(retry_delay)

        raise ConnectionUnavailableError(
            f"Failed to establish SSH connection after {max_attempts} attempts"
        )

    async def initialize_access(self) -> None:
        """Generate a key, install it on the host, and wait for SSH to answer."""
        public_key = await self.generate_keypair()
        self.install_public_key(public_key)
        await self.wait_until_reachable(
            max_attempts=self._settings.host_connect_attempts,
            retry_delay=self._settings.host_connect_retry_delay,
        )
