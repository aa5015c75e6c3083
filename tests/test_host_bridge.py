"""Tests for compose_guardian.host: subprocess helper and SSH bridge."""

from __future__ import annotations

import stat
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from compose_guardian.config import Settings
from compose_guardian.constants import FALLBACK_HOST_ALIAS, PROBE_TOKEN
from compose_guardian.exceptions import CommandError, ConnectionUnavailableError, HostCommandError
from compose_guardian.host.bridge import HostBridge
from compose_guardian.host.shell import CommandResult, run_process

ROUTE_TABLE = (
    "Iface\tDestination\tGateway \tFlags\tRefCnt\tUse\tMetric\tMask\t\tMTU\tWindow\tIRTT\n"
    "eth0\t000011AC\t00000000\t0001\t0\t0\t0\t0000FFFF\t0\t0\t0\n"
    "eth0\t00000000\t010011AC\t0003\t0\t0\t0\t00000000\t0\t0\t0\n"
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _authorized_keys(settings: Settings, *lines: str) -> Path:
    path = Path(settings.authorized_keys_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    return path


def _private_key(settings: Settings) -> Path:
    key = Path(settings.ssh_key_path)
    key.parent.mkdir(parents=True, exist_ok=True)
    key.write_text("PRIVATE", encoding="utf-8")
    return key


# ---------------------------------------------------------------------------
# run_process
# ---------------------------------------------------------------------------


class TestRunProcess:
    """Tests for the local subprocess helper."""

    @pytest.mark.asyncio
    async def test_captures_stdout(self) -> None:
        result = await run_process(["sh", "-c", "echo hello"])
        assert result.stdout == "hello\n"
        assert result.returncode == 0

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_with_stderr(self) -> None:
        with pytest.raises(CommandError) as exc_info:
            await run_process(["sh", "-c", "echo broken >&2; exit 3"], display="do-thing")

        err = exc_info.value
        assert err.returncode == 3
        assert "broken" in err.stderr
        assert err.command == "do-thing"
        assert "exit code 3" in str(err)

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self) -> None:
        with pytest.raises(CommandError) as exc_info:
            await run_process(["sleep", "5"], timeout=0.1)
        assert exc_info.value.timed_out is True

    @pytest.mark.asyncio
    async def test_missing_binary_raises(self) -> None:
        with pytest.raises(CommandError, match="could not start"):
            await run_process(["definitely-not-a-real-binary-xyz"])


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class TestAuthorizedKeys:
    """Tests for public key installation through the bind mount."""

    def test_install_keeps_foreign_keys_and_replaces_agent_key(self, settings: Settings) -> None:
        path = _authorized_keys(
            settings,
            "ssh-rsa AAAAuser user@laptop",
            "ssh-ed25519 AAAAold local-admin-access-1700000000",
        )
        bridge = HostBridge(settings)

        bridge.install_public_key("ssh-ed25519 AAAAnew local-admin-access-1800000000")

        assert path.read_text().splitlines() == [
            "ssh-rsa AAAAuser user@laptop",
            "ssh-ed25519 AAAAnew local-admin-access-1800000000",
        ]
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_install_is_idempotent(self, settings: Settings) -> None:
        path = _authorized_keys(settings)
        bridge = HostBridge(settings)
        key = "ssh-ed25519 AAAAnew local-admin-access-1800000000"

        bridge.install_public_key(key)
        bridge.install_public_key(key)

        assert path.read_text() == f"{key}\n"

    def test_remove_agent_keys(self, settings: Settings) -> None:
        path = _authorized_keys(
            settings,
            "ssh-rsa AAAAuser user@laptop",
            "ssh-ed25519 AAAAone local-admin-access-1",
            "ssh-ed25519 AAAAtwo local-admin-access-2",
        )

        assert HostBridge(settings).remove_agent_keys() == 2
        assert path.read_text() == "ssh-rsa AAAAuser user@laptop\n"

    def test_list_authorized_keys(self, settings: Settings) -> None:
        _authorized_keys(
            settings,
            "# managed by hand",
            "ssh-rsa AAAAuser user@laptop",
            "ssh-ed25519 AAAAagent local-admin-access-1",
            "ssh-ed25519 AAAAbare",
        )

        keys = HostBridge(settings).list_authorized_keys()

        assert [(k.key_type, k.comment, k.is_agent) for k in keys] == [
            ("ssh-rsa", "user@laptop", False),
            ("ssh-ed25519", "local-admin-access-1", True),
            ("ssh-ed25519", "no-comment", False),
        ]

    @pytest.mark.asyncio
    async def test_generate_keypair_returns_public_key(self, settings: Settings) -> None:
        key_path = Path(settings.ssh_key_path)

        async def fake_keygen(args, **kwargs):
            Path(args[-1]).write_text("PRIVATE")
            Path(args[-1] + ".pub").write_text("ssh-ed25519 AAAAnew marker\n")
            return CommandResult(stdout="", stderr="")

        with patch(
            "compose_guardian.host.bridge.run_process", side_effect=fake_keygen
        ) as mock_run:
            public_key = await HostBridge(settings).generate_keypair()

        assert public_key == "ssh-ed25519 AAAAnew marker"
        args = mock_run.call_args.args[0]
        assert args[:4] == ["ssh-keygen", "-q", "-t", "ed25519"]
        assert args[-1] == str(key_path)
        comment = args[args.index("-C") + 1]
        assert comment.startswith(f"{settings.ssh_key_marker}-")


# ---------------------------------------------------------------------------
# Addressing
# ---------------------------------------------------------------------------


class TestResolveHostAddress:
    """Tests for host address detection."""

    def test_configured_address_wins(self, settings: Settings) -> None:
        assert HostBridge(settings).resolve_host_address() == "10.0.0.1"

    def test_default_gateway_from_route_table(self, settings: Settings) -> None:
        Path(settings.route_table_path).write_text(ROUTE_TABLE)
        bridge = HostBridge(settings.model_copy(update={"host_address": None}))

        assert bridge.resolve_host_address() == "172.17.0.1"

    def test_fallback_alias_without_route_table(self, settings: Settings) -> None:
        bridge = HostBridge(settings.model_copy(update={"host_address": None}))
        assert bridge.resolve_host_address() == FALLBACK_HOST_ALIAS

    def test_resolution_is_cached(self, settings: Settings) -> None:
        route_file = Path(settings.route_table_path)
        route_file.write_text(ROUTE_TABLE)
        bridge = HostBridge(settings.model_copy(update={"host_address": None}))
        bridge.resolve_host_address()

        route_file.unlink()

        assert bridge.resolve_host_address() == "172.17.0.1"


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestRunOnHost:
    """Tests for SSH command execution."""

    @pytest.mark.asyncio
    async def test_builds_ssh_invocation(self, settings: Settings) -> None:
        key = _private_key(settings)
        bridge = HostBridge(settings)

        with patch(
            "compose_guardian.host.bridge.run_process",
            new_callable=AsyncMock,
            return_value=CommandResult(stdout="ok\n", stderr=""),
        ) as mock_run:
            result = await bridge.run_on_host("docker ps", timeout=12)

        assert result.stdout == "ok\n"
        args = mock_run.call_args.args[0]
        assert args[0] == "ssh"
        assert args[args.index("-i") + 1] == str(key)
        assert "BatchMode=yes" in args
        assert f"ConnectTimeout={settings.ssh_connect_timeout}" in args
        assert args[-2:] == ["root@10.0.0.1", "docker ps"]
        assert mock_run.call_args.kwargs == {"timeout": 12, "display": "docker ps"}
        assert stat.S_IMODE(key.stat().st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_missing_key_raises(self, settings: Settings) -> None:
        with pytest.raises(HostCommandError, match="does not exist"):
            await HostBridge(settings).run_on_host("true")

    @pytest.mark.asyncio
    async def test_failure_is_wrapped(self, settings: Settings) -> None:
        _private_key(settings)
        failure = CommandError(
            "cat x", "exit code 1: no such file", returncode=1, stderr="no such file"
        )

        with patch(
            "compose_guardian.host.bridge.run_process",
            new_callable=AsyncMock,
            side_effect=failure,
        ):
            with pytest.raises(HostCommandError) as exc_info:
                await HostBridge(settings).run_on_host("cat x")

        err = exc_info.value
        assert err.returncode == 1
        assert err.stderr == "no such file"
        assert str(err) == 'Failed to execute host command "cat x": exit code 1: no such file'

    @pytest.mark.asyncio
    async def test_probe(self, settings: Settings) -> None:
        bridge = HostBridge(settings)

        with patch.object(
            bridge,
            "run_on_host",
            new_callable=AsyncMock,
            return_value=CommandResult(stdout=f"{PROBE_TOKEN}\n", stderr=""),
        ):
            assert await bridge.probe() is True

        with patch.object(
            bridge,
            "run_on_host",
            new_callable=AsyncMock,
            side_effect=HostCommandError("echo", "exit code 255"),
        ):
            assert await bridge.probe() is False


class TestReachability:
    """Tests for the retrying connection gate."""

    @pytest.mark.asyncio
    async def test_succeeds_after_retries(self, settings: Settings) -> None:
        bridge = HostBridge(settings)

        with patch.object(
            bridge, "probe", new_callable=AsyncMock, side_effect=[False, False, True]
        ) as mock_probe:
            await bridge.wait_until_reachable(max_attempts=5, retry_delay=0)

        assert mock_probe.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up(self, settings: Settings) -> None:
        bridge = HostBridge(settings)

        with patch.object(bridge, "probe", new_callable=AsyncMock, return_value=False):
            with pytest.raises(ConnectionUnavailableError, match="after 3 attempts"):
                await bridge.wait_until_reachable(max_attempts=3, retry_delay=0)

    @pytest.mark.asyncio
    async def test_initialize_access(self, settings: Settings) -> None:
        bridge = HostBridge(settings)

        with (
            patch.object(
                bridge, "generate_keypair", new_callable=AsyncMock, return_value="ssh-ed25519 K"
            ),
            patch.object(bridge, "install_public_key") as mock_install,
            patch.object(bridge, "wait_until_reachable", new_callable=AsyncMock) as mock_wait,
        ):
            await bridge.initialize_access()

        mock_install.assert_called_once_with("ssh-ed25519 K")
        mock_wait.assert_awaited_once_with(
            max_attempts=settings.host_connect_attempts,
            retry_delay=settings.host_connect_retry_delay,
        )
