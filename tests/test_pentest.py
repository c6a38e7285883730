"""Tests for Exegol and HTB VPN helpers."""
import os
import stat
from pathlib import Path
from unittest.mock import patch, call

import pytest
import sh
import typer

from devbox import pentest
from devbox.config import EXEGOL_IMAGE
from devbox.utils import ProvisionError


class TestExegolCommand:
    """Tests for the docker arguments used to start Exegol."""

    def test_hardened_mode(self):
        """Test hardened mode drops all capabilities and adds back the pentest set."""
        args = pentest.exegol_command("exegol-htb", Path("/ws"), Path("/ws/.hist"),
                                      host_history=Path("/home/dev/.zsh_history"))

        assert args[:3] == ["run", "-it", "--rm"]
        assert "--privileged" not in args
        assert "--cap-drop=ALL" in args
        for cap in pentest.EXEGOL_CAPABILITIES:
            assert f"--cap-add={cap}" in args
        assert "apparmor=unconfined" in args
        assert "seccomp=unconfined" in args
        assert "/home/dev/.zsh_history:/root/.host_zsh_history:ro" in args
        assert args[args.index("--network") + 1] == "host"
        assert args[-1] == EXEGOL_IMAGE

    def test_privileged_mode(self):
        """Test privileged mode skips the capability list."""
        args = pentest.exegol_command("exegol-htb", Path("/ws"), Path("/ws/.hist"), privileged=True,
                                      host_history=Path("/home/dev/.zsh_history"))

        assert "--privileged" in args
        assert not any(arg.startswith("--cap-") for arg in args)
        assert "/ws:/workspace" in args
        assert not any("host_zsh_history" in arg for arg in args)


class TestTunnel:
    """Tests for tun0 detection and polling."""

    @patch('devbox.pentest.sh.ip', create=True)
    def test_tunnel_address(self, mock_ip):
        """Test the inet address is parsed from `ip addr`."""
        mock_ip.return_value = "5: tun0: <UP>\n    inet 10.10.14.7/23 scope global tun0\n"

        assert pentest.tunnel_address() == "10.10.14.7/23"
        mock_ip.assert_called_once_with("addr", "show", "tun0")

    @patch('devbox.pentest.sh.ip', create=True)
    def test_tunnel_down(self, mock_ip):
        """Test a missing interface reports None."""
        mock_ip.side_effect = sh.ErrorReturnCode_1("ip addr show tun0", b"", b"does not exist")

        assert pentest.tunnel_address() is None

    @patch('devbox.pentest.time.sleep')
    @patch('devbox.pentest.tunnel_address')
    def test_wait_is_bounded(self, mock_address, mock_sleep):
        """Test polling gives up after the configured attempts."""
        mock_address.return_value = None

        assert pentest.wait_for_tunnel(attempts=4, interval=1) is None
        assert mock_address.call_count == 4
        assert mock_sleep.call_args_list == [call(1)] * 4

    @patch('devbox.pentest.time.sleep')
    @patch('devbox.pentest.tunnel_address')
    def test_wait_returns_when_up(self, mock_address, mock_sleep):
        """Test polling stops as soon as the tunnel appears."""
        mock_address.side_effect = [None, "10.10.14.7/23"]

        assert pentest.wait_for_tunnel() == "10.10.14.7/23"
        mock_sleep.assert_called_once_with(pentest.VPN_WAIT_INTERVAL)


class TestVpn:
    """Tests for VPN start/stop/status."""

    def test_missing_profile_lists_available(self, tmp_path, capsys):
        """Test a missing OVPN file lists the profiles in the HTB directory."""
        (tmp_path / "lab.ovpn").write_text("client\n")

        with pytest.raises(ProvisionError):
            pentest.vpn_start(tmp_path / "missing.ovpn", tmp_path)

        out = capsys.readouterr().out
        assert "OVPN file not found" in out
        assert str(tmp_path / "lab.ovpn") in out

    @patch('devbox.pentest.wait_for_tunnel')
    @patch('devbox.pentest.sh.sudo', create=True)
    def test_start_secures_profile(self, mock_sudo, mock_wait, tmp_path, capsys):
        """Test the profile is chmod 600 and openvpn runs as a daemon."""
        ovpn = tmp_path / "lab.ovpn"
        ovpn.write_text("client\n")
        os.chmod(ovpn, 0o644)
        mock_sudo.side_effect = [sh.ErrorReturnCode_1("pkill", b"", b""), ""]
        mock_wait.return_value = "10.10.14.7/23"

        pentest.vpn_start(ovpn, tmp_path)

        assert stat.S_IMODE(os.stat(ovpn).st_mode) == 0o600
        mock_sudo.assert_called_with("openvpn", "--config", str(ovpn), "--daemon", "--log", pentest.VPN_LOG)
        assert "VPN IP: 10.10.14.7/23" in capsys.readouterr().out

    @patch('devbox.pentest.wait_for_tunnel')
    @patch('devbox.pentest.sh.sudo', create=True)
    def test_start_without_tunnel_fails(self, mock_sudo, mock_wait, tmp_path):
        """Test a tunnel that never appears is an error."""
        ovpn = tmp_path / "lab.ovpn"
        ovpn.write_text("client\n")
        mock_wait.return_value = None

        with pytest.raises(ProvisionError, match="htb-vpn.log"):
            pentest.vpn_start(ovpn, tmp_path)

    @patch('devbox.pentest.sh.sudo', create=True)
    def test_stop_when_not_running(self, mock_sudo, capsys):
        """Test stopping without a running openvpn still succeeds."""
        mock_sudo.side_effect = sh.ErrorReturnCode_1("pkill", b"", b"")

        pentest.vpn_stop()

        assert "Disconnected" in capsys.readouterr().out

    @patch('devbox.pentest.tunnel_address')
    def test_status(self, mock_address):
        """Test status reflects the tunnel state."""
        mock_address.return_value = None
        assert pentest.vpn_status() is False

        mock_address.return_value = "10.10.14.7/23"
        assert pentest.vpn_status() is True


class TestRunExegol:
    """Tests for the interactive Exegol launcher."""

    @patch('devbox.pentest.sh.docker', create=True)
    @patch('devbox.pentest.confirm')
    @patch('devbox.pentest.tunnel_address')
    def test_no_vpn_declined(self, mock_address, mock_confirm, mock_docker, tmp_path):
        """Test declining without a VPN exits cleanly without starting a container."""
        mock_address.return_value = None
        mock_confirm.return_value = False

        with pytest.raises(typer.Exit):
            pentest.run_exegol("exegol-htb", tmp_path)

        mock_docker.assert_not_called()

    @patch('devbox.pentest.sh.docker', create=True)
    @patch('devbox.pentest.tunnel_address')
    def test_with_vpn(self, mock_address, mock_docker, tmp_path):
        """Test the workspace and history file are created before launch."""
        mock_address.return_value = "10.10.14.7/23"

        pentest.run_exegol("exegol-htb", tmp_path)

        workspace = tmp_path / "docker" / "exegol-workspace"
        assert (workspace / ".exegol_history").exists()
        args, kwargs = mock_docker.call_args
        assert "exegol-htb" in args
        assert kwargs == {"_fg": True}
