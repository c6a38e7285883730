"""Exegol pentest container and HTB OpenVPN helpers."""
import os
import re
import stat
import time
from pathlib import Path
from typing import List, Optional

import sh
import typer

from devbox.config import EXEGOL_IMAGE
from devbox.utils import ProvisionError, confirm, log_warn

TUNNEL_INTERFACE = "tun0"
VPN_LOG = "/tmp/htb-vpn.log"
VPN_WAIT_ATTEMPTS = 10
VPN_WAIT_INTERVAL = 1

# Enough for nmap, raw scans, debugging and tools that switch uid.
EXEGOL_CAPABILITIES = [
    "NET_ADMIN", "NET_RAW", "SYS_PTRACE", "DAC_READ_SEARCH",
    "SETUID", "SETGID", "MKNOD", "AUDIT_WRITE",
]


def tunnel_address(interface: str = TUNNEL_INTERFACE) -> Optional[str]:
    """IPv4 address of the VPN tunnel, None when the interface is down."""
    try:
        output = str(sh.ip("addr", "show", interface))
    except sh.ErrorReturnCode:
        return None
    match = re.search(r"inet (\S+)", output)
    return match.group(1) if match else ""


def exegol_command(name: str, workspace: Path, history: Path, privileged: bool = False,
                   host_history: Optional[Path] = None) -> List[str]:
    """Arguments for `docker` that start an Exegol shell on the host network."""
    args = [
        "run", "-it", "--rm",
        "--name", name,
        "--hostname", name,
        "--network", "host",
    ]
    if privileged:
        args.append("--privileged")
    else:
        args.append("--cap-drop=ALL")
        args.extend(f"--cap-add={cap}" for cap in EXEGOL_CAPABILITIES)
        args.extend(["--security-opt", "apparmor=unconfined",
                     "--security-opt", "seccomp=unconfined"])

    args.extend(["-v", f"{workspace}:/workspace",
                 "-v", f"{history}:/root/.zsh_history"])
    if host_history is not None and not privileged:
        args.extend(["-v", f"{host_history}:/root/.host_zsh_history:ro"])
    args.extend([
        "-e", f"DISPLAY={os.environ.get('DISPLAY', ':0')}",
        "-e", f"TERM={os.environ.get('TERM', 'xterm-256color')}",
        EXEGOL_IMAGE,
    ])
    return args


def run_exegol(name: str, home: Path, privileged: bool = False) -> None:
    """Start Exegol interactively; warns when the HTB tunnel is not up."""
    workspace = home / "docker" / "exegol-workspace"
    history = workspace / ".exegol_history"

    if privileged:
        log_warn("Running with --privileged (full host access)")

    typer.echo(f"🎯 Starting Exegol container: {name}")
    address = tunnel_address()
    if address is not None:
        typer.echo(f"✅ HTB VPN detected ({TUNNEL_INTERFACE} interface up)")
        if address:
            typer.echo(f"   IP: {address}")
    else:
        typer.echo("⚠️  No VPN detected - connect first with: devbox vpn start your-lab.ovpn")
        if not confirm("Continue anyway?"):
            raise typer.Exit(0)

    workspace.mkdir(parents=True, exist_ok=True)
    history.touch(exist_ok=True)

    typer.echo("🐳 Launching Exegol (this may take a moment on first run)...")
    typer.echo(f"   Workspace: {workspace}")
    if privileged:
        typer.echo("   Mode: PRIVILEGED (full access)")
    else:
        typer.echo("   Mode: Hardened (specific capabilities only)")
        typer.secho("   ⚠️  AppArmor/seccomp disabled for pentest tools - "
                    "only run in isolated network environments", fg=typer.colors.YELLOW)

    args = exegol_command(name, workspace, history, privileged=privileged,
                          host_history=home / ".zsh_history")
    sh.docker(*args, _fg=True)

    typer.echo("👋 Exegol session ended.")
    if not privileged:
        typer.echo(f"💡 If a tool hit permission issues, try: devbox exegol {name} --privileged")


def secure_ovpn(ovpn: Path) -> None:
    """VPN profiles may carry credentials; force mode 600."""
    mode = stat.S_IMODE(os.stat(ovpn).st_mode)
    if mode != 0o600:
        typer.echo(f"🔒 Securing OVPN file permissions (was {mode:o}, setting to 600)")
        os.chmod(ovpn, 0o600)


def wait_for_tunnel(attempts: int = VPN_WAIT_ATTEMPTS, interval: float = VPN_WAIT_INTERVAL) -> Optional[str]:
    """Poll for the tunnel interface a bounded number of times."""
    for _ in range(attempts):
        address = tunnel_address()
        if address is not None:
            return address
        time.sleep(interval)
        typer.echo(".", nl=False)
    return None


def vpn_start(ovpn: Path, htb_dir: Path) -> None:
    if not ovpn.is_file():
        typer.echo(f"❌ OVPN file not found: {ovpn}")
        typer.echo(f"Available OVPN files in {htb_dir}:")
        profiles = sorted(htb_dir.glob("*.ovpn")) if htb_dir.is_dir() else []
        for profile in profiles:
            typer.echo(f"  {profile}")
        if not profiles:
            typer.echo("  (none found)")
        raise ProvisionError(f"OVPN file not found: {ovpn}")

    secure_ovpn(ovpn)

    try:
        sh.sudo("pkill", "-f", "openvpn.*htb")
    except sh.ErrorReturnCode_1:
        pass  # no previous connection

    typer.echo("🔌 Connecting to HTB VPN...")
    typer.echo(f"   Config: {ovpn}")
    sh.sudo("openvpn", "--config", str(ovpn), "--daemon", "--log", VPN_LOG)

    address = wait_for_tunnel()
    typer.echo("")
    if address is None:
        raise ProvisionError(f"Connection may have failed. Check: tail -f {VPN_LOG}")
    typer.echo("✅ Connected!")
    if address:
        typer.echo(f"   VPN IP: {address}")


def vpn_stop() -> None:
    typer.echo("🔌 Disconnecting HTB VPN...")
    try:
        sh.sudo("pkill", "-f", "openvpn")
    except sh.ErrorReturnCode_1:
        pass  # nothing was running
    typer.echo("✅ Disconnected")


def vpn_status() -> bool:
    address = tunnel_address()
    if address is None:
        typer.echo("❌ VPN Not Connected")
        return False
    typer.echo("✅ VPN Connected")
    if address:
        typer.echo(f"   VPN IP: {address}")
    return True
