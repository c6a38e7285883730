"""Detection of what a previous run (or the image) already installed."""
import pwd
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import sh
import typer

from devbox.config import DevboxConfig
from devbox.utils import command_exists, logger


@dataclass
class ExistingState:
    user: bool = False
    docker: bool = False
    tailscale: bool = False
    mise: bool = False
    zsh: bool = False
    exegol: bool = False


def user_exists(name: str) -> bool:
    """Check if a Unix account exists."""
    try:
        pwd.getpwnam(name)
    except KeyError:
        return False
    return True


def user_home(name: str) -> Optional[Path]:
    """Home directory from the passwd database, None for unknown users."""
    try:
        return Path(pwd.getpwnam(name).pw_dir)
    except KeyError:
        return None


def check_mise() -> bool:
    """Check the install locations used by the mise installer, then PATH."""
    return (
        Path("/opt/mise").exists()
        or Path("/usr/local/bin/mise").exists()
        or command_exists('mise')
    )


def check_exegol_image() -> bool:
    """Check if an Exegol image is present in the local Docker store."""
    try:
        images = str(sh.docker("images"))
    except (sh.ErrorReturnCode, sh.CommandNotFound):
        return False
    return "exegol" in images.lower()


def detect_existing(config: DevboxConfig) -> ExistingState:
    """Inspect the host without changing anything."""
    state = ExistingState(
        user=user_exists(config.user),
        docker=command_exists('docker'),
        tailscale=command_exists('tailscale'),
        mise=check_mise(),
        zsh=Path(f"/home/{config.user}/.oh-my-zsh").is_dir(),
    )
    if state.docker:
        state.exegol = check_exegol_image()
    logger.debug("Detected state: %s", state)
    return state


def _line(present: bool, yes: str, no: str) -> str:
    return f"  ✓ {yes}" if present else f"  ○ {no}"


def print_summary(config: DevboxConfig, state: ExistingState) -> None:
    """Show the configuration and detected installations before asking to continue."""
    typer.secho("Configuration:", fg=typer.colors.YELLOW)
    typer.echo(f"  User:        {config.user}")
    typer.echo(f"  SSH Port:    {config.ssh_port}")
    typer.echo(f"  Domain:      {config.domain}")
    key_state = "Provided" if config.ssh_public_key else "Not provided (add manually)"
    typer.echo(f"  SSH Key:     {key_state}")
    typer.echo("")

    typer.secho("Detected Existing Installations:", fg=typer.colors.YELLOW)
    typer.echo(_line(state.user, f"User '{config.user}' exists", f"User '{config.user}' will be created"))
    typer.echo("  ✓ Docker installed" if state.docker else "  ✗ Docker NOT found (required!)")
    typer.echo(_line(state.tailscale, "Tailscale installed", "Tailscale will be installed"))
    typer.echo(_line(state.mise, "mise installed", "mise will be installed"))
    typer.echo(_line(state.zsh, "Oh-My-Zsh configured", "Oh-My-Zsh will be installed"))
    typer.echo(_line(state.exegol, "Exegol image found", "Exegol will be pulled on first use"))
    typer.echo("")
