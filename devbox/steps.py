"""Provisioning workflow steps."""
import platform
import time
from datetime import datetime
from pathlib import Path

import sh
import typer

from devbox import stack, ubuntu
from devbox.config import DevboxConfig, INTERNAL_HOSTS, Secrets, UserLayout
from devbox.detect import ExistingState, detect_existing, print_summary, user_home
from devbox.utils import (
    ProvisionError, confirm, log_action, log_ok, log_phase, log_warn, render_template, write_file,
)


def preflight(config: DevboxConfig) -> ExistingState:
    """Detect existing installations and stop early if Docker is missing."""
    try:
        with open("/etc/os-release", 'r') as f:
            if "Ubuntu" not in f.read():
                log_warn("This tool is designed for Ubuntu. Proceed with caution.")
    except OSError:
        log_warn("Cannot read /etc/os-release; assuming a compatible system.")

    state = detect_existing(config)
    print_summary(config, state)

    if not state.docker:
        raise ProvisionError("Docker not found! Docker must be pre-installed on this host.")
    return state


def setup_user(config: DevboxConfig, secrets: Secrets, dry_run: bool = False) -> tuple:
    """Phase 2; returns (home, created)."""
    log_phase(f"PHASE 2: Create User '{config.user}'")
    created = ubuntu.create_user(config.user, secrets.user_password, dry_run=dry_run)
    home = user_home(config.user) or Path(f"/home/{config.user}")
    ubuntu.setup_ssh_directory(config.user, home, config.ssh_public_key, dry_run=dry_run)
    return home, created


def install_terminal_tools(user: str, home: Path, dry_run: bool = False) -> None:
    log_phase("PHASE 7b: Lazy Tools (lazygit, lazydocker, lazyvim)")
    ubuntu.install_lazygit(dry_run=dry_run)
    ubuntu.install_lazydocker(dry_run=dry_run)
    ubuntu.install_neovim(dry_run=dry_run)
    ubuntu.install_lazyvim(user, home, dry_run=dry_run)


def write_credentials(config: DevboxConfig, layout: UserLayout, secrets: Secrets,
                      user_created: bool, stack_written: bool = True, dry_run: bool = False) -> None:
    """Store generated credentials in a 600 file owned by the user (never on the terminal)."""
    path = layout.credentials_file
    if dry_run:
        log_action(f"[DRY RUN] Would write credentials to {path}")
        return

    password = secrets.user_password if user_created else "(existing user - password unchanged)"
    if stack_written:
        webui_secret, traefik_password = secrets.openwebui_secret, secrets.traefik_password
    else:
        webui_secret = traefik_password = "(existing stack - unchanged, see ~/docker)"
    content = render_template(
        "credentials.txt",
        GENERATED_AT=datetime.now().strftime("%a %b %d %H:%M:%S %Y"),
        USER=config.user,
        USER_PASSWORD=password,
        WEBUI_SECRET=webui_secret,
        TRAEFIK_USER=config.traefik_user,
        TRAEFIK_PASSWORD=traefik_password,
    )
    write_file(path, content, mode=0o600)
    sh.chown(f"{config.user}:{config.user}", str(path))


def print_next_steps(config: DevboxConfig, layout: UserLayout, elapsed: int) -> None:
    log_phase("CREDENTIALS")
    typer.secho(f"  Credentials saved to: {layout.credentials_file}", fg=typer.colors.GREEN)
    typer.echo(f"  View:   cat {layout.credentials_file}")
    typer.echo(f"  Delete: rm {layout.credentials_file}")
    typer.secho("  ⚠️  DELETE the credentials file after recording it in a password manager!",
                fg=typer.colors.RED)

    log_phase("NEXT STEPS")
    typer.echo("1. Test SSH from a NEW terminal (keep this one open):")
    typer.echo(f"     ssh -p {config.ssh_port} {config.user}@YOUR_SERVER_IP")
    typer.echo("2. Authenticate Tailscale:")
    typer.echo("     sudo tailscale up --accept-routes --advertise-tags=tag:devbox")
    typer.echo("     Enable MagicDNS: https://login.tailscale.com/admin/dns")
    typer.echo(f"3. Start services (as {config.user}): devbox stack up")
    typer.echo("4. Install the AI dev stack: devbox ai-tools")
    typer.echo("5. Pull Ollama models: docker exec -it ollama ollama pull llama3.2")
    typer.echo("6. Verify hardening: devbox security-check")

    log_phase("ACCESS SERVICES")
    typer.echo("Add to /etc/hosts on your laptop (after Tailscale is connected):")
    typer.echo(f"     TAILSCALE_IP  {' '.join(INTERNAL_HOSTS)}")
    typer.echo("     http://ai.internal        → Open WebUI (create admin account on first visit)")
    typer.echo(f"     http://traefik.internal   → Traefik Dashboard (user: {config.traefik_user})")
    typer.echo("     http://ollama.internal    → Ollama API")
    typer.echo("Disable Open WebUI signup after creating the admin: set ENABLE_SIGNUP=false in .env")

    log_phase("HTB / PENTEST WORKFLOW")
    typer.echo("     devbox vpn start ~/htb/your-lab.ovpn")
    typer.echo("     devbox exegol")

    typer.echo("")
    typer.echo(f"Setup completed in {elapsed} seconds")
    typer.secho("⚠️  DO NOT close this terminal until you verify SSH access!", fg=typer.colors.RED)


def provision_system(config: DevboxConfig, dry_run: bool = False) -> None:
    """Main provisioning workflow; every phase is safe to re-run."""
    current_platform = platform.system()
    if current_platform != 'Linux':
        raise NotImplementedError(f"Platform {current_platform} is not supported")

    state = preflight(config)
    if not confirm("Continue with setup?"):
        raise typer.Exit(0)

    secrets = Secrets.for_config(config)
    start = time.monotonic()

    # Phase 1: packages
    log_phase("PHASE 1: System Update & Essential Packages")
    ubuntu.configure_locale(dry_run=dry_run)
    ubuntu.install_packages(dry_run=dry_run)

    # Phase 2: user
    home, user_created = setup_user(config, secrets, dry_run=dry_run)
    layout = UserLayout(home)

    # Phase 3-4: SSH and firewall
    log_phase("PHASE 3: SSH Hardening")
    restart_ssh = ubuntu.harden_ssh(config.ssh_port, dry_run=dry_run)
    log_phase("PHASE 4: Firewall Configuration")
    ubuntu.configure_firewall(config.ssh_port, dry_run=dry_run)

    # Phase 5-7: Docker, Tailscale, mise and terminal tools
    log_phase("PHASE 5: Docker Verification")
    ubuntu.verify_docker(config.user, dry_run=dry_run)
    log_phase("PHASE 6: Tailscale VPN")
    ubuntu.install_tailscale(dry_run=dry_run)
    log_phase("PHASE 7: mise (Polyglot Version Manager)")
    ubuntu.install_mise(config.user, home, installed=state.mise, dry_run=dry_run)
    install_terminal_tools(config.user, home, dry_run=dry_run)

    # Phase 8: Docker stack
    log_phase("PHASE 8: Docker Stack Configuration")
    stack_written = stack.write_stack(config, layout, secrets, dry_run=dry_run)
    stack.pull_exegol(state.exegol, dry_run=dry_run)

    # Phase 9: shell
    log_phase("PHASE 9: Shell Configuration")
    ubuntu.install_oh_my_zsh(config.user, installed=state.zsh, dry_run=dry_run)
    ubuntu.configure_shell(home, dry_run=dry_run)

    # Phase 10: finalize
    log_phase("PHASE 10: Finalizing")
    ubuntu.finalize(config.user, home, restart_ssh, config.ssh_port, dry_run=dry_run)
    write_credentials(config, layout, secrets, user_created, stack_written, dry_run=dry_run)
    log_ok("Setup complete!")

    print_next_steps(config, layout, int(time.monotonic() - start))
