"""CLI interface for the devbox tool."""
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import sh
import typer

from . import aitools, config, laptop, pentest, security, stack, steps, utils

app = typer.Typer(
    name="devbox",
    help="Provision and operate a remote dev / pentest / AI workstation.",
    add_completion=False,
    no_args_is_help=True,
)
stack_app = typer.Typer(help="Start, stop and inspect the Docker stack.", no_args_is_help=True)
vpn_app = typer.Typer(help="Manage the HTB OpenVPN connection.", no_args_is_help=True)
laptop_app = typer.Typer(help="Configure a laptop to use the remote Ollama.", no_args_is_help=True)
app.add_typer(stack_app, name="stack")
app.add_typer(vpn_app, name="vpn")
app.add_typer(laptop_app, name="laptop")

DOCKER_DIR_OPTION = typer.Option(None, "--docker-dir", help="Stack directory (default: ~/docker)")


@contextmanager
def fatal_errors():
    """Turn provisioning failures into a red message and exit status 1."""
    try:
        yield
    except utils.ProvisionError as e:
        typer.secho(f"[ERROR] {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except sh.ErrorReturnCode as e:
        typer.secho(f"[ERROR] Command failed ({e.exit_code}): {e.full_cmd}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def _docker_dir(docker_dir: Optional[Path]) -> Path:
    return docker_dir or Path.home() / "docker"


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output")):
    """A readable, re-runnable provisioning tool for an Ubuntu devbox."""
    utils.setup_logging(verbose)


@app.command()
def setup(
    user: str = typer.Option("dev", "--user", envvar="DEVBOX_USER", help="Account to create"),
    ssh_port: int = typer.Option(5522, "--ssh-port", envvar="DEVBOX_SSH_PORT", help="SSH listen port"),
    email: str = typer.Option("admin@example.com", "--email", envvar="DEVBOX_EMAIL"),
    domain: str = typer.Option("example.com", "--domain", envvar="DEVBOX_DOMAIN"),
    ssh_key: Optional[str] = typer.Option(None, "--ssh-key", envvar="SSH_PUBLIC_KEY",
                                          help="Public key for the new user"),
    openwebui_secret: Optional[str] = typer.Option(None, "--openwebui-secret", envvar="OPENWEBUI_SECRET",
                                                   help="Generated when omitted"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview changes without applying them"),
):
    """Provision this host: user, SSH, firewall, Tailscale, tools and the Docker stack."""
    if not utils.is_root():
        typer.echo("❗ Setup requires root. Run with sudo.")
        raise typer.Exit(1)

    run_config = config.DevboxConfig(
        user=user,
        email=email,
        ssh_port=ssh_port,
        domain=domain,
        ssh_public_key=config.resolve_ssh_public_key(ssh_key),
        openwebui_secret=openwebui_secret,
    )
    with fatal_errors():
        steps.provision_system(run_config, dry_run)
    typer.echo("✅ Provisioning complete!")


@stack_app.command("up")
def stack_up(docker_dir: Optional[Path] = DOCKER_DIR_OPTION):
    """Start Traefik, then Ollama + Open WebUI."""
    with fatal_errors():
        stack.stack_up(_docker_dir(docker_dir))


@stack_app.command("down")
def stack_down(docker_dir: Optional[Path] = DOCKER_DIR_OPTION):
    """Stop all stack services."""
    with fatal_errors():
        stack.stack_down(_docker_dir(docker_dir))


@stack_app.command("status")
def stack_status():
    """Show containers, security posture and access URLs."""
    with fatal_errors():
        stack.stack_status()


@app.command("security-check")
def security_check(docker_dir: Optional[Path] = DOCKER_DIR_OPTION):
    """Verify the container hardening; exits 1 when a check fails."""
    with fatal_errors():
        report = security.run_security_check(_docker_dir(docker_dir))
    raise typer.Exit(report.exit_code)


@app.command()
def exegol(
    name: str = typer.Argument("exegol-htb", help="Container name"),
    privileged: bool = typer.Option(False, "--privileged", help="Full privileges instead of selected capabilities"),
):
    """Start an Exegol pentest shell on the host network."""
    with fatal_errors():
        pentest.run_exegol(name, Path.home(), privileged=privileged)


@vpn_app.command("start")
def vpn_start(ovpn: Optional[Path] = typer.Argument(None, help="OpenVPN profile (default: ~/htb/lab.ovpn)")):
    """Connect and wait for the tunnel."""
    htb_dir = Path.home() / "htb"
    with fatal_errors():
        pentest.vpn_start(ovpn or htb_dir / "lab.ovpn", htb_dir)


@vpn_app.command("stop")
def vpn_stop():
    """Disconnect."""
    with fatal_errors():
        pentest.vpn_stop()


@vpn_app.command("status")
def vpn_status():
    """Show whether the tunnel is up."""
    pentest.vpn_status()


@app.command("ai-tools")
def ai_tools(
    claude: bool = typer.Option(False, "--claude", help="Install/update Claude Code"),
    opencode: bool = typer.Option(False, "--opencode", help="Install/update OpenCode"),
    goose: bool = typer.Option(False, "--goose", help="Install/update Goose"),
    llm: bool = typer.Option(False, "--llm", help="Install/update LLM (Datasette)"),
    fabric: bool = typer.Option(False, "--fabric", help="Install/update Fabric"),
    install_all: bool = typer.Option(False, "--all", help="Install all tools"),
    update: bool = typer.Option(False, "--update", help="Update all installed tools"),
    status: bool = typer.Option(False, "--status", help="Show installation status"),
):
    """Install AI coding CLIs; without options an interactive menu is shown."""
    selected = [key for key, flag in (("claude", claude), ("opencode", opencode), ("goose", goose),
                                      ("llm", llm), ("fabric", fabric)) if flag]

    with fatal_errors():
        if status:
            aitools.tool_status()
        elif install_all:
            aitools.install_all()
        elif update:
            aitools.update_installed()
        elif selected:
            for key in selected:
                aitools.install_tool(aitools.TOOLS_BY_KEY[key])
        else:
            aitools.interactive_menu()
            return

    if not status:
        utils.log_info("Open a new shell (or run `exec $SHELL`) to pick up PATH changes")


SERVER_IP_OPTION = typer.Option(..., "--server-ip", envvar="OLLAMA_SERVER_IP",
                                help="Tailscale IP of the devbox (tailscale ip -4); "
                                     "ollama.internal must resolve to it")


@laptop_app.command("ollama")
def laptop_ollama(
    server_ip: str = SERVER_IP_OPTION,
    shell_config: Optional[Path] = typer.Option(None, "--shell-config", help="rc file to extend"),
    model: str = typer.Option(laptop.DEFAULT_MODEL, "--model"),
):
    """Add ask/askcode/chat shell helpers that talk to the remote Ollama."""
    laptop.setup_ollama_shell(server_ip, shell_config or laptop.detect_shell_config(), model=model)


@laptop_app.command("zed")
def laptop_zed(
    server_ip: str = SERVER_IP_OPTION,
    model: str = typer.Option(laptop.DEFAULT_MODEL, "--model"),
):
    """Point the Zed editor assistant at the remote Ollama."""
    laptop.setup_zed(server_ip, model=model)


if __name__ == "__main__":
    app()
