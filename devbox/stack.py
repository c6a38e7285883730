"""Docker Compose stack: file generation and day-to-day operations."""
import time
from pathlib import Path

import sh
import typer

from devbox.config import DevboxConfig, EXEGOL_IMAGE, INTERNAL_HOSTS, Secrets, UserLayout
from devbox.ubuntu import get_tailscale_ip
from devbox.utils import (
    confirm, log_action, log_info, log_ok, log_warn, logger, render_template, write_file,
)

# Start order; shutdown runs in reverse.
STACK_PROJECTS = ["traefik", "ollama-openwebui"]
SOCKET_PROXY_WAIT = 3
LOOPBACK = "127.0.0.1"


def stack_exists(docker_dir: Path) -> bool:
    return (docker_dir / "traefik" / "docker-compose.yml").exists()


def create_directories(layout: UserLayout) -> None:
    docker_dir = layout.docker_dir
    for directory in (
        docker_dir / "traefik" / "dynamic",
        docker_dir / "traefik" / "logs",
        docker_dir / "ollama-openwebui",
        docker_dir / "exegol-workspace",
        layout.projects_dir,
        layout.htb_dir,
    ):
        directory.mkdir(parents=True, exist_ok=True)


def hash_dashboard_password(password: str) -> str:
    """apr1 hash accepted by Traefik's basicAuth middleware."""
    return str(sh.openssl("passwd", "-apr1", password)).strip()


def traefik_bind_address() -> str:
    """Host address Traefik publishes :80 on: the Tailscale IPv4, else loopback.

    Docker-published ports bypass UFW, so 0.0.0.0 is never used.
    """
    address = get_tailscale_ip()
    if address:
        return address
    log_warn(f"Tailscale not connected - Traefik will listen on {LOOPBACK} only")
    log_info("Re-run `devbox setup` after `tailscale up` to publish it on the tailnet")
    return LOOPBACK


def write_traefik(config: DevboxConfig, docker_dir: Path, secrets: Secrets) -> None:
    log_info("Creating Traefik configuration...")
    traefik_dir = docker_dir / "traefik"
    bind = traefik_bind_address()
    write_file(traefik_dir / "docker-compose.yml",
               render_template("traefik-compose.yml", TRAEFIK_BIND=bind))
    logger.debug("Traefik published on %s:80", bind)
    write_file(traefik_dir / "traefik.yml", render_template("traefik.yml"))
    write_file(
        traefik_dir / "dynamic" / "dashboard-auth.yml",
        render_template(
            "dashboard-auth.yml",
            TRAEFIK_USER=config.traefik_user,
            TRAEFIK_HASH=hash_dashboard_password(secrets.traefik_password),
        ),
        mode=0o600,
    )
    log_ok("Traefik configured with socket proxy and dashboard auth")


def write_ollama(docker_dir: Path, secrets: Secrets) -> None:
    log_info("Creating Ollama + Open WebUI configuration...")
    ollama_dir = docker_dir / "ollama-openwebui"
    write_file(ollama_dir / ".env",
               render_template("ollama.env", WEBUI_SECRET=secrets.openwebui_secret),
               mode=0o600)
    write_file(ollama_dir / ".gitignore", ".env\n")
    write_file(ollama_dir / "docker-compose.yml", render_template("ollama-compose.yml"))
    log_ok("Ollama + Open WebUI configured with security hardening")


def write_stack(config: DevboxConfig, layout: UserLayout, secrets: Secrets, dry_run: bool = False) -> bool:
    """Generate the Compose stack; an existing stack is only replaced after confirmation.

    Returns True if the files were (or, in dry-run mode, would be) written.
    """
    docker_dir = layout.docker_dir

    if stack_exists(docker_dir):
        log_warn(f"Docker stack already exists at {docker_dir}")
        if not confirm("Overwrite existing configuration?"):
            log_info("Skipping docker stack configuration (keeping existing)")
            if not dry_run:
                create_directories(layout)
            return False

    if dry_run:
        log_action(f"[DRY RUN] Would write Traefik and Ollama stacks under {docker_dir}")
        return True

    log_info("Creating directory structure...")
    create_directories(layout)
    write_file(docker_dir / ".gitignore", render_template("docker-gitignore"))
    log_ok("Created global .gitignore for docker directory")

    write_traefik(config, docker_dir, secrets)
    write_ollama(docker_dir, secrets)
    return True


def pull_exegol(existing: bool, dry_run: bool = False) -> None:
    """Offer to pre-pull the (large) Exegol image; failure only delays it to first use."""
    if existing:
        log_ok("Exegol image already exists")
        return

    log_info("Exegol image not found locally")
    if not confirm("Pre-pull Exegol image now? (~15GB, takes a while)"):
        log_info("Skipping Exegol pre-pull (will download on first use)")
        return

    if dry_run:
        log_action(f"[DRY RUN] Would pull {EXEGOL_IMAGE}")
        return

    log_info("Pulling Exegol image (this may take 10-30 minutes)...")
    try:
        sh.docker("pull", EXEGOL_IMAGE, _fg=True)
        log_ok("Exegol image pulled successfully")
    except sh.ErrorReturnCode:
        log_warn("Exegol pull failed - will be pulled on first use")


def compose(project_dir: Path, *args: str) -> None:
    logger.debug("docker compose %s in %s", " ".join(args), project_dir)
    sh.docker("compose", *args, _cwd=str(project_dir), _fg=True)


def stack_up(docker_dir: Path) -> None:
    """Start Traefik first, give the socket proxy time to come up, then the AI stack."""
    typer.echo("🚀 Starting all services...")
    for project in STACK_PROJECTS:
        typer.echo(f"  → {project}...")
        compose(docker_dir / project, "up", "-d")
        if project == "traefik":
            typer.echo("  → Waiting for docker-socket-proxy...")
            time.sleep(SOCKET_PROXY_WAIT)

    typer.echo("")
    typer.echo("✅ All services started!")
    typer.echo(running_table())


def stack_down(docker_dir: Path) -> None:
    typer.echo("🛑 Stopping all services...")
    for project in reversed(STACK_PROJECTS):
        project_dir = docker_dir / project
        if project_dir.is_dir():
            typer.echo(f"  → Stopping {project}...")
            compose(project_dir, "down")
    typer.echo("✅ All services stopped.")


def running_table() -> str:
    return str(sh.docker("ps", "--format", "table {{.Names}}\t{{.Status}}\t{{.Ports}}"))


def running_containers() -> list:
    output = str(sh.docker("ps", "--format", "{{.Names}}"))
    return [line.strip() for line in output.splitlines() if line.strip()]


def root_containers() -> list:
    """Names of running containers whose configured user is empty, 0 or root."""
    ids = str(sh.docker("ps", "-q")).split()
    if not ids:
        return []
    output = str(sh.docker("inspect", "--format", "{{.Name}} {{.Config.User}}", *ids))
    names = []
    for line in output.splitlines():
        name, _, user = line.strip().partition(" ")
        if name and user.strip() in ("", "0", "root"):
            names.append(name.lstrip("/"))
    return names


def stack_status() -> None:
    """Containers, security posture, Tailscale state and the hosts line for the laptop."""
    rule = "━" * 70
    typer.echo("📊 Docker Services Status")
    typer.echo(rule)
    typer.echo(running_table())

    typer.echo("🔒 Security Status")
    typer.echo(rule)
    if "docker-socket-proxy" in running_containers():
        typer.echo("  ✅ Docker socket proxy: running")
    else:
        typer.echo("  ⚠️  Docker socket proxy: not running")

    as_root = root_containers()
    if as_root:
        typer.echo(f"  ⚠️  Containers running as root: {' '.join(as_root)}")
    else:
        typer.echo("  ✅ No containers running as root")
    typer.echo("")

    typer.echo("📡 Tailscale Status")
    typer.echo(rule)
    try:
        typer.echo(str(sh.tailscale("status")))
        ts_ip = str(sh.tailscale("ip", "-4")).strip()
    except (sh.ErrorReturnCode, sh.CommandNotFound):
        typer.echo("  Tailscale not connected")
        ts_ip = "TAILSCALE_IP"
    typer.echo("")

    typer.echo("🌐 Access URLs (add to /etc/hosts on your laptop):")
    typer.echo(rule)
    typer.echo(f"  {ts_ip}  {' '.join(INTERNAL_HOSTS)}")
    typer.echo("")
    typer.echo("  http://ai.internal        → Open WebUI")
    typer.echo("  http://traefik.internal   → Traefik Dashboard (requires auth)")
    typer.echo("  http://ollama.internal    → Ollama API")
