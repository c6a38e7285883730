"""Laptop-side configuration for reaching the remote Ollama over Tailscale."""
import json
import os
from pathlib import Path
from typing import Optional

import typer

from devbox.config import INTERNAL_HOSTS
from devbox.utils import backup_file, log_info, log_ok, render_template, write_file

DEFAULT_MODEL = "qwen3"
# Ollama itself only listens on the devbox loopback; Traefik routes this name.
OLLAMA_URL = "http://ollama.internal"


def hosts_entry(server_ip: str) -> str:
    """/etc/hosts line mapping the devbox service names to its Tailscale IP."""
    return f"{server_ip}  {' '.join(INTERNAL_HOSTS)}"


def detect_shell_config(home: Optional[Path] = None) -> Path:
    """rc file for the login shell: zsh, bash, otherwise ~/.profile."""
    home = home or Path.home()
    shell = os.path.basename(os.environ.get('SHELL', ''))
    if shell == "zsh":
        return home / ".zshrc"
    if shell == "bash":
        return home / ".bashrc"
    return home / ".profile"


def setup_ollama_shell(server_ip: str, shell_config: Path, model: str = DEFAULT_MODEL) -> Optional[Path]:
    """Append ask/askcode/chat helpers to the rc file; returns the backup path."""
    log_info(f"Setting up Ollama remote access to {OLLAMA_URL} (devbox at {server_ip})")
    log_info(f"Shell config: {shell_config}")

    backup = backup_file(shell_config)
    with open(shell_config, 'a') as f:
        f.write(render_template("ollama-shell.sh", OLLAMA_SERVER_IP=server_ip,
                                OLLAMA_URL=OLLAMA_URL, OLLAMA_MODEL=model))

    log_ok(f"Configuration added to {shell_config}")
    typer.echo(f"Reload your shell with: source {shell_config}")
    typer.echo("Available commands: ask, askcode, chat, ollamals, ai")
    print_hosts_hint(server_ip)
    return backup


def print_hosts_hint(server_ip: str) -> None:
    typer.echo("Add to /etc/hosts (needs sudo) if not already there:")
    typer.echo(f"  {hosts_entry(server_ip)}")


def zed_settings(model: str = DEFAULT_MODEL) -> dict:
    return {
        "language_models": {
            "ollama": {
                "api_url": OLLAMA_URL,
                "low_speed_timeout_in_seconds": 120,
            }
        },
        "assistant": {
            "version": "2",
            "default_model": {"provider": "ollama", "model": model},
        },
    }


def setup_zed(server_ip: str, home: Optional[Path] = None, model: str = DEFAULT_MODEL) -> Path:
    """Write Zed settings pointing at the remote Ollama, backing up the old file."""
    settings = (home or Path.home()) / ".config" / "zed" / "settings.json"
    backup = backup_file(settings)
    if backup:
        log_info(f"Backed up existing config to: {backup}")

    write_file(settings, json.dumps(zed_settings(model), indent=2) + "\n")
    log_ok(f"Zed configuration created at: {settings}")
    print_hosts_hint(server_ip)
    typer.echo("Restart Zed if it is running, then open the Assistant with Ctrl+Enter.")
    return settings
