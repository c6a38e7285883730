"""Installer for third-party AI coding CLIs."""
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import sh
import typer

from devbox.utils import command_exists, log_info, log_ok, log_warn


@dataclass
class AITool:
    key: str
    name: str
    binary: str
    description: str
    installer_url: Optional[str] = None
    installer_env: Dict[str, str] = field(default_factory=dict)
    hints: List[str] = field(default_factory=list)


TOOLS = [
    AITool("claude", "Claude Code", "claude", "Anthropic",
           installer_url="https://claude.ai/install.sh",
           hints=["Run: claude login"]),
    AITool("opencode", "OpenCode", "opencode", "Open-source, multi-provider",
           installer_url="https://opencode.ai/install",
           hints=["Set: export ANTHROPIC_API_KEY=your-key"]),
    AITool("goose", "Goose", "goose", "Block's AI agent",
           installer_url="https://github.com/block/goose/releases/download/stable/download_cli.sh",
           installer_env={"CONFIGURE": "false"},
           hints=["Run: goose configure"]),
    AITool("llm", "LLM", "llm", "Datasette CLI",
           hints=["Run: llm keys set openai", "Docs: https://llm.datasette.io"]),
    AITool("fabric", "Fabric", "fabric", "AI prompts framework",
           installer_url="https://raw.githubusercontent.com/danielmiessler/fabric/main/scripts/installer/install.sh",
           hints=["Run: fabric --setup", "Docs: https://github.com/danielmiessler/fabric"]),
]
TOOLS_BY_KEY = {tool.key: tool for tool in TOOLS}


def ensure_pipx() -> None:
    """Install pipx for the current user and put ~/.local/bin on PATH."""
    if command_exists('pipx'):
        return
    log_info("Installing pipx first...")
    try:
        sh.pip("install", "--user", "pipx", "--break-system-packages")
    except sh.ErrorReturnCode:
        # Older pip without --break-system-packages
        sh.pip("install", "--user", "pipx")
    local_bin = Path.home() / ".local" / "bin"
    os.environ['PATH'] = f"{local_bin}:{os.environ.get('PATH', '')}"
    sh.pipx("ensurepath")


def install_llm_with_pipx() -> None:
    ensure_pipx()
    if command_exists('llm'):
        try:
            sh.pipx("upgrade", "llm")
        except sh.ErrorReturnCode:
            sh.pipx("install", "llm", "--force")
    else:
        sh.pipx("install", "llm")


def install_tool(tool: AITool) -> None:
    """Install or update one tool from its vendor script (or pipx for LLM)."""
    log_info(f"Installing/updating {tool.name}...")
    if tool.installer_url is None:
        install_llm_with_pipx()
    else:
        install_script = sh.curl("-fsSL", tool.installer_url)
        if tool.installer_env:
            sh.bash("-c", install_script, _env={**os.environ, **tool.installer_env})
        else:
            sh.bash("-c", install_script)
    log_ok(f"{tool.name} installed/updated")
    for hint in tool.hints:
        typer.echo(f"    {hint}")


def install_all() -> None:
    for tool in TOOLS:
        typer.echo("")
        install_tool(tool)
    typer.echo("")
    log_ok("All AI tools installed/updated!")


def update_installed() -> List[str]:
    """Re-run installers only for tools already on PATH."""
    log_info("Updating all installed tools...")
    updated = []
    for tool in TOOLS:
        if command_exists(tool.binary):
            typer.echo("")
            install_tool(tool)
            updated.append(tool.key)
    log_ok("All installed tools updated!")
    return updated


def tool_status() -> Dict[str, Optional[str]]:
    """Print and return the path of each tool (None when missing)."""
    typer.echo("")
    typer.secho("AI Dev Stack Status", fg=typer.colors.CYAN)
    typer.echo("━" * 46)
    status = {}
    for tool in TOOLS:
        path = shutil.which(tool.binary)
        status[tool.key] = path
        label = f"{tool.name}:".ljust(14)
        if path:
            typer.echo(f"{label}{typer.style('installed', fg=typer.colors.GREEN)} ({path})")
        else:
            typer.echo(f"{label}{typer.style('not installed', fg=typer.colors.RED)}")
    typer.echo("")
    return status


def _menu_actions() -> Dict[str, Callable[[], object]]:
    actions = {str(i): (lambda t=tool: install_tool(t)) for i, tool in enumerate(TOOLS, start=1)}
    actions.update({"a": install_all, "u": update_installed, "s": tool_status})
    return actions


def show_menu() -> None:
    rule = "━" * 46
    typer.echo("")
    typer.secho(rule, fg=typer.colors.CYAN)
    typer.secho("         AI Dev Stack Installer", fg=typer.colors.CYAN)
    typer.secho(rule, fg=typer.colors.CYAN)
    typer.echo("")
    for i, tool in enumerate(TOOLS, start=1):
        typer.echo(f"  {i}) Install {tool.name.ljust(12)}({tool.description})")
    typer.echo("")
    typer.echo("  a) Install ALL")
    typer.echo("  u) Update installed tools")
    typer.echo("  s) Show status")
    typer.echo("  q) Quit")
    typer.echo("")


def interactive_menu() -> None:
    """Loop over the menu until the user quits."""
    actions = _menu_actions()
    while True:
        show_menu()
        choice = typer.prompt("Select option", default="q", show_default=False).strip().lower()
        if choice == "q":
            return
        action = actions.get(choice)
        if action is None:
            log_warn("Invalid option")
            continue
        try:
            action()
        except sh.ErrorReturnCode as e:
            log_warn(f"Installer failed: {e.full_cmd}")
