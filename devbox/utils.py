"""Utility functions for the devbox tool."""
import base64
import logging
import os
import secrets
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import typer
from rich.logging import RichHandler

logger = logging.getLogger("devbox")

CONFIGS_DIR = Path(__file__).parent / "configs"


class ProvisionError(RuntimeError):
    """Fatal provisioning failure; the run stops."""


def command_exists(command: str) -> bool:
    """Check if a command exists in the system PATH."""
    return shutil.which(command) is not None


def is_root() -> bool:
    """Check if the script is running as root."""
    return os.geteuid() == 0


def log_info(message: str) -> None:
    """Log an informational message."""
    print(f"[INFO] {message}")


def log_action(message: str) -> None:
    """Log an action being performed."""
    print(f"  -> {message}")


def log_ok(message: str) -> None:
    """Log a completed step."""
    typer.secho(f"[OK] {message}", fg=typer.colors.GREEN)


def log_warn(message: str) -> None:
    """Log a non-fatal problem."""
    typer.secho(f"[WARN] {message}", fg=typer.colors.YELLOW)


def log_phase(title: str) -> None:
    """Print a phase banner."""
    rule = "━" * 72
    typer.echo("")
    typer.secho(rule, fg=typer.colors.CYAN)
    typer.secho(title, fg=typer.colors.CYAN)
    typer.secho(rule, fg=typer.colors.CYAN)


def setup_logging(verbose: bool = False) -> None:
    """Route the devbox logger through rich; debug output only with --verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(show_path=False, markup=False)],
        force=True,
    )
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def confirm(question: str) -> bool:
    """Ask a yes/no question; anything but an explicit yes means no."""
    return typer.confirm(question, default=False)


def generate_password() -> str:
    """Random password: 18 bytes of base64 with '/', '+' and '=' removed."""
    raw = base64.b64encode(secrets.token_bytes(18)).decode("ascii")
    return raw.translate(str.maketrans("", "", "/+="))


def timestamp() -> str:
    """Timestamp suffix used for backup files."""
    return datetime.now().strftime("%Y%m%d%H%M%S")


def render_template(name: str, **values: object) -> str:
    """Read a template from configs/ and replace its KEY_PLACEHOLDER markers."""
    template_path = CONFIGS_DIR / name
    with open(template_path, 'r') as f:
        content = f.read()

    for key, value in values.items():
        content = content.replace(f"{key}_PLACEHOLDER", str(value))

    logger.debug("Rendered template %s", name)
    return content


def write_file(path: Union[str, Path], content: str, mode: Optional[int] = None) -> Path:
    """Write content to path, creating parents.

    With a mode the file is created (or re-moded) with it before any content
    is written, so secrets are never readable under the default umask.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode is None:
        with open(path, 'w') as f:
            f.write(content)
    else:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, 'w') as f:
            # O_CREAT only applies the mode to new files
            os.fchmod(fd, mode)
            f.write(content)
    logger.debug("Wrote %s", path)
    return path


def backup_file(path: Union[str, Path]) -> Optional[Path]:
    """Copy path to path.backup.<timestamp> if it exists."""
    path = Path(path)
    if not path.exists():
        return None
    backup = path.with_name(f"{path.name}.backup.{timestamp()}")
    shutil.copy2(path, backup)
    return backup
