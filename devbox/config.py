"""Run configuration, generated secrets and on-disk layout."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from devbox.utils import generate_password

SSHD_DROPIN = Path("/etc/ssh/sshd_config.d/99-hardening.conf")
SSHD_CONFIG = Path("/etc/ssh/sshd_config")
SUDOERS_DIR = Path("/etc/sudoers.d")
KEY_FILE_NAME = "devbox_authorized_key"

EXEGOL_IMAGE = "ghcr.io/ThePorgs/Exegol-images:full"
PROXY_NETWORK = "proxy-net"
INTERNAL_HOSTS = ("ai.internal", "traefik.internal", "ollama.internal")


@dataclass
class DevboxConfig:
    """Settings for one provisioning run."""
    user: str = "dev"
    email: str = "admin@example.com"
    ssh_port: int = 5522
    domain: str = "example.com"
    ssh_public_key: Optional[str] = None
    openwebui_secret: Optional[str] = None
    traefik_user: str = "admin"


@dataclass
class Secrets:
    """Credentials generated once per run."""
    openwebui_secret: str = field(default_factory=generate_password)
    user_password: str = field(default_factory=generate_password)
    traefik_password: str = field(default_factory=generate_password)

    @classmethod
    def for_config(cls, config: DevboxConfig) -> "Secrets":
        if config.openwebui_secret:
            return cls(openwebui_secret=config.openwebui_secret)
        return cls()


@dataclass
class UserLayout:
    """Paths under the provisioned user's home."""
    home: Path

    @property
    def docker_dir(self) -> Path:
        return self.home / "docker"

    @property
    def projects_dir(self) -> Path:
        return self.home / "projects"

    @property
    def htb_dir(self) -> Path:
        return self.home / "htb"

    @property
    def credentials_file(self) -> Path:
        return self.home / ".devbox-credentials"

    @property
    def zshrc(self) -> Path:
        return self.home / ".zshrc"


def _first_line(path: Path) -> Optional[str]:
    try:
        with open(path, 'r') as f:
            line = f.readline().strip()
    except OSError:
        return None
    return line or None


def resolve_ssh_public_key(explicit: Optional[str] = None) -> Optional[str]:
    """Pick the SSH key: explicit value, then ~/.ssh key file, then root's key file."""
    if explicit:
        return explicit.strip()

    candidates = [
        Path(os.environ.get('HOME', '/root')) / ".ssh" / KEY_FILE_NAME,
        Path("/root/.ssh") / KEY_FILE_NAME,
    ]
    for candidate in candidates:
        if candidate.is_file():
            key = _first_line(candidate)
            if key:
                return key
    return None
