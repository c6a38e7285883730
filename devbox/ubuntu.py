"""Ubuntu-specific provisioning functions."""
import json
import os
import re
from pathlib import Path
from typing import Optional

import sh

from devbox.config import SSHD_CONFIG, SSHD_DROPIN, SUDOERS_DIR, PROXY_NETWORK
from devbox.detect import user_exists
from devbox.utils import (
    ProvisionError, command_exists, confirm, log_action, log_info, log_ok, log_warn, logger,
    render_template, timestamp, write_file,
)

ESSENTIAL_PACKAGES = [
    "curl", "wget", "git", "unzip", "jq", "htop", "ncdu", "tree",
    "zsh", "tmux", "vim", "nano",
    "ca-certificates", "gnupg", "lsb-release", "apt-transport-https",
    "ufw", "fail2ban",
    "build-essential",
    "openvpn", "wireguard-tools",
    "python3-pip", "python3-venv",
    "net-tools", "dnsutils", "iputils-ping",
]

MISE_PATH = Path("/opt/mise")
MISE_LINK = Path("/usr/local/bin/mise")
NVIM_DIR = Path("/opt/nvim-linux-x86_64")


def _apt_env() -> dict:
    env = dict(os.environ)
    env.update({"DEBIAN_FRONTEND": "noninteractive", "LC_ALL": "C.UTF-8", "LANG": "C.UTF-8"})
    return env


def configure_locale(dry_run: bool = False) -> None:
    """Generate en_US.UTF-8 so later package installs do not warn about locales."""
    if dry_run:
        log_action("[DRY RUN] Would configure en_US.UTF-8 locale")
        return

    log_info("Fixing locale settings...")
    os.environ["LC_ALL"] = "C.UTF-8"
    os.environ["LANG"] = "C.UTF-8"
    try:
        sh.apt("install", "-y", "-qq", "locales", _env=_apt_env())
        locale_gen = Path("/etc/locale.gen")
        if locale_gen.exists():
            content = locale_gen.read_text()
            locale_gen.write_text(re.sub(r"^# (en_US\.UTF-8)", r"\1", content, flags=re.MULTILINE))
        sh.Command("locale-gen")("en_US.UTF-8")
        sh.Command("update-locale")("LANG=en_US.UTF-8", "LC_ALL=en_US.UTF-8")
    except (sh.ErrorReturnCode, sh.CommandNotFound) as e:
        log_warn(f"Locale configuration incomplete: {e}")


def install_packages(dry_run: bool = False) -> None:
    """Update the system and install the essential package set."""
    if dry_run:
        log_action(f"[DRY RUN] Would apt upgrade and install {len(ESSENTIAL_PACKAGES)} packages")
        return

    env = _apt_env()
    log_info("Updating system packages...")
    sh.apt("update", "-qq", _env=env)
    sh.apt("upgrade", "-y", "-qq", _env=env)

    log_info("Installing essential packages...")
    sh.apt("install", "-y", "-qq", "--no-install-recommends", *ESSENTIAL_PACKAGES, _env=env)
    log_ok("System packages installed")


def configure_sudoers(user: str, dry_run: bool = False) -> None:
    """Give the user passwordless sudo through a drop-in file."""
    sudoers = SUDOERS_DIR / f"90-{user}"
    if sudoers.exists():
        log_ok("Passwordless sudo already configured")
        return

    if dry_run:
        log_action(f"[DRY RUN] Would write {sudoers}")
        return

    write_file(sudoers, f"{user} ALL=(ALL) NOPASSWD:ALL\n", mode=0o440)
    log_ok("Passwordless sudo configured")


def create_user(user: str, password: str, dry_run: bool = False) -> bool:
    """Create the user with zsh and sudo rights; returns True if it was created."""
    if user_exists(user):
        log_ok(f"User '{user}' already exists")
        if not dry_run:
            sh.usermod("-aG", "sudo", user)
        configure_sudoers(user, dry_run=dry_run)
        return False

    if dry_run:
        log_action(f"[DRY RUN] Would create user '{user}' with passwordless sudo")
        return True

    log_info(f"Creating user '{user}'...")
    sh.useradd("-m", "-s", "/bin/zsh", user)
    sh.chpasswd(_in=f"{user}:{password}\n")
    sh.usermod("-aG", "sudo", user)
    configure_sudoers(user)
    log_ok(f"User '{user}' created with passwordless sudo")
    return True


def setup_ssh_directory(user: str, home: Path, public_key: Optional[str], dry_run: bool = False) -> None:
    """Prepare ~/.ssh and add the public key unless it is already authorized."""
    ssh_dir = home / ".ssh"
    authorized_keys = ssh_dir / "authorized_keys"

    if dry_run:
        log_action(f"[DRY RUN] Would prepare {authorized_keys}")
        return

    log_info("Setting up SSH directory...")
    ssh_dir.mkdir(parents=True, exist_ok=True)
    authorized_keys.touch(exist_ok=True)
    os.chmod(ssh_dir, 0o700)
    os.chmod(authorized_keys, 0o600)

    if not public_key:
        log_warn(f"No SSH key provided - add your key to {authorized_keys}")
    else:
        existing = authorized_keys.read_text()
        if public_key in existing.splitlines():
            log_ok("SSH public key already present")
        else:
            with open(authorized_keys, 'a') as f:
                if existing and not existing.endswith("\n"):
                    f.write("\n")
                f.write(f"{public_key}\n")
            log_ok("SSH public key added")

    sh.chown("-R", f"{user}:{user}", str(ssh_dir))


def get_configured_ssh_port(dropin: Path = SSHD_DROPIN) -> Optional[int]:
    """Port from the hardening drop-in, None when absent or unparseable."""
    if not dropin.exists():
        return None
    for line in dropin.read_text().splitlines():
        match = re.match(r"^Port\s+(\d+)\s*$", line)
        if match:
            return int(match.group(1))
    return None


def harden_ssh(port: int, dry_run: bool = False) -> bool:
    """Write the sshd drop-in; returns True if sshd needs a restart."""
    if SSHD_DROPIN.exists():
        current = get_configured_ssh_port(SSHD_DROPIN)
        log_ok(f"SSH hardening already configured (port {current or 'unknown'})")
        if current == port:
            return False
        log_warn(f"Current SSH port ({current}) differs from config ({port})")
        if not confirm(f"Update SSH port to {port}?"):
            return False

    if dry_run:
        log_action(f"[DRY RUN] Would write {SSHD_DROPIN} (port {port}, key-only auth)")
        return True

    if SSHD_CONFIG.exists():
        log_info("Backing up SSH config...")
        sh.cp(str(SSHD_CONFIG), f"{SSHD_CONFIG}.backup.{timestamp()}")

    log_info("Applying SSH hardening...")
    write_file(SSHD_DROPIN, render_template("sshd-hardening.conf", SSH_PORT=port))
    log_ok(f"SSH hardened (port {port}, key-only auth)")
    return True


def count_ufw_rules() -> int:
    """Number of ALLOW/DENY lines in `ufw status`."""
    try:
        output = str(sh.ufw("status"))
    except sh.ErrorReturnCode:
        return 0
    return sum(1 for line in output.splitlines() if "ALLOW" in line or "DENY" in line)


def reset_firewall(port: int) -> None:
    log_info("Configuring UFW firewall...")
    sh.ufw("--force", "reset")
    sh.ufw("default", "deny", "incoming")
    sh.ufw("default", "allow", "outgoing")
    sh.ufw("allow", f"{port}/tcp", "comment", "SSH")
    sh.ufw("--force", "enable")
    log_ok(f"Firewall configured (only SSH:{port} open)")


def configure_firewall(port: int, dry_run: bool = False) -> None:
    """Default-deny inbound with only the SSH port open; existing rules need confirmation."""
    rules = count_ufw_rules()

    if rules > 0:
        log_warn(f"Existing UFW rules detected ({rules} rules)")
        if not confirm("Reset UFW and apply devbox firewall rules?"):
            log_info(f"Keeping existing UFW rules - ensuring SSH port {port} is allowed")
            if dry_run:
                log_action(f"[DRY RUN] Would allow {port}/tcp")
                return
            sh.ufw("allow", f"{port}/tcp", "comment", "SSH")
            return

    if dry_run:
        log_action(f"[DRY RUN] Would reset UFW and allow only {port}/tcp")
        return

    reset_firewall(port)


def get_docker_version() -> str:
    """Version number from `docker --version`."""
    output = str(sh.docker("--version"))
    match = re.search(r"version\s+([^\s,]+)", output)
    return match.group(1) if match else output.strip()


def get_compose_version() -> Optional[str]:
    try:
        return str(sh.docker("compose", "version", "--short")).strip()
    except sh.ErrorReturnCode:
        return None


def ensure_network(name: str = PROXY_NETWORK) -> bool:
    """Create a Docker network; returns False if it already existed."""
    try:
        sh.docker("network", "inspect", name)
        return False
    except sh.ErrorReturnCode:
        pass
    sh.docker("network", "create", name)
    return True


def verify_docker(user: str, dry_run: bool = False) -> None:
    """Report Docker versions, install the Compose plugin, and prepare the proxy network."""
    log_ok(f"Docker: v{get_docker_version()}")

    compose_version = get_compose_version()
    if compose_version:
        log_ok(f"Docker Compose: v{compose_version}")
    elif dry_run:
        log_action("[DRY RUN] Would install docker-compose-plugin")
    else:
        log_warn("Docker Compose plugin not found - trying to install...")
        sh.apt("install", "-y", "-qq", "docker-compose-plugin", _env=_apt_env())

    if dry_run:
        log_action(f"[DRY RUN] Would add '{user}' to docker group and create '{PROXY_NETWORK}'")
        return

    sh.usermod("-aG", "docker", user)
    log_ok(f"User '{user}' added to docker group")

    if ensure_network():
        log_ok(f"Docker network '{PROXY_NETWORK}' created")
    else:
        log_ok(f"Docker network '{PROXY_NETWORK}' already exists")


def run_vendor_installer(url: str, shell: str = "bash", env: Optional[dict] = None) -> None:
    """Fetch an install script and run it (the curl | bash pattern)."""
    logger.debug("Running vendor installer %s", url)
    install_script = sh.curl("-fsSL", url)
    command = getattr(sh, shell)
    if env:
        command("-c", install_script, _env={**os.environ, **env})
    else:
        command("-c", install_script)


def get_tailscale_ip() -> Optional[str]:
    try:
        output = str(sh.tailscale("ip", "-4")).strip()
    except (sh.ErrorReturnCode, sh.CommandNotFound):
        return None
    return output.splitlines()[0].strip() if output else None


def install_tailscale(dry_run: bool = False) -> None:
    """Install Tailscale via the vendor script; authentication stays manual."""
    if command_exists('tailscale'):
        version = str(sh.tailscale("version")).splitlines()[0].strip()
        log_ok(f"Tailscale already installed: {version}")
        try:
            sh.tailscale("status")
            log_ok(f"Tailscale connected (IP: {get_tailscale_ip() or 'unknown'})")
        except sh.ErrorReturnCode:
            log_info("Tailscale installed but not authenticated")
        return

    if dry_run:
        log_action("[DRY RUN] Would install Tailscale")
        return

    log_info("Installing Tailscale...")
    run_vendor_installer("https://tailscale.com/install.sh", shell="sh")
    log_ok("Tailscale installed (authenticate after setup completes)")


def install_mise(user: str, home: Path, installed: bool, dry_run: bool = False) -> None:
    """Install mise to /opt/mise and wire up shell activation for everyone."""
    if dry_run:
        log_action("[DRY RUN] Would install mise and configure shell integration")
        return

    if installed:
        try:
            version = str(sh.mise("--version")).strip()
        except (sh.ErrorReturnCode, sh.CommandNotFound):
            version = "unknown"
        log_ok(f"mise already installed: {version}")
    else:
        log_info("Installing mise...")
        run_vendor_installer("https://mise.run", shell="sh", env={"MISE_INSTALL_PATH": str(MISE_PATH)})
        log_ok("mise installed")

    if MISE_PATH.is_file() and not MISE_LINK.is_symlink():
        if MISE_LINK.exists():
            MISE_LINK.unlink()
        MISE_LINK.symlink_to(MISE_PATH)

    write_file("/etc/profile.d/mise.sh", render_template("mise-profile.sh"))

    if home.is_dir():
        (home / ".config" / "mise").mkdir(parents=True, exist_ok=True)
        zshrc = home / ".zshrc"
        content = zshrc.read_text() if zshrc.exists() else ""
        if "mise activate" not in content:
            with open(zshrc, 'a') as f:
                f.write('\n# mise (version manager)\n'
                        'export PATH="/opt/mise:$PATH"\n'
                        'eval "$(/opt/mise activate zsh)"\n')

        log_info(f"Installing default tools via mise for {user}...")
        try:
            sh.su("-", user, "-c", 'export PATH="/opt/mise:$PATH" && mise use --global node@22')
        except sh.ErrorReturnCode:
            log_warn("mise could not install node@22; run `mise use --global node@22` later")

    log_ok("mise shell integration configured")


def get_latest_github_version(repo: str) -> Optional[str]:
    """Latest release tag of a GitHub repo, without the 'v' prefix."""
    try:
        response = str(sh.curl("-s", f"https://api.github.com/repos/{repo}/releases/latest"))
        data = json.loads(response)
    except (sh.ErrorReturnCode, json.JSONDecodeError):
        return None
    tag = data.get('tag_name', '')
    if tag.startswith('v'):
        return tag[1:]
    return tag or None


def install_lazygit(dry_run: bool = False) -> None:
    if command_exists('lazygit'):
        log_ok("lazygit already installed")
        return
    if dry_run:
        log_action("[DRY RUN] Would install lazygit")
        return

    log_info("Installing lazygit...")
    version = get_latest_github_version("jesseduffield/lazygit")
    if not version:
        raise ProvisionError("Could not determine the latest lazygit release")

    url = (f"https://github.com/jesseduffield/lazygit/releases/latest/download/"
           f"lazygit_{version}_Linux_x86_64.tar.gz")
    sh.curl("-fsSLo", "/tmp/lazygit.tar.gz", url)
    sh.tar("xf", "/tmp/lazygit.tar.gz", "-C", "/tmp", "lazygit")
    sh.install("/tmp/lazygit", "/usr/local/bin")
    sh.rm("-f", "/tmp/lazygit", "/tmp/lazygit.tar.gz")
    log_ok("lazygit installed")


def install_lazydocker(dry_run: bool = False) -> None:
    if command_exists('lazydocker'):
        log_ok("lazydocker already installed")
        return
    if dry_run:
        log_action("[DRY RUN] Would install lazydocker")
        return

    log_info("Installing lazydocker...")
    run_vendor_installer(
        "https://raw.githubusercontent.com/jesseduffield/lazydocker/master/scripts/install_update_linux.sh"
    )
    log_ok("lazydocker installed")


def install_neovim(dry_run: bool = False) -> None:
    if command_exists('nvim'):
        log_ok("neovim already installed")
        return
    if dry_run:
        log_action("[DRY RUN] Would install neovim to /opt")
        return

    log_info("Installing neovim...")
    tarball = "/tmp/nvim-linux-x86_64.tar.gz"
    sh.curl("-fsSLo", tarball,
            "https://github.com/neovim/neovim/releases/latest/download/nvim-linux-x86_64.tar.gz")
    sh.tar("-C", "/opt", "-xzf", tarball)
    sh.ln("-sf", str(NVIM_DIR / "bin" / "nvim"), "/usr/local/bin/nvim")
    sh.rm("-f", tarball)
    log_ok("neovim installed")


def install_lazyvim(user: str, home: Path, dry_run: bool = False) -> None:
    """Clone the LazyVim starter unless the user already has an nvim config."""
    if (home / ".config" / "nvim").exists():
        log_ok("nvim config already exists (skipping lazyvim)")
        return
    if dry_run:
        log_action(f"[DRY RUN] Would install lazyvim for {user}")
        return

    log_info(f"Installing lazyvim for {user}...")
    script = (
        "for d in ~/.local/share/nvim ~/.local/state/nvim ~/.cache/nvim; do "
        "[ -e \"$d\" ] && mv \"$d\" \"$d.bak\"; done; "
        "git clone https://github.com/LazyVim/starter ~/.config/nvim && rm -rf ~/.config/nvim/.git"
    )
    try:
        sh.su("-", user, "-c", script)
        log_ok(f"lazyvim installed for {user}")
    except sh.ErrorReturnCode as e:
        log_warn(f"lazyvim installation failed: {e.stderr.decode(errors='replace').strip()}")


def install_oh_my_zsh(user: str, installed: bool, dry_run: bool = False) -> None:
    if installed:
        log_ok(f"Oh-My-Zsh already installed for {user}")
        return
    if dry_run:
        log_action(f"[DRY RUN] Would install Oh-My-Zsh for {user}")
        return

    log_info("Installing Oh-My-Zsh...")
    script = ('sh -c "$(curl -fsSL https://raw.githubusercontent.com/ohmyzsh/ohmyzsh/master/tools/install.sh)"'
              ' "" --unattended')
    try:
        sh.su("-", user, "-c", script)
        log_ok("Oh-My-Zsh installed")
    except sh.ErrorReturnCode:
        log_warn("Oh-My-Zsh installer failed; .zshrc will still be written")


def configure_shell(home: Path, dry_run: bool = False) -> None:
    """Replace ~/.zshrc with the devbox aliases, keeping a timestamped backup."""
    zshrc = home / ".zshrc"
    if dry_run:
        log_action(f"[DRY RUN] Would write {zshrc}")
        return

    if zshrc.exists():
        sh.cp(str(zshrc), f"{zshrc}.backup.{timestamp()}")
        log_info("Existing .zshrc backed up")

    log_info("Configuring shell aliases...")
    write_file(zshrc, render_template("zshrc"))
    log_ok("Shell configured with aliases")


def finalize(user: str, home: Path, restart_ssh: bool, port: int, dry_run: bool = False) -> None:
    """Hand the home directory to the user and restart sshd if its config changed."""
    if dry_run:
        log_action(f"[DRY RUN] Would chown {home} and {'restart' if restart_ssh else 'keep'} SSH")
        return

    log_info("Fixing file ownership...")
    sh.chown("-R", f"{user}:{user}", str(home))

    if restart_ssh:
        log_info("Restarting SSH...")
        sh.systemctl("restart", "ssh")
        log_ok(f"SSH restarted on port {port}")
    else:
        log_ok("SSH restart not needed")
