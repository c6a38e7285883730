"""Tests for run configuration and secrets."""
from pathlib import Path
from unittest.mock import patch

from devbox.config import DevboxConfig, Secrets, UserLayout, resolve_ssh_public_key


class TestResolveSshPublicKey:
    """Tests for SSH key lookup order."""

    def test_explicit_key_wins(self, tmp_path):
        """Test an explicit key is used even when a key file exists."""
        (tmp_path / ".ssh").mkdir()
        (tmp_path / ".ssh" / "devbox_authorized_key").write_text("ssh-ed25519 FILEKEY\n")

        with patch.dict('os.environ', {'HOME': str(tmp_path)}):
            assert resolve_ssh_public_key("ssh-ed25519 ENVKEY \n") == "ssh-ed25519 ENVKEY"

    def test_reads_first_line_of_home_key_file(self, tmp_path):
        """Test the first line of ~/.ssh/devbox_authorized_key is used."""
        (tmp_path / ".ssh").mkdir()
        (tmp_path / ".ssh" / "devbox_authorized_key").write_text(
            "ssh-ed25519 FIRST me@laptop\nssh-ed25519 SECOND\n"
        )

        with patch.dict('os.environ', {'HOME': str(tmp_path)}):
            assert resolve_ssh_public_key() == "ssh-ed25519 FIRST me@laptop"

    def test_no_key_anywhere(self, tmp_path):
        """Test None is returned when no key source exists."""
        with patch.dict('os.environ', {'HOME': str(tmp_path)}), \
                patch('devbox.config.Path.is_file', return_value=False):
            assert resolve_ssh_public_key() is None


class TestSecrets:
    """Tests for per-run secret generation."""

    def test_generates_distinct_secrets(self):
        """Test each secret is generated independently."""
        secrets = Secrets.for_config(DevboxConfig())
        values = {secrets.openwebui_secret, secrets.user_password, secrets.traefik_password}
        assert len(values) == 3

    def test_keeps_provided_openwebui_secret(self):
        """Test a configured Open WebUI secret is not regenerated."""
        secrets = Secrets.for_config(DevboxConfig(openwebui_secret="given"))
        assert secrets.openwebui_secret == "given"
        assert secrets.traefik_password


def test_default_config_values():
    """Test defaults match the documented configuration."""
    config = DevboxConfig()
    assert config.user == "dev"
    assert config.ssh_port == 5522
    assert config.traefik_user == "admin"


def test_user_layout_paths():
    """Test layout paths hang off the user's home."""
    layout = UserLayout(Path("/home/dev"))
    assert layout.docker_dir == Path("/home/dev/docker")
    assert layout.htb_dir == Path("/home/dev/htb")
    assert layout.credentials_file == Path("/home/dev/.devbox-credentials")
