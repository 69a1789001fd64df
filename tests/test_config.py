"""Tests for ocdev.config module."""

from pathlib import Path

from ocdev.config import (
    BASE_IMAGE,
    MAX_NAME_LENGTH,
    PORTS_PER_VM,
    SERVICE_PORT_START,
    SERVICE_PORTS_COUNT,
    SSH_PORT_START,
    ExitCode,
    OcdevConfig,
    get_lock_file,
    get_ocdev_dir,
    get_ports_file,
    load_config,
)


class TestConstants:
    """Tests for fixed constants."""

    def test_port_configuration(self):
        """Test the port grid constants."""
        assert SSH_PORT_START == 2200
        assert SERVICE_PORT_START == 2300
        assert PORTS_PER_VM == 10
        assert SERVICE_PORTS_COUNT == 10
        assert MAX_NAME_LENGTH == 50

    def test_exit_codes(self):
        """Test exit code values."""
        assert ExitCode.SUCCESS == 0
        assert ExitCode.ERROR == 1
        assert ExitCode.PREREQ == 2
        assert ExitCode.NOT_FOUND == 3
        assert ExitCode.NOT_RUNNING == 4


class TestPaths:
    """Tests for state paths."""

    def test_paths_follow_home(self, ocdev_home):
        """Test that state paths live under ~/.ocdev."""
        assert get_ocdev_dir() == ocdev_home
        assert get_ports_file() == ocdev_home / "ports"
        assert get_lock_file() == ocdev_home / ".lock"


class TestOcdevConfig:
    """Tests for OcdevConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = OcdevConfig.default()
        assert config.base_image == BASE_IMAGE
        assert config.incus_command == "incus"
        assert config.post_create is None
        assert config.mount_host_dirs is True

    def test_from_dict(self):
        """Test creating config from a dictionary."""
        config = OcdevConfig.from_dict({
            "base_image": "images:debian/12",
            "incus_command": "/opt/incus/bin/incus",
            "post_create": "/srv/setup.sh",
            "mount_host_dirs": False,
        })
        assert config.base_image == "images:debian/12"
        assert config.incus_command == "/opt/incus/bin/incus"
        assert config.post_create == Path("/srv/setup.sh")
        assert config.mount_host_dirs is False

    def test_from_dict_expands_tilde(self):
        """Test that ~ in post_create is expanded."""
        config = OcdevConfig.from_dict({"post_create": "~/setup.sh"})
        assert config.post_create == Path.home() / "setup.sh"

    def test_from_dict_empty(self):
        """Test that an empty dict gives defaults."""
        assert OcdevConfig.from_dict({}) == OcdevConfig()


class TestLoadConfig:
    """Tests for load_config function."""

    def test_missing_file(self, ocdev_home):
        """Test defaults when no config file exists."""
        assert load_config() == OcdevConfig.default()

    def test_loads_yaml(self, ocdev_home):
        """Test loading settings from config.yaml."""
        ocdev_home.mkdir()
        (ocdev_home / "config.yaml").write_text("base_image: images:debian/12\nmount_host_dirs: false\n")

        config = load_config()

        assert config.base_image == "images:debian/12"
        assert config.mount_host_dirs is False

    def test_invalid_yaml(self, ocdev_home):
        """Test that invalid YAML falls back to defaults."""
        ocdev_home.mkdir()
        (ocdev_home / "config.yaml").write_text("base_image: [unclosed\n")
        assert load_config() == OcdevConfig.default()

    def test_non_mapping_yaml(self, ocdev_home):
        """Test that a YAML list falls back to defaults."""
        ocdev_home.mkdir()
        (ocdev_home / "config.yaml").write_text("- a\n- b\n")
        assert load_config() == OcdevConfig.default()

    def test_empty_file(self, ocdev_home):
        """Test that an empty file gives defaults."""
        ocdev_home.mkdir()
        (ocdev_home / "config.yaml").write_text("")
        assert load_config() == OcdevConfig.default()
